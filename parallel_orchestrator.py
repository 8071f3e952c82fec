"""
Auto Mode Orchestrator
======================

Schedules feature jobs for one project and exposes the control operations.

The scheduling loop picks ready jobs whose dependencies are satisfied, in
dependency order, and launches each as its own asyncio task while the
running count is below the concurrency limit. Every job runs through
_run_registered(), which classifies failures once, feeds the failure
tracker and always removes the job from the running map.

Loop timing (seconds):
- 5 when at capacity, 10 when idle, 2 after a launch, 5 after an error
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from agent import ClaudeAgentProvider, ExecutionProvider
from api.dependency_resolver import (
    are_dependencies_satisfied,
    get_blocking_dependencies,
    resolve_dependencies,
)
from api.job_store import JobStore, JobStoreError
from api.models import Job, utc_now_iso
from errors import (
    AutoModeAlreadyRunningError,
    ErrorInfo,
    ErrorType,
    JobAlreadyRunningError,
    JobNotFoundError,
    classify_error,
)
from events import (
    AUTO_MODE_ERROR,
    AUTO_MODE_IDLE,
    AUTO_MODE_PAUSED_FAILURES,
    AUTO_MODE_STARTED,
    AUTO_MODE_STOPPED,
    FEATURE_COMPLETE,
    PLAN_REJECTED,
    EventEmitter,
)
from failure_tracker import FailureTracker
from job_executor import JobExecutor, RunningJob
from plan_approval import APPROVAL_TIMEOUT_SECONDS, PlanApprovalGate
from prompts import build_follow_up_prompt, build_recovery_prompt, build_resume_prompt
from registry import DEFAULT_MAX_CONCURRENCY, DEFAULT_MODEL, resolve_model
from workspace import find_worktree_for_branch, validate_working_directory

logger = logging.getLogger(__name__)

MAX_CONCURRENCY_LIMIT = 10

CAPACITY_SLEEP_SECONDS = 5.0
IDLE_SLEEP_SECONDS = 10.0
LAUNCH_SLEEP_SECONDS = 2.0
ERROR_SLEEP_SECONDS = 5.0


class AutoModeOrchestrator:
    """Runs feature jobs concurrently under a limit, with planning and a circuit breaker."""

    def __init__(
        self,
        store: JobStore | None = None,
        provider: ExecutionProvider | None = None,
        events: EventEmitter | None = None,
        failure_tracker: FailureTracker | None = None,
        approval_timeout_seconds: float = APPROVAL_TIMEOUT_SECONDS,
        default_model: str = DEFAULT_MODEL,
        use_worktrees: bool = True,
        mcp_servers: dict[str, Any] | None = None,
        raw_output_enabled: bool | None = None,
        capacity_sleep: float = CAPACITY_SLEEP_SECONDS,
        idle_sleep: float = IDLE_SLEEP_SECONDS,
        launch_sleep: float = LAUNCH_SLEEP_SECONDS,
        error_sleep: float = ERROR_SLEEP_SECONDS,
    ):
        self.store = store or JobStore()
        self.provider = provider or ClaudeAgentProvider()
        self.events = events or EventEmitter()
        self.failure_tracker = failure_tracker or FailureTracker()
        self.approval_gate = PlanApprovalGate(approval_timeout_seconds)
        self.executor = JobExecutor(
            self.store,
            self.provider,
            self.events,
            self.approval_gate,
            mcp_servers=mcp_servers,
            raw_output_enabled=raw_output_enabled,
        )
        self.default_model = resolve_model(default_model)
        self.use_worktrees = use_worktrees

        self.capacity_sleep = capacity_sleep
        self.idle_sleep = idle_sleep
        self.launch_sleep = launch_sleep
        self.error_sleep = error_sleep

        # job_id -> RunningJob; only touched on the event loop thread
        self._running: dict[str, RunningJob] = {}

        self.is_running = False
        self.project_path: Path | None = None
        self.max_concurrency = DEFAULT_MAX_CONCURRENCY
        self._loop_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Scheduling loop
    # ------------------------------------------------------------------

    def start_loop(self, project_path: str | Path, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> asyncio.Task:
        """
        Start the auto mode loop for a project.

        Resets the failure tracker, including a previous pause.

        Raises:
            AutoModeAlreadyRunningError: if the loop is already running.
        """
        if self.is_running:
            raise AutoModeAlreadyRunningError()

        self.failure_tracker.reset()
        self.project_path = Path(project_path)
        self.max_concurrency = min(max(max_concurrency, 1), MAX_CONCURRENCY_LIMIT)
        self.is_running = True
        self._stop_event = asyncio.Event()

        logger.info(
            "Starting auto mode for %s (max concurrency %d)", self.project_path, self.max_concurrency
        )
        self.events.emit_auto_mode_event(
            AUTO_MODE_STARTED,
            message=f"Auto mode started with max {self.max_concurrency} concurrent features",
            projectPath=str(self.project_path),
        )
        self._loop_task = asyncio.get_running_loop().create_task(self._run_loop(self._stop_event))
        return self._loop_task

    def stop_loop(self) -> int:
        """
        Stop scheduling new jobs. Jobs already running keep going.

        Returns:
            Number of jobs still running.
        """
        was_running = self.is_running
        self.is_running = False
        if self._stop_event is not None:
            self._stop_event.set()

        if was_running:
            logger.info("Auto mode stopped with %d job(s) still running", len(self._running))
            self.events.emit_auto_mode_event(
                AUTO_MODE_STOPPED,
                message="Auto mode stopped",
                projectPath=str(self.project_path) if self.project_path else None,
            )
        return len(self._running)

    async def _sleep(self, seconds: float, stop_event: asyncio.Event) -> None:
        """Sleep, waking early when the loop is stopped."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        project_path = self.project_path
        while self.is_running and not stop_event.is_set():
            try:
                if len(self._running) >= self.max_concurrency:
                    await self._sleep(self.capacity_sleep, stop_event)
                    continue

                pending = self.load_pending_jobs(project_path)
                if not pending:
                    self.events.emit_auto_mode_event(
                        AUTO_MODE_IDLE,
                        message="No pending features - auto mode idle",
                        projectPath=str(project_path),
                    )
                    await self._sleep(self.idle_sleep, stop_event)
                    continue

                next_job = next((job for job in pending if job.id not in self._running), None)
                if next_job is not None:
                    logger.info("Auto mode launching feature %s", next_job.id)
                    self.start_job(project_path, next_job.id, self.use_worktrees, is_auto_mode=True)

                await self._sleep(self.launch_sleep, stop_event)

            except Exception as e:
                logger.error("Auto mode loop error: %s", e, exc_info=True)
                await self._sleep(self.error_sleep, stop_event)

        logger.info("Auto mode loop exited for %s", project_path)

    def load_pending_jobs(self, project_path: Path) -> list[Job]:
        """Ready jobs with satisfied dependencies, in dependency order."""
        all_jobs = self.store.list_jobs(project_path)
        ready = [
            job for job in all_jobs
            if job.is_ready_status
            and not job.has_unapproved_plan
            and are_dependencies_satisfied(job, all_jobs)
        ]
        return resolve_dependencies(ready).ordered_jobs

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------

    def _register(self, project_path: str | Path, job_id: str, use_worktrees: bool, is_auto_mode: bool) -> RunningJob:
        if job_id in self._running:
            raise JobAlreadyRunningError(job_id)
        running = RunningJob(
            job_id=job_id,
            project_path=Path(project_path),
            is_auto_mode=is_auto_mode,
            use_worktrees=use_worktrees,
            provider=getattr(self.provider, "name", type(self.provider).__name__),
        )
        self._running[job_id] = running
        return running

    def _launch(self, running: RunningJob, body: Callable[[RunningJob], Awaitable[None]]) -> RunningJob:
        running.task = asyncio.get_running_loop().create_task(self._run_registered(running, body))
        return running

    def start_job(
        self,
        project_path: str | Path,
        job_id: str,
        use_worktrees: bool = True,
        is_auto_mode: bool = False,
        continuation_prompt: str | None = None,
    ) -> RunningJob:
        """
        Register a job and launch it in the background.

        Raises:
            JobAlreadyRunningError: if the job is already running.
        """
        running = self._register(project_path, job_id, use_worktrees, is_auto_mode)

        async def body(r: RunningJob) -> None:
            await self._execute(r, continuation_prompt)

        return self._launch(running, body)

    async def execute_job(
        self,
        project_path: str | Path,
        job_id: str,
        use_worktrees: bool = True,
        is_auto_mode: bool = False,
        continuation_prompt: str | None = None,
    ) -> None:
        """Run a job to completion. Failures are handled, not raised."""
        running = self.start_job(project_path, job_id, use_worktrees, is_auto_mode, continuation_prompt)
        await running.task

    def start_resume_job(self, project_path: str | Path, job_id: str, use_worktrees: bool = True) -> RunningJob:
        """
        Resume from the saved transcript when there is one, otherwise start fresh.

        Raises:
            WorkspaceValidationError: if the project path is not a usable directory.
            JobAlreadyRunningError: if the job is already running.
        """
        validate_working_directory(project_path)
        project_path = Path(project_path)
        if not self.context_exists(project_path, job_id):
            return self.start_job(project_path, job_id, use_worktrees)

        running = self._register(project_path, job_id, use_worktrees, is_auto_mode=False)

        async def body(r: RunningJob) -> None:
            job = self._load_job(r.project_path, r.job_id)
            context = self.store.read_output(r.project_path, r.job_id) or ""
            await self._execute(r, build_resume_prompt(job, context), previous_content=context)

        return self._launch(running, body)

    async def resume_job(self, project_path: str | Path, job_id: str, use_worktrees: bool = True) -> None:
        running = self.start_resume_job(project_path, job_id, use_worktrees)
        await running.task

    def start_follow_up_job(
        self,
        project_path: str | Path,
        job_id: str,
        extra_prompt: str,
        image_paths: list[str] | None = None,
        use_worktrees: bool = True,
    ) -> RunningJob:
        """Launch a follow-up session that continues a job's previous transcript."""
        validate_working_directory(project_path)
        running = self._register(project_path, job_id, use_worktrees, is_auto_mode=False)

        async def body(r: RunningJob) -> None:
            job = self._load_job(r.project_path, r.job_id)
            if image_paths:
                merged = list(dict.fromkeys([*job.image_paths, *image_paths]))
                job = self.store.write(r.project_path, r.job_id, {"image_paths": merged})
            if not job.branch_name:
                job = job.model_copy(update={"branch_name": f"feature/{job.id}"})

            previous = self.store.read_output(r.project_path, r.job_id) or ""
            prompt = build_follow_up_prompt(job, job.id, previous, extra_prompt)
            await self._execute(r, prompt, previous_content=previous, job=job, run_pipeline=False)

        return self._launch(running, body)

    async def follow_up_job(
        self,
        project_path: str | Path,
        job_id: str,
        extra_prompt: str,
        image_paths: list[str] | None = None,
        use_worktrees: bool = True,
    ) -> None:
        running = self.start_follow_up_job(project_path, job_id, extra_prompt, image_paths, use_worktrees)
        await running.task

    def stop_job(self, job_id: str) -> bool:
        """
        Cancel a running job and any approval it is waiting on.

        Returns:
            False if the job was not running.
        """
        running = self._running.get(job_id)
        if running is None:
            return False

        logger.info("Stopping feature %s", job_id)
        running.cancel_token.cancel()
        self.approval_gate.cancel(job_id)
        if running.task is not None and not running.task.done():
            running.task.cancel()
        return True

    async def _execute(
        self,
        running: RunningJob,
        continuation_prompt: str | None = None,
        previous_content: str | None = None,
        job: Job | None = None,
        run_pipeline: bool = True,
    ) -> None:
        """Validate, resolve the workspace and hand the job to the executor."""
        validate_working_directory(running.project_path)
        if job is None:
            job = self._load_job(running.project_path, running.job_id)

        if (
            continuation_prompt is None
            and not job.has_unapproved_plan
            and self.context_exists(running.project_path, job.id)
        ):
            logger.info("Feature %s has saved output, resuming", job.id)
            previous_content = self.store.read_output(running.project_path, job.id) or ""
            continuation_prompt = build_resume_prompt(job, previous_content)

        workdir = running.project_path
        if running.use_worktrees and job.branch_name:
            worktree = await find_worktree_for_branch(running.project_path, job.branch_name)
            if worktree is not None:
                workdir = worktree
            else:
                logger.info(
                    "No worktree for branch %s, using project root for feature %s",
                    job.branch_name, job.id,
                )
        running.workspace_path = validate_working_directory(workdir)
        running.branch_name = job.branch_name
        running.model = resolve_model(job.model, self.default_model)
        logger.info("Executing feature %s with model %s in %s", job.id, running.model, running.workspace_path)

        await self.executor.run_job(running, job, continuation_prompt, previous_content, run_pipeline)

    async def _run_registered(self, running: RunningJob, body: Callable[[RunningJob], Awaitable[None]]) -> None:
        try:
            await body(running)
            self.failure_tracker.record_success()
        except (Exception, asyncio.CancelledError) as e:
            self._handle_job_error(running, e)
        finally:
            if self._running.get(running.job_id) is running:
                del self._running[running.job_id]

    def _handle_job_error(self, running: RunningJob, error: BaseException) -> None:
        job_id = running.job_id
        project_path = str(running.project_path)

        if running.cancel_token.is_cancelled:
            error_info = ErrorInfo(ErrorType.CANCELLATION, "Feature stopped by user")
        else:
            error_info = classify_error(error)

        if error_info.is_cancellation:
            logger.info("Feature %s stopped by user", job_id)
            self._safe_write(running, {"status": "stopped"})
            self.events.emit_auto_mode_event(
                FEATURE_COMPLETE,
                featureId=job_id,
                passes=False,
                message="Feature stopped by user",
                projectPath=project_path,
            )
            return

        if error_info.counts_as_failure:
            logger.error("Feature %s failed: %s", job_id, error_info.message, exc_info=error)
        else:
            logger.info("Feature %s ended: %s", job_id, error_info.message)

        self._safe_write(running, {"status": "backlog", "error": error_info.message})
        self.events.emit_auto_mode_event(
            AUTO_MODE_ERROR,
            featureId=job_id,
            projectPath=project_path,
            **error_info.to_event_details(),
        )

        if error_info.counts_as_failure and self.failure_tracker.record_failure(error_info):
            self._signal_should_pause(error_info, running.project_path)

    def _signal_should_pause(self, error_info: ErrorInfo, project_path: Path) -> None:
        failure_count = self.failure_tracker.failure_count
        message = self.failure_tracker.pause_message()
        logger.warning("%s (last error: %s)", message, error_info.type.value)
        self.events.emit_auto_mode_event(
            AUTO_MODE_PAUSED_FAILURES,
            message=message,
            errorType=error_info.type.value,
            originalError=error_info.message,
            failureCount=failure_count,
            projectPath=str(project_path),
        )
        self.stop_loop()

    def _safe_write(self, running: RunningJob, patch: dict[str, Any]) -> None:
        try:
            self.store.write(running.project_path, running.job_id, patch)
        except JobStoreError as e:
            logger.error("Could not update feature %s: %s", running.job_id, e)

    def _load_job(self, project_path: Path, job_id: str) -> Job:
        job = self.store.read(project_path, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ------------------------------------------------------------------
    # Plan approval
    # ------------------------------------------------------------------

    def has_pending_approval(self, job_id: str) -> bool:
        return self.approval_gate.has_pending(job_id)

    async def resolve_plan_approval(
        self,
        job_id: str,
        approved: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
        project_path: str | Path | None = None,
    ) -> dict[str, Any]:
        """
        Deliver a human decision on a generated plan.

        With no pending approval (e.g. after a restart) and a project path,
        a persisted ``generated`` plan is recovered: approval re-runs the job
        with the plan as a continuation, rejection returns it to backlog.
        """
        logger.info("Resolving plan approval for feature %s (approved=%s)", job_id, approved)

        if self.approval_gate.has_pending(job_id):
            pending_project = self.approval_gate.get_project_path(job_id)
            if not approved and feedback:
                self.events.emit_auto_mode_event(
                    PLAN_REJECTED,
                    featureId=job_id,
                    projectPath=str(pending_project),
                    feedback=feedback,
                )
            self.approval_gate.resolve(job_id, approved, edited_plan, feedback)
            return {"success": True}

        if project_path is not None:
            project_path = Path(project_path)
            try:
                job = self.store.read(project_path, job_id)
            except JobStoreError as e:
                return {"success": False, "error": str(e)}

            if job is not None and job.plan_spec is not None and job.plan_spec.status == "generated":
                return await self._recover_plan_approval(project_path, job, approved, edited_plan, feedback)

        return {"success": False, "error": f"No pending approval for feature {job_id}"}

    async def _recover_plan_approval(
        self,
        project_path: Path,
        job: Job,
        approved: bool,
        edited_plan: str | None,
        feedback: str | None,
    ) -> dict[str, Any]:
        logger.info("Recovering plan approval for feature %s from persisted plan", job.id)
        if approved:
            plan_content = edited_plan or job.plan_spec.content or ""
            self.store.update_plan_spec(project_path, job.id, {
                "status": "approved",
                "approved_at": utc_now_iso(),
                "reviewed_by_user": True,
                "content": plan_content,
            })
            try:
                self.start_job(
                    project_path, job.id, use_worktrees=self.use_worktrees,
                    continuation_prompt=build_recovery_prompt(plan_content, feedback),
                )
            except JobAlreadyRunningError as e:
                return {"success": False, "error": str(e)}
            return {"success": True}

        self.store.update_plan_spec(project_path, job.id, {"status": "rejected", "reviewed_by_user": True})
        self.store.update_status(project_path, job.id, "backlog")
        self.events.emit_auto_mode_event(
            PLAN_REJECTED,
            featureId=job.id,
            projectPath=str(project_path),
            feedback=feedback,
        )
        return {"success": True}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def context_exists(self, project_path: str | Path, job_id: str) -> bool:
        """Whether a transcript from a previous run exists for the job."""
        return self.store.output_exists(Path(project_path), job_id)

    def is_job_running(self, job_id: str) -> bool:
        return job_id in self._running

    def get_running_agents(self) -> list[dict[str, Any]]:
        agents = []
        for running in self._running.values():
            info = running.to_dict()
            try:
                job = self.store.read(running.project_path, running.job_id)
            except JobStoreError:
                job = None
            info["title"] = job.title if job else None
            info["description"] = job.description if job else None
            agents.append(info)
        return agents

    def get_status(self, project_path: str | Path | None = None) -> dict[str, Any]:
        """Current orchestrator status."""
        project = Path(project_path) if project_path else self.project_path
        recovery: list[str] = []
        blocked: dict[str, list[str]] = {}
        cycles: list[list[str]] = []
        missing: dict[str, list[str]] = {}
        if project is not None:
            all_jobs = self.store.list_jobs(project)
            recovery = [
                job.id for job in all_jobs
                if job.plan_spec is not None
                and job.plan_spec.status == "generated"
                and not self.approval_gate.has_pending(job.id)
                and job.id not in self._running
            ]
            for job in all_jobs:
                if job.is_ready_status:
                    blocking = get_blocking_dependencies(job, all_jobs)
                    if blocking:
                        blocked[job.id] = blocking
            resolution = resolve_dependencies([job for job in all_jobs if not job.is_done_status])
            cycles = resolution.circular_dependencies
            done_ids = {job.id for job in all_jobs if job.is_done_status}
            missing = {
                job_id: [dep for dep in deps if dep not in done_ids]
                for job_id, deps in resolution.missing_dependencies.items()
            }
            missing = {job_id: deps for job_id, deps in missing.items() if deps}
        return {
            "is_running": self.is_running,
            "project_path": str(project) if project else None,
            "running_features": list(self._running.keys()),
            "running_count": len(self._running),
            "max_concurrency": self.max_concurrency,
            "pending_approvals": self.approval_gate.pending_job_ids(),
            "paused": self.failure_tracker.paused,
            "failure_count": self.failure_tracker.failure_count,
            "awaiting_approval_recovery": recovery,
            "blocked_features": blocked,
            "dependency_cycles": cycles,
            "missing_dependencies": missing,
        }

    async def shutdown(self) -> None:
        """Stop the loop, cancel every running job and wait for them to finish."""
        self.stop_loop()
        tasks = [r.task for r in self._running.values() if r.task is not None]
        for job_id in list(self._running):
            self.stop_job(job_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)

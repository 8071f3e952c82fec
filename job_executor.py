"""
Job Executor
============

Runs one feature job end-to-end inside an already-resolved workspace:

    in_progress -> [planning -> approval -> per-task calls] -> pipeline steps
                -> waiting_approval | verified

Planning state machine (PlanSpec.status):

    pending -> generating -> generated -> approved -> implementing
                                 |  ^
                          rejected with feedback (revision loop)

The only suspension point is the Plan Approval Gate. Errors propagate to the
orchestrator, which classifies them once and sets the terminal status.
"""

import asyncio
import dataclasses
import logging
import re
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent import (
    AssistantText,
    CancellationToken,
    ErrorEvent,
    ExecutionProvider,
    QueryRequest,
    ResultEvent,
    ToolUse,
)
from api.job_store import JobStore
from api.models import Job, ParsedTask, utc_now_iso
from auth import contains_stream_auth_marker
from client import BUILTIN_TOOLS, DEFAULT_MAX_TURNS
from env_constants import is_raw_output_enabled
from errors import (
    AgentExecutionError,
    AuthenticationError,
    PlanApprovalError,
    PlanApprovalTimeoutError,
    PlanCancelledError,
)
from events import (
    FEATURE_COMPLETE,
    FEATURE_START,
    PHASE_COMPLETE,
    PIPELINE_STEP_COMPLETE,
    PIPELINE_STEP_STARTED,
    PLAN_APPROVAL_REQUIRED,
    PLAN_APPROVED,
    PLAN_AUTO_APPROVED,
    PLAN_REVISION_REQUESTED,
    PROGRESS,
    TASK_COMPLETE,
    TASK_STARTED,
    TOOL,
    EventEmitter,
)
from output_writer import AgentOutputWriter
from pipeline_config import load_pipeline_steps
from plan_approval import ApprovalResult, PlanApprovalGate
from prompts import (
    PLAN_GENERATED_MARKER,
    SPEC_GENERATED_MARKER,
    build_continuation_prompt,
    build_feature_prompt,
    build_pipeline_step_prompt,
    build_revision_prompt,
    build_task_prompt,
    get_planning_prefix,
)
from task_parser import get_phase_number, parse_tasks_from_spec

logger = logging.getLogger(__name__)

# Turn cap for a single task call
MAX_TASK_TURNS = 50

FOLLOW_UP_SEPARATOR = "\n\n---\n\n## Follow-up Session\n\n"

_SUMMARY_RE = re.compile(r"<summary>([\s\S]*?)</summary>")


@dataclass
class RunningJob:
    """In-memory record of a job currently executing."""

    job_id: str
    project_path: Path
    is_auto_mode: bool = False
    use_worktrees: bool = False
    workspace_path: Path | None = None
    branch_name: str | None = None
    model: str | None = None
    provider: str | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    start_time: float = field(default_factory=time.time)
    task: asyncio.Task | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "featureId": self.job_id,
            "projectPath": str(self.project_path),
            "worktreePath": str(self.workspace_path) if self.workspace_path else None,
            "branchName": self.branch_name,
            "model": self.model,
            "provider": self.provider,
            "isAutoMode": self.is_auto_mode,
            "startTime": self.start_time,
        }


def planning_requires_approval_marker(job: Job) -> bool:
    """Whether this job's planning phase ends with the [SPEC_GENERATED] marker."""
    mode = job.planning_mode
    return mode in ("spec", "full", "lite_with_approval") or (
        mode == "lite" and job.require_plan_approval
    )


def extract_plan(text: str, marker: str = SPEC_GENERATED_MARKER) -> str:
    """Return the plan text preceding ``marker`` (or the whole text if absent)."""
    index = text.find(marker)
    if index < 0:
        return text.strip()
    return text[:index].strip()


def extract_summary(text: str) -> str | None:
    """Return the last <summary> block of an agent transcript."""
    matches = _SUMMARY_RE.findall(text or "")
    return matches[-1].strip() if matches else None


class JobExecutor:
    """Drives prompts, planning, task calls and pipeline steps for one job at a time."""

    def __init__(
        self,
        store: JobStore,
        provider: ExecutionProvider,
        events: EventEmitter,
        approval_gate: PlanApprovalGate,
        max_turns: int = DEFAULT_MAX_TURNS,
        mcp_servers: dict[str, Any] | None = None,
        raw_output_enabled: bool | None = None,
    ):
        self.store = store
        self.provider = provider
        self.events = events
        self.approval_gate = approval_gate
        self.max_turns = max_turns
        self.mcp_servers = mcp_servers or {}
        self.raw_output_enabled = (
            is_raw_output_enabled() if raw_output_enabled is None else raw_output_enabled
        )

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def run_job(
        self,
        running: RunningJob,
        job: Job,
        continuation_prompt: str | None = None,
        previous_content: str | None = None,
        run_pipeline: bool = True,
    ) -> str:
        """
        Execute a job whose workspace has been resolved.

        Args:
            running: The registered RunningJob (workspace_path and model set)
            job: The job record as loaded at start
            continuation_prompt: Replaces the built prompt and skips planning
            previous_content: Earlier transcript carried forward
            run_pipeline: Run the configured pipeline steps after the agent

        Returns:
            The final job status.
        """
        project_path = running.project_path
        self.store.write(project_path, job.id, {
            "status": "in_progress",
            "started_at": utc_now_iso(),
            "error": None,
        })
        self.events.emit_auto_mode_event(
            FEATURE_START,
            featureId=job.id,
            projectPath=str(project_path),
            feature={"id": job.id, "title": job.title, "description": job.description},
        )

        if continuation_prompt:
            prompt = continuation_prompt
            planning_mode = "skip"
        else:
            prompt = get_planning_prefix(job, project_path) + build_feature_prompt(job)
            planning_mode = job.planning_mode

        await self.run_agent(running, job, prompt, previous_content, planning_mode)
        if run_pipeline:
            await self.run_pipeline_steps(running, job)
        return self.finish_job(running, job)

    def finish_job(self, running: RunningJob, job: Job) -> str:
        """Write the final status and emit the completion event."""
        final_status = "waiting_approval" if job.skip_tests else "verified"
        patch: dict[str, Any] = {"status": final_status, "error": None}
        if final_status == "waiting_approval":
            patch["just_finished_at"] = utc_now_iso()

        summary = extract_summary(self.store.read_output(running.project_path, job.id) or "")
        if summary:
            patch["summary"] = summary
        self.store.write(running.project_path, job.id, patch)

        elapsed = int(time.time() - running.start_time)
        message = f"Feature completed in {elapsed}s"
        if final_status == "waiting_approval":
            message += " - ready for review"
        logger.info("Feature %s finished with status %s", job.id, final_status)
        self.events.emit_auto_mode_event(
            FEATURE_COMPLETE,
            featureId=job.id,
            passes=True,
            message=message,
            projectPath=str(running.project_path),
        )
        return final_status

    async def run_pipeline_steps(self, running: RunningJob, job: Job) -> None:
        steps = load_pipeline_steps(running.project_path)
        if not steps:
            return

        logger.info("Running %d pipeline step(s) for feature %s", len(steps), job.id)
        for index, step in enumerate(steps):
            running.cancel_token.raise_if_cancelled()
            self.store.update_status(running.project_path, job.id, step.status)
            details = {
                "featureId": job.id,
                "stepId": step.id,
                "stepName": step.name,
                "stepIndex": index,
                "totalSteps": len(steps),
                "projectPath": str(running.project_path),
            }
            self.events.emit_auto_mode_event(PIPELINE_STEP_STARTED, **details)

            previous = self.store.read_output(running.project_path, job.id) or ""
            prompt = build_pipeline_step_prompt(step.name, step.instructions, job, previous)
            await self.run_agent(running, job, prompt, previous, planning_mode="skip")

            self.events.emit_auto_mode_event(PIPELINE_STEP_COMPLETE, **details)

    # ------------------------------------------------------------------
    # Agent calls
    # ------------------------------------------------------------------

    async def run_agent(
        self,
        running: RunningJob,
        job: Job,
        prompt: str,
        previous_content: str | None = None,
        planning_mode: str = "skip",
    ) -> None:
        """
        Run the main agent call for a job, including planning and task execution.

        The transcript is flushed on every exit path.
        """
        initial = previous_content + FOLLOW_UP_SEPARATOR if previous_content else ""
        writer = AgentOutputWriter(
            self.store,
            running.project_path,
            job.id,
            initial_text=initial,
            raw_output_enabled=self.raw_output_enabled,
        )
        try:
            await self._run_main_stream(running, job, prompt, planning_mode, writer)
        finally:
            writer.close()

    async def _run_main_stream(
        self,
        running: RunningJob,
        job: Job,
        prompt: str,
        planning_mode: str,
        writer: AgentOutputWriter,
    ) -> None:
        project_path = running.project_path
        awaits_spec = planning_mode != "skip" and planning_requires_approval_marker(job)
        awaits_outline = planning_mode == "lite" and not awaits_spec
        response_start = len(writer.text)
        spec_detected = False

        if planning_mode != "skip":
            self.store.update_plan_spec(project_path, job.id, {"status": "generating"})

        stream = self.provider.execute_query(self._request(running, prompt))
        async with aclosing(stream):
            async for event in stream:
                text = self._handle_event(running, event, writer, include_result=False)
                if not text:
                    continue
                response = writer.text[response_start:]

                if awaits_spec and SPEC_GENERATED_MARKER in response:
                    spec_detected = True
                    break

                if awaits_outline and PLAN_GENERATED_MARKER in response:
                    awaits_outline = False
                    self._record_outline(running, job, extract_plan(response, PLAN_GENERATED_MARKER))

        if spec_detected:
            plan_content = extract_plan(writer.text[response_start:])
            await self._execute_plan(running, job, plan_content, planning_mode, writer)

    def _record_outline(self, running: RunningJob, job: Job, outline: str) -> None:
        """Lite mode without approval: keep the outline and approve it automatically."""
        now = utc_now_iso()
        tasks = parse_tasks_from_spec(outline)
        self.store.update_plan_spec(running.project_path, job.id, {
            "status": "approved",
            "content": outline,
            "version": 1,
            "generated_at": now,
            "approved_at": now,
            "reviewed_by_user": False,
            "tasks": [t.model_dump() for t in tasks],
            "tasks_total": len(tasks),
            "tasks_completed": 0,
        })
        self.events.emit_auto_mode_event(
            PLAN_AUTO_APPROVED,
            featureId=job.id,
            projectPath=str(running.project_path),
            planContent=outline,
            planningMode="lite",
        )

    async def _execute_plan(
        self,
        running: RunningJob,
        job: Job,
        plan_content: str,
        planning_mode: str,
        writer: AgentOutputWriter,
    ) -> None:
        project_path = running.project_path
        tasks = parse_tasks_from_spec(plan_content)
        logger.info("Plan generated for feature %s with %d task(s)", job.id, len(tasks))
        self.store.update_plan_spec(project_path, job.id, {
            "status": "generated",
            "content": plan_content,
            "version": 1,
            "generated_at": utc_now_iso(),
            "reviewed_by_user": False,
            "tasks": [t.model_dump() for t in tasks],
            "tasks_total": len(tasks),
            "tasks_completed": 0,
        })

        feedback: str | None = None
        if job.require_plan_approval:
            plan_content, tasks, feedback = await self._approval_loop(
                running, job, plan_content, tasks, planning_mode, writer
            )
            self.store.update_plan_spec(project_path, job.id, {
                "status": "approved",
                "approved_at": utc_now_iso(),
                "reviewed_by_user": True,
            })
        else:
            self.events.emit_auto_mode_event(
                PLAN_AUTO_APPROVED,
                featureId=job.id,
                projectPath=str(project_path),
                planContent=plan_content,
                planningMode=planning_mode,
            )
            self.store.update_plan_spec(project_path, job.id, {
                "status": "approved",
                "approved_at": utc_now_iso(),
                "reviewed_by_user": False,
            })

        if tasks:
            await self._execute_tasks(running, job, tasks, plan_content, feedback, writer)
        else:
            running.cancel_token.raise_if_cancelled()
            await self._stream_call(
                running, build_continuation_prompt(plan_content, feedback), writer, include_result=True
            )

    async def _approval_loop(
        self,
        running: RunningJob,
        job: Job,
        plan_content: str,
        tasks: list[ParsedTask],
        planning_mode: str,
        writer: AgentOutputWriter,
    ) -> tuple[str, list[ParsedTask], str | None]:
        """
        Suspend until a human approves the plan, revising it on feedback.

        Returns:
            (approved plan content, its tasks, approval feedback)
        """
        project_path = running.project_path
        plan_version = 1

        while True:
            running.cancel_token.raise_if_cancelled()
            # Register the waiter before announcing it so a fast resolve is never lost
            future = self.approval_gate.wait_for_approval(job.id, project_path)
            self.events.emit_auto_mode_event(
                PLAN_APPROVAL_REQUIRED,
                featureId=job.id,
                projectPath=str(project_path),
                planContent=plan_content,
                planningMode=planning_mode,
                planVersion=plan_version,
            )
            result = await self._await_approval(future)

            if result.approved:
                if result.has_edits:
                    plan_content = result.edited_plan.strip()
                    tasks = parse_tasks_from_spec(plan_content)
                    self.store.update_plan_spec(project_path, job.id, {
                        "content": plan_content,
                        "tasks": [t.model_dump() for t in tasks],
                        "tasks_total": len(tasks),
                        "tasks_completed": 0,
                    })
                logger.info("Plan v%d approved for feature %s", plan_version, job.id)
                self.events.emit_auto_mode_event(
                    PLAN_APPROVED,
                    featureId=job.id,
                    projectPath=str(project_path),
                    hasEdits=result.has_edits,
                    planVersion=plan_version,
                )
                return plan_content, tasks, result.feedback

            if not result.has_feedback and not result.has_edits:
                logger.info("Plan v%d rejected for feature %s", plan_version, job.id)
                self.store.update_plan_spec(project_path, job.id, {
                    "status": "rejected",
                    "reviewed_by_user": True,
                })
                raise PlanCancelledError()

            plan_version += 1
            logger.info("Revising plan for feature %s (v%d)", job.id, plan_version)
            self.events.emit_auto_mode_event(
                PLAN_REVISION_REQUESTED,
                featureId=job.id,
                projectPath=str(project_path),
                feedback=result.feedback,
                hasEdits=result.has_edits,
                planVersion=plan_version,
            )
            self.store.update_plan_spec(project_path, job.id, {
                "status": "generating",
                "version": plan_version,
            })

            base_plan = result.edited_plan if result.has_edits else plan_content
            revision_prompt = build_revision_prompt(base_plan, plan_version, result.feedback, planning_mode)
            revision_text = await self._stream_call(running, revision_prompt, writer, include_result=False)

            plan_content = extract_plan(revision_text)
            tasks = parse_tasks_from_spec(plan_content)
            self.store.update_plan_spec(project_path, job.id, {
                "status": "generated",
                "content": plan_content,
                "version": plan_version,
                "generated_at": utc_now_iso(),
                "tasks": [t.model_dump() for t in tasks],
                "tasks_total": len(tasks),
                "tasks_completed": 0,
            })

    async def _await_approval(self, future: asyncio.Future) -> ApprovalResult:
        try:
            return await future
        except (PlanCancelledError, PlanApprovalTimeoutError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise PlanApprovalError(f"Plan approval failed: {e}") from e

    async def _execute_tasks(
        self,
        running: RunningJob,
        job: Job,
        tasks: list[ParsedTask],
        plan_content: str,
        feedback: str | None,
        writer: AgentOutputWriter,
    ) -> None:
        project_path = running.project_path
        task_turns = min(self.max_turns, MAX_TASK_TURNS)
        tasks = [t.model_copy() for t in tasks]

        for index, task in enumerate(tasks):
            running.cancel_token.raise_if_cancelled()

            logger.info("Starting task %s (%d/%d) for feature %s", task.id, index + 1, len(tasks), job.id)
            self.events.emit_auto_mode_event(
                TASK_STARTED,
                featureId=job.id,
                projectPath=str(project_path),
                taskId=task.id,
                taskDescription=task.description,
                taskIndex=index,
                tasksTotal=len(tasks),
            )
            task.status = "in_progress"
            self.store.update_plan_spec(project_path, job.id, {
                "current_task_id": task.id,
                "tasks": [t.model_dump() for t in tasks],
            })

            prompt = build_task_prompt(task, tasks, index, plan_content, feedback)
            await self._stream_call(running, prompt, writer, include_result=True, max_turns=task_turns)

            task.status = "completed"
            self.events.emit_auto_mode_event(
                TASK_COMPLETE,
                featureId=job.id,
                projectPath=str(project_path),
                taskId=task.id,
                tasksCompleted=index + 1,
                tasksTotal=len(tasks),
            )
            self.store.update_plan_spec(project_path, job.id, {
                "tasks_completed": index + 1,
                "tasks": [t.model_dump() for t in tasks],
            })

            next_task = tasks[index + 1] if index + 1 < len(tasks) else None
            if task.phase and next_task and next_task.phase != task.phase:
                phase_number = get_phase_number(task.phase)
                if phase_number is not None:
                    self.events.emit_auto_mode_event(
                        PHASE_COMPLETE,
                        featureId=job.id,
                        projectPath=str(project_path),
                        phaseNumber=phase_number,
                    )

        self.store.update_plan_spec(project_path, job.id, {"current_task_id": None})

    async def _stream_call(
        self,
        running: RunningJob,
        prompt: str,
        writer: AgentOutputWriter,
        include_result: bool,
        max_turns: int | None = None,
    ) -> str:
        """Run one agent call to completion; return only the text it produced."""
        start = len(writer.text)
        stream = self.provider.execute_query(self._request(running, prompt, max_turns))
        async with aclosing(stream):
            async for event in stream:
                self._handle_event(running, event, writer, include_result)
        return writer.text[start:]

    def _request(self, running: RunningJob, prompt: str, max_turns: int | None = None) -> QueryRequest:
        return QueryRequest(
            prompt=prompt,
            model=running.model,
            cwd=running.workspace_path or running.project_path,
            allowed_tools=list(BUILTIN_TOOLS),
            cancel_token=running.cancel_token,
            mcp_servers=self.mcp_servers or None,
            max_turns=max_turns or self.max_turns,
        )

    def _handle_event(
        self,
        running: RunningJob,
        event: Any,
        writer: AgentOutputWriter,
        include_result: bool,
    ) -> str | None:
        """
        Apply one stream event to the transcript and event stream.

        Returns:
            The assistant text carried by the event, if any.
        """
        running.cancel_token.raise_if_cancelled()
        if self.raw_output_enabled:
            writer.record_raw_event({"type": type(event).__name__, **dataclasses.asdict(event)})

        details = {"featureId": running.job_id, "projectPath": str(running.project_path)}

        if isinstance(event, AssistantText):
            if contains_stream_auth_marker(event.text):
                raise AuthenticationError()
            writer.append_streamed(event.text)
            self.events.emit_auto_mode_event(PROGRESS, content=event.text, **details)
            return event.text

        if isinstance(event, ToolUse):
            writer.append_tool_use(event.name, event.input)
            self.events.emit_auto_mode_event(TOOL, tool=event.name, input=event.input, **details)
            return None

        if isinstance(event, ErrorEvent):
            raise AgentExecutionError(event.error)

        if isinstance(event, ResultEvent):
            if include_result and event.result:
                writer.append_streamed(event.result)
            return None

        logger.debug("Ignoring unknown agent event: %r", event)
        return None

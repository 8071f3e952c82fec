"""
Plan Approval Gate
==================

Per-job suspension point where a generated plan waits for a human decision.

A PendingApproval is an asyncio future keyed by job id with a timeout
handle. It is registered synchronously by wait_for_approval() so that the
"approval required" event can be emitted only after a resolver exists.
Every exit path (resolve, cancel, timeout, or the waiting task being
cancelled) removes the entry and releases the timer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from errors import PlanApprovalTimeoutError, PlanCancelledError

logger = logging.getLogger(__name__)

APPROVAL_TIMEOUT_SECONDS = 30 * 60


@dataclass(slots=True, frozen=True)
class ApprovalResult:
    """Human decision on a generated plan."""

    approved: bool
    edited_plan: str | None = None
    feedback: str | None = None

    @property
    def has_feedback(self) -> bool:
        return bool(self.feedback and self.feedback.strip())

    @property
    def has_edits(self) -> bool:
        return bool(self.edited_plan and self.edited_plan.strip())


@dataclass(slots=True)
class PendingApproval:
    job_id: str
    project_path: Path
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle


class PlanApprovalGate:
    """Registry of jobs suspended while a human reviews their plan."""

    def __init__(self, timeout_seconds: float = APPROVAL_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds
        self._pending: dict[str, PendingApproval] = {}

    def has_pending(self, job_id: str) -> bool:
        return job_id in self._pending

    def pending_job_ids(self) -> list[str]:
        return list(self._pending)

    def get_project_path(self, job_id: str) -> Path | None:
        pending = self._pending.get(job_id)
        return pending.project_path if pending else None

    def wait_for_approval(self, job_id: str, project_path: Path) -> asyncio.Future:
        """
        Register a pending approval and return the future to await.

        Must be called from the event loop. A previous wait for the same job
        is cancelled first.
        """
        previous = self._pending.get(job_id)
        if previous is not None:
            logger.warning("Replacing existing pending approval for feature %s", job_id)
            self._reject(job_id, PlanCancelledError("Plan approval superseded by a newer plan"))

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timeout_handle = loop.call_later(self.timeout_seconds, self._on_timeout, job_id, future)
        self._pending[job_id] = PendingApproval(job_id, Path(project_path), future, timeout_handle)
        future.add_done_callback(lambda fut: self._cleanup(job_id, fut))

        logger.info("Waiting for plan approval for feature %s", job_id)
        return future

    def resolve(
        self,
        job_id: str,
        approved: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
    ) -> bool:
        """
        Deliver a decision to a waiting job.

        Returns:
            True if a pending approval existed and was resolved.
        """
        pending = self._pending.get(job_id)
        if pending is None or pending.future.done():
            return False

        pending.future.set_result(ApprovalResult(approved, edited_plan, feedback))
        self._cleanup(job_id, pending.future)
        return True

    def cancel(self, job_id: str) -> bool:
        """Reject a pending approval because the job was stopped."""
        return self._reject(job_id, PlanCancelledError("Plan approval cancelled - feature was stopped"))

    def _reject(self, job_id: str, error: Exception) -> bool:
        pending = self._pending.get(job_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(error)
        self._cleanup(job_id, pending.future)
        return True

    def _on_timeout(self, job_id: str, future: asyncio.Future) -> None:
        pending = self._pending.get(job_id)
        if pending is None or pending.future is not future or future.done():
            return
        minutes = self.timeout_seconds / 60
        logger.warning("Plan approval for feature %s timed out after %.0f minutes", job_id, minutes)
        future.set_exception(
            PlanApprovalTimeoutError(f"Plan approval timed out after {minutes:.0f} minutes")
        )
        self._cleanup(job_id, future)

    def _cleanup(self, job_id: str, future: asyncio.Future) -> None:
        pending = self._pending.get(job_id)
        if pending is None or pending.future is not future:
            return
        pending.timeout_handle.cancel()
        del self._pending[job_id]

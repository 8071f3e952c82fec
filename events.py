"""
Auto Mode Events
================

In-process event emitter for orchestrator notifications.

Every event is delivered under the name ``auto-mode:event`` with a payload
``{"type": <event type>, ...details}``. Subscribers may be plain functions
or coroutine functions; coroutine callbacks are scheduled on the running
loop. A failing subscriber is logged and never affects the orchestrator.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

AUTO_MODE_EVENT = "auto-mode:event"

# Loop lifecycle
AUTO_MODE_STARTED = "auto_mode_started"
AUTO_MODE_STOPPED = "auto_mode_stopped"
AUTO_MODE_IDLE = "auto_mode_idle"
AUTO_MODE_ERROR = "auto_mode_error"
AUTO_MODE_PAUSED_FAILURES = "auto_mode_paused_failures"

# Job lifecycle
FEATURE_START = "auto_mode_feature_start"
FEATURE_COMPLETE = "auto_mode_feature_complete"
PROGRESS = "auto_mode_progress"
TOOL = "auto_mode_tool"
TASK_STARTED = "auto_mode_task_started"
TASK_COMPLETE = "auto_mode_task_complete"
PHASE_COMPLETE = "auto_mode_phase_complete"

# Planning
PLAN_APPROVAL_REQUIRED = "plan_approval_required"
PLAN_APPROVED = "plan_approved"
PLAN_AUTO_APPROVED = "plan_auto_approved"
PLAN_REJECTED = "plan_rejected"
PLAN_REVISION_REQUESTED = "plan_revision_requested"

# Pipeline
PIPELINE_STEP_STARTED = "pipeline_step_started"
PIPELINE_STEP_COMPLETE = "pipeline_step_complete"

EventCallback = Callable[[str, dict[str, Any]], Union[None, Awaitable[None]]]


class EventEmitter:
    """Fan-out of orchestrator events to registered subscribers."""

    def __init__(self):
        self._callbacks: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            A function that removes the subscription.
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """Deliver an event to every subscriber."""
        for callback in list(self._callbacks):
            try:
                result = callback(event_name, payload)
            except Exception as e:
                logger.warning("Event callback error: %s", e)
                continue
            if inspect.isawaitable(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    logger.warning("Dropping async event callback: no running event loop")
                    if inspect.iscoroutine(result):
                        result.close()
                    continue
                loop.create_task(self._safe_callback(result))

    def emit_auto_mode_event(self, event_type: str, **data: Any) -> None:
        """Emit an ``auto-mode:event`` with the given type and details."""
        self.emit(AUTO_MODE_EVENT, {"type": event_type, **data})

    async def _safe_callback(self, awaitable: Awaitable[None]) -> None:
        """Await a subscriber coroutine, catching and logging any errors."""
        try:
            await awaitable
        except Exception as e:
            logger.warning("Event callback error: %s", e)

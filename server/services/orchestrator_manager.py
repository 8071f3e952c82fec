"""
Orchestrator Manager
====================

Owns the process-wide AutoModeOrchestrator used by the API routers.

The orchestrator is created lazily from the global settings (model,
worktree use, approval timeout, MCP servers) and torn down on shutdown.
"""

import logging
import threading

from events import EventEmitter
from parallel_orchestrator import AutoModeOrchestrator
from registry import get_auto_mode_settings

logger = logging.getLogger(__name__)

_orchestrator: AutoModeOrchestrator | None = None
_orchestrator_lock = threading.Lock()


def _event_logger(event_name: str, payload: dict) -> None:
    logger.debug("%s %s", event_name, payload.get("type"))


def get_orchestrator() -> AutoModeOrchestrator:
    """Get or create the shared orchestrator (thread-safe)."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            settings = get_auto_mode_settings()
            events = EventEmitter()
            events.subscribe(_event_logger)
            _orchestrator = AutoModeOrchestrator(
                events=events,
                approval_timeout_seconds=settings["approval_timeout_minutes"] * 60,
                default_model=settings["model"],
                use_worktrees=settings["use_worktrees"],
                mcp_servers=settings["mcp_servers"],
            )
            logger.info("Created auto mode orchestrator (model %s)", settings["model"])
        return _orchestrator


def set_orchestrator(orchestrator: AutoModeOrchestrator | None) -> None:
    """Replace the shared orchestrator (used by tests and embedding applications)."""
    global _orchestrator
    with _orchestrator_lock:
        _orchestrator = orchestrator


async def cleanup_orchestrator() -> None:
    """Stop auto mode and every running feature. Called on server shutdown."""
    global _orchestrator
    with _orchestrator_lock:
        orchestrator = _orchestrator
        _orchestrator = None

    if orchestrator is not None:
        await orchestrator.shutdown()

#!/usr/bin/env python3
"""
FeatureForge Auto Mode
======================

Command line harness that runs the feature orchestrator against a project.

Example Usage:
    # Work through the backlog with up to 3 concurrent features
    python autonomous_agent_demo.py --project-dir /path/to/project

    # Run a single feature and exit
    python autonomous_agent_demo.py --project-dir /path/to/project --feature-id add-login

    # Approve every generated plan automatically and exit once idle
    python autonomous_agent_demo.py --project-dir /path/to/project --approve-plans --exit-when-idle
"""

import argparse
import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file (if it exists)
# Must be called BEFORE importing modules that read env vars at load time
load_dotenv()

from events import AUTO_MODE_IDLE, PLAN_APPROVAL_REQUIRED, EventEmitter
from parallel_orchestrator import MAX_CONCURRENCY_LIMIT, AutoModeOrchestrator
from registry import get_auto_mode_settings

logger = logging.getLogger("featureforge")


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    settings = get_auto_mode_settings()
    parser = argparse.ArgumentParser(
        description="FeatureForge - autonomous feature execution",
    )
    parser.add_argument(
        "--project-dir",
        type=str,
        required=True,
        help="Project directory path",
    )
    parser.add_argument(
        "--concurrency",
        "-c",
        type=int,
        default=settings["max_concurrency"],
        help=f"Maximum concurrent features (1-{MAX_CONCURRENCY_LIMIT}, default: {settings['max_concurrency']})",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=settings["model"],
        help=f"Default model for features without one (default: {settings['model']})",
    )
    parser.add_argument(
        "--feature-id",
        type=str,
        default=None,
        help="Run only this feature instead of the auto mode loop",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        default=False,
        help="With --feature-id: continue from the saved agent output",
    )
    parser.add_argument(
        "--no-worktrees",
        action="store_true",
        default=False,
        help="Always run in the project root instead of the feature's git worktree",
    )
    parser.add_argument(
        "--approve-plans",
        action="store_true",
        default=False,
        help="Approve generated plans automatically",
    )
    parser.add_argument(
        "--exit-when-idle",
        action="store_true",
        default=False,
        help="Stop auto mode once no features are pending or running",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Enable debug logging",
    )
    return parser.parse_args()


async def run_auto_mode(
    project_dir: Path,
    concurrency: int,
    model: str,
    use_worktrees: bool,
    approve_plans: bool,
    exit_when_idle: bool,
    feature_id: str | None = None,
    resume: bool = False,
) -> None:
    settings = get_auto_mode_settings()
    events = EventEmitter()
    orchestrator = AutoModeOrchestrator(
        events=events,
        approval_timeout_seconds=settings["approval_timeout_minutes"] * 60,
        default_model=model,
        use_worktrees=use_worktrees,
        mcp_servers=settings["mcp_servers"],
    )

    async def on_event(event_name: str, payload: dict) -> None:
        event_type = payload.get("type")
        message = payload.get("message") or payload.get("error")
        if event_type not in ("auto_mode_progress", "auto_mode_tool"):
            logger.info("[%s] %s%s", event_type, payload.get("featureId") or "",
                        f" - {message}" if message else "")

        if event_type == PLAN_APPROVAL_REQUIRED and approve_plans:
            await orchestrator.resolve_plan_approval(payload["featureId"], approved=True)
        elif event_type == AUTO_MODE_IDLE and exit_when_idle and not orchestrator.get_running_agents():
            orchestrator.stop_loop()

    events.subscribe(on_event)

    try:
        if feature_id:
            if resume:
                await orchestrator.resume_job(project_dir, feature_id, use_worktrees)
            else:
                await orchestrator.execute_job(project_dir, feature_id, use_worktrees)
        else:
            await orchestrator.start_loop(project_dir, concurrency)
            # Loop has stopped (idle exit or failure pause); let running features finish
            while orchestrator.get_running_agents():
                await asyncio.sleep(1)
    finally:
        await orchestrator.shutdown()


def main() -> None:
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_dir = Path(args.project_dir).expanduser()
    if not project_dir.is_dir():
        logger.error("Project directory does not exist: %s", project_dir)
        return

    concurrency = max(1, min(args.concurrency, MAX_CONCURRENCY_LIMIT))
    if concurrency != args.concurrency:
        logger.warning("Clamping concurrency to valid range: %d", concurrency)

    try:
        asyncio.run(
            run_auto_mode(
                project_dir=project_dir.resolve(),
                concurrency=concurrency,
                model=args.model,
                use_worktrees=not args.no_worktrees,
                approve_plans=args.approve_plans,
                exit_when_idle=args.exit_when_idle,
                feature_id=args.feature_id,
                resume=args.resume,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted by user. To resume, run the same command again")


if __name__ == "__main__":
    main()

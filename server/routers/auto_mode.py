"""
Auto Mode Router
================

API endpoints for the auto mode loop and per-feature control
(run/stop/resume/follow-up) and plan approval.
"""

import logging
from pathlib import Path

from fastapi import APIRouter, HTTPException

from api.job_store import JobStoreError
from errors import AutoModeAlreadyRunningError, JobAlreadyRunningError, WorkspaceValidationError
from registry import get_auto_mode_settings
from workspace import validate_working_directory

from ..schemas import (
    ActionResponse,
    ApprovePlanRequest,
    AutoModeStatus,
    FollowUpFeatureRequest,
    ResumeFeatureRequest,
    RunFeatureRequest,
    RunningAgentsResponse,
    StartAutoModeRequest,
    StopAutoModeResponse,
    StopFeatureRequest,
)
from ..services.orchestrator_manager import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auto-mode", tags=["auto-mode"])


def _validate_project(project_path: str) -> Path:
    try:
        return validate_working_directory(project_path)
    except WorkspaceValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _require_feature(project_dir: Path, feature_id: str) -> None:
    orchestrator = get_orchestrator()
    try:
        job = orchestrator.store.read(project_dir, feature_id)
    except JobStoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if job is None:
        raise HTTPException(status_code=404, detail=f"Feature {feature_id} not found")


def _use_worktrees(requested: bool | None) -> bool:
    if requested is not None:
        return requested
    return get_orchestrator().use_worktrees


@router.post("/start", response_model=ActionResponse)
async def start_auto_mode(request: StartAutoModeRequest):
    """Start the auto mode loop for a project."""
    project_dir = _validate_project(request.project_path)
    max_concurrency = request.max_concurrency or get_auto_mode_settings()["max_concurrency"]

    try:
        get_orchestrator().start_loop(project_dir, max_concurrency)
    except AutoModeAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ActionResponse(
        success=True,
        message=f"Auto mode started with max {max_concurrency} concurrent features",
    )


@router.post("/stop", response_model=StopAutoModeResponse)
async def stop_auto_mode():
    """Stop scheduling new features. Running features continue."""
    running = get_orchestrator().stop_loop()
    return StopAutoModeResponse(success=True, running_features=running)


@router.get("/status", response_model=AutoModeStatus)
async def get_auto_mode_status(project_path: str | None = None):
    """Get the auto mode loop state and running features."""
    return AutoModeStatus(**get_orchestrator().get_status(project_path))


@router.post("/run-feature", response_model=ActionResponse)
async def run_feature(request: RunFeatureRequest):
    """Start a single feature in the background."""
    project_dir = _validate_project(request.project_path)
    _require_feature(project_dir, request.feature_id)

    try:
        get_orchestrator().start_job(
            project_dir, request.feature_id, _use_worktrees(request.use_worktrees)
        )
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ActionResponse(success=True, message=f"Feature {request.feature_id} started")


@router.post("/stop-feature", response_model=ActionResponse)
async def stop_feature(request: StopFeatureRequest):
    """Stop a running feature."""
    stopped = get_orchestrator().stop_job(request.feature_id)
    if not stopped:
        return ActionResponse(success=False, error=f"Feature {request.feature_id} is not running")
    return ActionResponse(success=True, message=f"Feature {request.feature_id} stopped")


@router.post("/resume-feature", response_model=ActionResponse)
async def resume_feature(request: ResumeFeatureRequest):
    """Resume a feature from its saved output, or start it fresh."""
    project_dir = _validate_project(request.project_path)
    _require_feature(project_dir, request.feature_id)

    try:
        get_orchestrator().start_resume_job(
            project_dir, request.feature_id, _use_worktrees(request.use_worktrees)
        )
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ActionResponse(success=True, message=f"Feature {request.feature_id} resumed")


@router.post("/follow-up-feature", response_model=ActionResponse)
async def follow_up_feature(request: FollowUpFeatureRequest):
    """Continue a feature with additional instructions."""
    project_dir = _validate_project(request.project_path)
    _require_feature(project_dir, request.feature_id)

    try:
        get_orchestrator().start_follow_up_job(
            project_dir,
            request.feature_id,
            request.prompt,
            request.image_paths,
            _use_worktrees(request.use_worktrees),
        )
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ActionResponse(success=True, message=f"Follow-up started for feature {request.feature_id}")


@router.post("/approve-plan", response_model=ActionResponse)
async def approve_plan(request: ApprovePlanRequest):
    """Approve or reject a generated plan."""
    result = await get_orchestrator().resolve_plan_approval(
        request.feature_id,
        request.approved,
        request.edited_plan,
        request.feedback,
        request.project_path,
    )
    if not result.get("success"):
        raise HTTPException(status_code=400, detail=result.get("error") or "Plan approval failed")

    message = "Plan approved" if request.approved else "Plan rejected"
    return ActionResponse(success=True, message=message)


@router.get("/running-agents", response_model=RunningAgentsResponse)
async def get_running_agents():
    """List features currently executing."""
    return RunningAgentsResponse.from_agents(get_orchestrator().get_running_agents())

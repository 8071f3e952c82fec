"""
Pydantic Schemas
================

Request/Response models for the auto mode API endpoints.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator


def _validate_feature_id(v: str) -> str:
    """Feature ids name a directory under .featureforge/features."""
    v = v.strip()
    if not v or "/" in v or "\\" in v or v in (".", ".."):
        raise ValueError("Invalid feature id")
    return v


class FeatureRequest(BaseModel):
    """Base request addressing one feature in a project."""
    project_path: str = Field(..., min_length=1)
    feature_id: str = Field(..., min_length=1, max_length=200)

    @field_validator("feature_id")
    @classmethod
    def validate_feature_id(cls, v: str) -> str:
        return _validate_feature_id(v)


# ============================================================================
# Auto Mode Loop
# ============================================================================

class StartAutoModeRequest(BaseModel):
    project_path: str = Field(..., min_length=1)
    max_concurrency: int | None = Field(default=None, ge=1, le=10)


class StopAutoModeResponse(BaseModel):
    success: bool
    running_features: int


class AutoModeStatus(BaseModel):
    is_running: bool
    project_path: str | None = None
    running_features: list[str] = Field(default_factory=list)
    running_count: int = 0
    max_concurrency: int
    pending_approvals: list[str] = Field(default_factory=list)
    paused: bool = False
    failure_count: int = 0
    awaiting_approval_recovery: list[str] = Field(default_factory=list)
    blocked_features: dict[str, list[str]] = Field(default_factory=dict)
    dependency_cycles: list[list[str]] = Field(default_factory=list)
    missing_dependencies: dict[str, list[str]] = Field(default_factory=dict)


# ============================================================================
# Feature Control
# ============================================================================

class RunFeatureRequest(FeatureRequest):
    use_worktrees: bool | None = None


class ResumeFeatureRequest(FeatureRequest):
    use_worktrees: bool | None = None


class FollowUpFeatureRequest(FeatureRequest):
    prompt: str = Field(..., min_length=1)
    image_paths: list[str] | None = None
    use_worktrees: bool | None = None


class StopFeatureRequest(BaseModel):
    feature_id: str = Field(..., min_length=1, max_length=200)

    @field_validator("feature_id")
    @classmethod
    def validate_feature_id(cls, v: str) -> str:
        return _validate_feature_id(v)


class ApprovePlanRequest(BaseModel):
    feature_id: str = Field(..., min_length=1, max_length=200)
    approved: bool
    edited_plan: str | None = None
    feedback: str | None = None
    project_path: str | None = None

    @field_validator("feature_id")
    @classmethod
    def validate_feature_id(cls, v: str) -> str:
        return _validate_feature_id(v)


class ActionResponse(BaseModel):
    success: bool
    message: str | None = None
    error: str | None = None


class RunningAgent(BaseModel):
    featureId: str
    projectPath: str
    worktreePath: str | None = None
    branchName: str | None = None
    model: str | None = None
    provider: str | None = None
    isAutoMode: bool = False
    startTime: float
    title: str | None = None
    description: str | None = None


class RunningAgentsResponse(BaseModel):
    agents: list[RunningAgent]
    count: int

    @classmethod
    def from_agents(cls, agents: list[dict[str, Any]]) -> "RunningAgentsResponse":
        return cls(agents=[RunningAgent(**a) for a in agents], count=len(agents))

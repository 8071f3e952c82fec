"""
Job Models
==========

Pydantic models for the persisted job record (``feature.json``).

A Job owns an optional PlanSpec, which owns the ordered ParsedTask list
extracted from the generated plan. Unknown keys found on disk are kept
so that records written by other tools survive a round trip.
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PlanningMode = Literal["skip", "lite", "lite_with_approval", "spec", "full"]
PlanStatus = Literal["pending", "generating", "generated", "approved", "rejected"]
TaskStatus = Literal["pending", "in_progress", "completed", "failed"]

# Job statuses the scheduler may pick up
READY_STATUSES = ("pending", "ready", "backlog")

# Job statuses that satisfy a dependency
DONE_STATUSES = ("completed", "verified", "waiting_approval")


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class ParsedTask(BaseModel):
    """A single task extracted from a generated plan."""

    id: str = Field(..., pattern=r"^T\d{3}$")
    description: str
    file_path: str | None = None
    phase: str | None = None
    status: TaskStatus = "pending"


class PlanSpec(BaseModel):
    """Generated plan, its approval state and task progress."""

    status: PlanStatus = "pending"
    content: str | None = None
    version: int = Field(default=1, ge=1)
    generated_at: str | None = None
    approved_at: str | None = None
    reviewed_by_user: bool = False
    tasks: list[ParsedTask] = Field(default_factory=list)
    tasks_total: int = 0
    tasks_completed: int = 0
    current_task_id: str | None = None


class Job(BaseModel):
    """A feature job as persisted in ``feature.json``."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    description: str = ""
    title: str | None = None
    spec: str | None = None
    model: str | None = None
    planning_mode: PlanningMode = "skip"
    require_plan_approval: bool = False
    branch_name: str | None = None
    status: str = "backlog"
    dependencies: list[str] = Field(default_factory=list)
    skip_tests: bool = False
    image_paths: list[str] = Field(default_factory=list)
    error: str | None = None
    summary: str | None = None
    plan_spec: PlanSpec | None = None
    created_at: str | None = None
    updated_at: str | None = None
    started_at: str | None = None
    just_finished_at: str | None = None

    @property
    def has_unapproved_plan(self) -> bool:
        """True if a plan was generated but rejected or never approved."""
        return self.plan_spec is not None and self.plan_spec.status in ("generated", "rejected")

    @property
    def is_ready_status(self) -> bool:
        return self.status in READY_STATUSES

    @property
    def is_done_status(self) -> bool:
        return self.status in DONE_STATUSES

"""
API Package
============

Job models, file-backed job storage and dependency resolution.
"""

from api.dependency_resolver import are_dependencies_satisfied, resolve_dependencies
from api.job_store import JobStore, JobStoreError
from api.models import Job, ParsedTask, PlanSpec

__all__ = [
    "Job",
    "JobStore",
    "JobStoreError",
    "ParsedTask",
    "PlanSpec",
    "are_dependencies_satisfied",
    "resolve_dependencies",
]

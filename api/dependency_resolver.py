"""
Dependency Resolver
===================

Orders jobs so that dependencies come before dependents (Kahn's algorithm)
and answers whether a job's dependencies are satisfied.

Ordering is stable: among jobs that become available at the same time,
the input order is kept. Jobs caught in a dependency cycle are appended
after the acyclic part, in input order, and reported.
"""

import logging
from collections import deque
from dataclasses import dataclass, field

from api.models import Job

logger = logging.getLogger(__name__)


@dataclass
class ResolutionResult:
    """Result of ordering a set of jobs."""

    ordered_jobs: list[Job]
    circular_dependencies: list[list[str]] = field(default_factory=list)
    missing_dependencies: dict[str, list[str]] = field(default_factory=dict)


def resolve_dependencies(jobs: list[Job]) -> ResolutionResult:
    """
    Topologically sort ``jobs`` by their in-set dependencies.

    Dependencies that point outside the given set do not constrain the
    order; they are reported in ``missing_dependencies``.
    """
    by_id = {job.id: job for job in jobs}
    position = {job.id: i for i, job in enumerate(jobs)}
    in_degree = {job.id: 0 for job in jobs}
    dependents: dict[str, list[str]] = {job.id: [] for job in jobs}
    missing: dict[str, list[str]] = {}

    for job in jobs:
        for dep_id in dict.fromkeys(job.dependencies):
            if dep_id in by_id and dep_id != job.id:
                in_degree[job.id] += 1
                dependents[dep_id].append(job.id)
            elif dep_id not in by_id:
                missing.setdefault(job.id, []).append(dep_id)

    queue = deque(job.id for job in jobs if in_degree[job.id] == 0)
    ordered: list[Job] = []

    while queue:
        job_id = queue.popleft()
        ordered.append(by_id[job_id])
        released = []
        for dependent_id in dependents[job_id]:
            in_degree[dependent_id] -= 1
            if in_degree[dependent_id] == 0:
                released.append(dependent_id)
        # Keep input order among jobs released together
        for dependent_id in sorted(released, key=position.__getitem__):
            queue.append(dependent_id)

    cycles: list[list[str]] = []
    if len(ordered) < len(jobs):
        remaining = [job for job in jobs if in_degree[job.id] > 0]
        cycles.append([job.id for job in remaining])
        logger.warning("Circular dependencies detected among: %s", [job.id for job in remaining])
        ordered.extend(remaining)

    return ResolutionResult(
        ordered_jobs=ordered,
        circular_dependencies=cycles,
        missing_dependencies=missing,
    )


def are_dependencies_satisfied(job: Job, all_jobs: list[Job]) -> bool:
    """
    True if every dependency of ``job`` is done.

    A dependency counts as done when its status is completed, verified or
    waiting_approval. Dependencies that no longer exist (archived or
    deleted jobs) do not block.
    """
    if not job.dependencies:
        return True
    return not get_blocking_dependencies(job, all_jobs)


def get_blocking_dependencies(job: Job, all_jobs: list[Job]) -> list[str]:
    """Return the ids of dependencies that still block ``job``."""
    by_id = {other.id: other for other in all_jobs}
    return [
        dep_id for dep_id in job.dependencies
        if dep_id in by_id and not by_id[dep_id].is_done_status
    ]

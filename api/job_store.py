"""
Job Store
=========

File-backed persistence for jobs, keyed by project path + job id.

Each job lives in ``.featureforge/features/<id>/feature.json``. The store is
a minimal read / write(patch) / list contract plus helpers for the agent
transcript (overwrite) and the raw stream log (append). It is not a
queryable database: listing scans the features directory.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from api.models import Job, PlanSpec, utc_now_iso
from featureforge_paths import (
    ensure_featureforge_dir,
    get_agent_output_path,
    get_feature_file_path,
    get_features_dir,
    get_raw_output_path,
)

logger = logging.getLogger(__name__)


class JobStoreError(Exception):
    """Raised when a job record cannot be read or written."""
    pass


def _atomic_write_text(path: Path, content: str) -> None:
    """Write a file via temp file + rename so readers never see a partial write."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(content, encoding="utf-8")
    os.replace(tmp_path, path)


class JobStore:
    """Reads and writes job records under a project's ``.featureforge`` directory."""

    def read(self, project_path: Path, job_id: str) -> Job | None:
        """
        Load a job record.

        Returns:
            The Job, or None if the record does not exist.

        Raises:
            JobStoreError: If the record exists but is unreadable or invalid.
        """
        path = get_feature_file_path(Path(project_path), job_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Job.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise JobStoreError(f"Could not load feature {job_id}: {e}") from e

    def create(self, project_path: Path, job: Job) -> Job:
        """Persist a new job record (overwrites an existing one with the same id)."""
        ensure_featureforge_dir(Path(project_path))
        now = utc_now_iso()
        job = job.model_copy(update={"created_at": job.created_at or now, "updated_at": now})
        self._save(Path(project_path), job)
        return job

    def write(self, project_path: Path, job_id: str, patch: dict[str, Any]) -> Job:
        """
        Merge ``patch`` into the stored job and persist it.

        Raises:
            JobStoreError: If the job does not exist or the result is invalid.
        """
        job = self.read(project_path, job_id)
        if job is None:
            raise JobStoreError(f"Feature {job_id} not found")

        data = job.model_dump(mode="json")
        data.update(patch)
        data["updated_at"] = utc_now_iso()
        try:
            updated = Job.model_validate(data)
        except ValidationError as e:
            raise JobStoreError(f"Invalid update for feature {job_id}: {e}") from e

        self._save(Path(project_path), updated)
        return updated

    def update_status(self, project_path: Path, job_id: str, status: str) -> Job:
        """Set a job's status, stamping ``just_finished_at`` for waiting_approval."""
        patch: dict[str, Any] = {"status": status}
        patch["just_finished_at"] = utc_now_iso() if status == "waiting_approval" else None
        return self.write(project_path, job_id, patch)

    def update_plan_spec(self, project_path: Path, job_id: str, patch: dict[str, Any]) -> PlanSpec:
        """
        Apply ``patch`` to the job's PlanSpec, creating a pending spec if missing.

        Returns:
            The updated PlanSpec.
        """
        job = self.read(project_path, job_id)
        if job is None:
            raise JobStoreError(f"Feature {job_id} not found")

        plan_spec = job.plan_spec or PlanSpec()
        data = plan_spec.model_dump(mode="json")
        data.update({k: v for k, v in patch.items() if v is not None or k == "current_task_id"})
        try:
            updated_spec = PlanSpec.model_validate(data)
        except ValidationError as e:
            raise JobStoreError(f"Invalid plan update for feature {job_id}: {e}") from e

        self.write(project_path, job_id, {"plan_spec": updated_spec.model_dump(mode="json")})
        return updated_spec

    def list_jobs(self, project_path: Path) -> list[Job]:
        """Load every readable job in the project; invalid records are skipped."""
        features_dir = get_features_dir(Path(project_path))
        if not features_dir.is_dir():
            return []

        jobs: list[Job] = []
        for entry in sorted(features_dir.iterdir()):
            if not entry.is_dir():
                continue
            try:
                job = self.read(project_path, entry.name)
            except JobStoreError as e:
                logger.warning("Skipping invalid feature %s: %s", entry.name, e)
                continue
            if job is not None:
                jobs.append(job)
        return jobs

    # ------------------------------------------------------------------
    # Transcript helpers
    # ------------------------------------------------------------------

    def read_output(self, project_path: Path, job_id: str) -> str | None:
        """Return the saved agent transcript, or None if there is none."""
        path = get_agent_output_path(Path(project_path), job_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_output(self, project_path: Path, job_id: str, content: str) -> None:
        """Overwrite the agent transcript."""
        try:
            _atomic_write_text(get_agent_output_path(Path(project_path), job_id), content)
        except OSError as e:
            raise JobStoreError(f"Could not write output for feature {job_id}: {e}") from e

    def append_raw_output(self, project_path: Path, job_id: str, lines: list[str]) -> None:
        """Append NDJSON lines to the raw stream log."""
        if not lines:
            return
        path = get_raw_output_path(Path(project_path), job_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            raise JobStoreError(f"Could not write raw output for feature {job_id}: {e}") from e

    def output_exists(self, project_path: Path, job_id: str) -> bool:
        return get_agent_output_path(Path(project_path), job_id).exists()

    def _save(self, project_path: Path, job: Job) -> None:
        path = get_feature_file_path(project_path, job.id)
        try:
            _atomic_write_text(path, json.dumps(job.model_dump(mode="json"), indent=2))
        except OSError as e:
            raise JobStoreError(f"Could not save feature {job.id}: {e}") from e

"""
Pipeline Configuration
======================

Post-implementation pipeline steps read from ``.featureforge/pipeline.yaml``:

    steps:
      - id: review
        name: Code Review
        order: 1
        instructions: |
          Review the changes for correctness and style.

Steps run in ascending ``order`` after the main implementation. A missing
file means no steps. An unreadable or invalid file is logged and ignored.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from featureforge_paths import get_pipeline_config_path

logger = logging.getLogger(__name__)


class PipelineStep(BaseModel):
    id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    name: str = Field(..., min_length=1)
    order: int = 0
    instructions: str = ""

    @property
    def status(self) -> str:
        """Job status while this step runs."""
        return f"pipeline_{self.id}"


def load_pipeline_steps(project_dir: Path) -> list[PipelineStep]:
    """Load the project's pipeline steps, sorted by ``order``."""
    config_path = get_pipeline_config_path(project_dir)
    if not config_path.exists():
        return []

    try:
        with open(config_path, encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Ignoring pipeline config %s: %s", config_path, e)
        return []

    if not config:
        return []
    if not isinstance(config, dict) or not isinstance(config.get("steps", []), list):
        logger.warning("Ignoring pipeline config %s: expected a 'steps' list", config_path)
        return []

    try:
        steps = [PipelineStep.model_validate(raw) for raw in config.get("steps") or []]
    except ValidationError as e:
        logger.warning("Ignoring pipeline config %s: %s", config_path, e)
        return []

    return sorted(steps, key=lambda step: step.order)

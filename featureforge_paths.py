"""
FeatureForge Path Resolution
============================

Central module for resolving paths to FeatureForge-managed files within a project.

Every job owns a directory under ``<project>/.featureforge/features/<job_id>/``:

    feature.json       Job record (status, branch, plan spec, parsed tasks)
    agent-output.md    Accumulated agent transcript
    raw-output.jsonl   Raw stream events (only when debug raw output is enabled)

Project-level configuration lives next to it:

    .featureforge/pipeline.yaml   Post-implementation pipeline steps
    .featureforge/prompts/        Project-specific prompt overrides
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

FEATUREFORGE_DIR_NAME = ".featureforge"

FEATURE_FILE = "feature.json"
AGENT_OUTPUT_FILE = "agent-output.md"
RAW_OUTPUT_FILE = "raw-output.jsonl"
PIPELINE_FILE = "pipeline.yaml"

# ---------------------------------------------------------------------------
# .gitignore content written into every .featureforge/ directory
# ---------------------------------------------------------------------------
_GITIGNORE_CONTENT = """\
# FeatureForge runtime files
features/*/raw-output.jsonl
.claude_settings.json
"""


def get_featureforge_dir(project_dir: Path) -> Path:
    """Return the ``.featureforge`` directory path.  Does NOT create it."""
    return Path(project_dir) / FEATUREFORGE_DIR_NAME


def ensure_featureforge_dir(project_dir: Path) -> Path:
    """Create the ``.featureforge/`` directory (if needed) and write its ``.gitignore``.

    Returns:
        The path to the ``.featureforge`` directory.
    """
    featureforge_dir = get_featureforge_dir(project_dir)
    featureforge_dir.mkdir(parents=True, exist_ok=True)

    gitignore_path = featureforge_dir / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text(_GITIGNORE_CONTENT, encoding="utf-8")

    return featureforge_dir


# ---------------------------------------------------------------------------
# Per-job paths
# ---------------------------------------------------------------------------

def get_features_dir(project_dir: Path) -> Path:
    """Return the directory holding one sub-directory per job."""
    return get_featureforge_dir(project_dir) / "features"


def get_feature_dir(project_dir: Path, job_id: str) -> Path:
    """Return the directory for a single job."""
    return get_features_dir(project_dir) / job_id


def get_feature_file_path(project_dir: Path, job_id: str) -> Path:
    """Resolve the path to a job's ``feature.json``."""
    return get_feature_dir(project_dir, job_id) / FEATURE_FILE


def get_agent_output_path(project_dir: Path, job_id: str) -> Path:
    """Resolve the path to a job's ``agent-output.md`` transcript."""
    return get_feature_dir(project_dir, job_id) / AGENT_OUTPUT_FILE


def get_raw_output_path(project_dir: Path, job_id: str) -> Path:
    """Resolve the path to a job's ``raw-output.jsonl`` debug log."""
    return get_feature_dir(project_dir, job_id) / RAW_OUTPUT_FILE


# ---------------------------------------------------------------------------
# Project-level configuration
# ---------------------------------------------------------------------------

def get_pipeline_config_path(project_dir: Path) -> Path:
    """Resolve the path to ``pipeline.yaml``."""
    return get_featureforge_dir(project_dir) / PIPELINE_FILE


def get_prompts_dir(project_dir: Path) -> Path:
    """Resolve the path to the project-specific ``prompts/`` directory."""
    return get_featureforge_dir(project_dir) / "prompts"


def get_claude_settings_path(project_dir: Path) -> Path:
    """Resolve the path to the agent's ``.claude_settings.json``."""
    return get_featureforge_dir(project_dir) / ".claude_settings.json"

"""
Pipeline Config Tests
=====================

Run with: pytest test_pipeline_config.py
"""

from featureforge_paths import get_pipeline_config_path
from pipeline_config import load_pipeline_steps


def write_config(project_dir, text):
    path = get_pipeline_config_path(project_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def test_missing_file(project_dir):
    assert load_pipeline_steps(project_dir) == []


def test_steps_sorted_by_order(project_dir):
    write_config(project_dir, """
steps:
  - id: docs
    name: Documentation
    order: 2
    instructions: Update the README.
  - id: review
    name: Code Review
    order: 1
    instructions: Review the diff.
""")
    steps = load_pipeline_steps(project_dir)

    assert [s.id for s in steps] == ["review", "docs"]
    assert steps[0].status == "pipeline_review"
    assert steps[1].instructions == "Update the README."


def test_invalid_config_is_ignored(project_dir):
    write_config(project_dir, "steps: [unclosed")
    assert load_pipeline_steps(project_dir) == []

    write_config(project_dir, "- just a list")
    assert load_pipeline_steps(project_dir) == []

    write_config(project_dir, "steps:\n  - id: 'bad id!'\n    name: Bad\n")
    assert load_pipeline_steps(project_dir) == []

    write_config(project_dir, "")
    assert load_pipeline_steps(project_dir) == []

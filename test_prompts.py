"""
Prompt Builder Tests
====================

Run with: pytest test_prompts.py
"""

import pytest

from api.models import Job, ParsedTask
from featureforge_paths import get_prompts_dir
from prompts import (
    PLANNING_LITE_WITH_APPROVAL,
    PLANNING_SPEC,
    SPEC_GENERATED_MARKER,
    build_feature_prompt,
    build_follow_up_prompt,
    build_recovery_prompt,
    build_revision_prompt,
    build_task_prompt,
    extract_title,
    get_planning_prefix,
    load_prompt,
)


def test_planning_prefix_by_mode():
    assert get_planning_prefix(Job(id="a", planning_mode="skip")) == ""

    spec_prefix = get_planning_prefix(Job(id="a", planning_mode="spec"))
    assert spec_prefix.startswith(PLANNING_SPEC)
    assert spec_prefix.endswith("## Feature Request\n\n")

    lite_approval = get_planning_prefix(Job(id="a", planning_mode="lite", require_plan_approval=True))
    assert lite_approval.startswith(PLANNING_LITE_WITH_APPROVAL)


def test_project_override(project_dir):
    prompts_dir = get_prompts_dir(project_dir)
    prompts_dir.mkdir(parents=True)
    (prompts_dir / "spec.md").write_text("Custom spec instructions")

    assert load_prompt("spec", project_dir) == "Custom spec instructions"
    assert load_prompt("full", project_dir) != "Custom spec instructions"
    with pytest.raises(KeyError):
        load_prompt("nonexistent", project_dir)


def test_extract_title():
    assert extract_title("") == "Untitled Feature"
    assert extract_title("Add login\nwith details") == "Add login"
    title = extract_title("x" * 100)
    assert len(title) == 60
    assert title.endswith("...")


def test_feature_prompt_verification_and_images():
    job = Job(id="feat-1", description="Add login", image_paths=["/tmp/mock.png"])
    prompt = build_feature_prompt(job)
    assert "**Feature ID:** feat-1" in prompt
    assert "mock.png" in prompt
    assert "Playwright" in prompt
    assert "<summary>" in prompt

    assert "Playwright" not in build_feature_prompt(Job(id="feat-1", skip_tests=True))


def test_task_prompt_context():
    tasks = [ParsedTask(id=f"T00{i}", description=f"Step {i}") for i in range(1, 7)]
    prompt = build_task_prompt(tasks[1], tasks, 1, "PLAN", user_feedback="be careful")

    assert prompt.startswith("# Task Execution: T002")
    assert "- [x] T001: Step 1" in prompt
    assert "- [ ] T003: Step 3" in prompt
    assert "T006" not in prompt.split("### Reference")[0]
    assert "... and 1 more tasks" in prompt
    assert "be careful" in prompt
    assert "<details>\nPLAN\n</details>" in prompt


def test_revision_prompt():
    prompt = build_revision_prompt("old plan", 2, "add tests", "spec")
    assert "## Previous Plan (v1)" in prompt
    assert "add tests" in prompt
    assert "```tasks" in prompt
    assert SPEC_GENERATED_MARKER in prompt
    assert "regenerate the plan" in build_revision_prompt("old", 2, None, "lite")


def test_recovery_and_follow_up_prompts():
    recovery = build_recovery_prompt("the plan", "tweak it")
    assert "the plan" in recovery
    assert "User feedback: tweak it" in recovery

    follow_up = build_follow_up_prompt(None, "feat-9", "earlier output", "fix the bug")
    assert "**Feature ID:** feat-9" in follow_up
    assert "earlier output" in follow_up
    assert "fix the bug" in follow_up

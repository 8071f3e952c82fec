"""
Job Executor Tests
==================

End-to-end runs of single features against a scripted provider:
planning modes, approval, revisions, task execution and pipeline steps.
Run with: pytest test_job_executor.py
"""

import asyncio

from agent import AssistantText, ResultEvent, ToolUse
from api.models import PlanSpec
from events import (
    FEATURE_COMPLETE,
    FEATURE_START,
    PHASE_COMPLETE,
    PIPELINE_STEP_COMPLETE,
    PIPELINE_STEP_STARTED,
    PLAN_APPROVAL_REQUIRED,
    PLAN_APPROVED,
    PLAN_AUTO_APPROVED,
    PLAN_REJECTED,
    PLAN_REVISION_REQUESTED,
    TASK_COMPLETE,
    TASK_STARTED,
)
from featureforge_paths import get_pipeline_config_path
from job_executor import FOLLOW_UP_SEPARATOR, MAX_TASK_TURNS, extract_plan, extract_summary

PLAN = """1. **Problem**: Login is missing
2. **Solution**: Add a login form

```tasks
- [ ] T001: Add form | File: login.html
- [ ] T002: Add handler | File: login.py
```"""

REVISED_PLAN = """1. **Problem**: Login is missing
2. **Solution**: Add a login form with tests

```tasks
- [ ] T001: Add form and tests | File: login.html
```"""

FULL_PLAN = """#### Implementation Plan

**Phase 1: Foundation**
```tasks
- [ ] T001: Add model | File: models.py
```

**Phase 2: Core Implementation**
```tasks
- [ ] T002: Add service | File: service.py
```"""


def types_of(payloads):
    return [p["type"] for p in payloads]


def test_extract_helpers():
    assert extract_plan("The plan\n[SPEC_GENERATED] review it") == "The plan"
    assert extract_plan("  no marker  ") == "no marker"
    text = "<summary>first</summary> later <summary>\nsecond\n</summary>"
    assert extract_summary(text) == "second"
    assert extract_summary("nothing here") is None


def test_skip_mode_runs_to_verified(store, project_dir, make_job, make_orchestrator,
                                    scripted_provider, recorded_events):
    make_job("feat-1", description="Add login")
    provider = scripted_provider([
        AssistantText("Working on it."),
        ToolUse("Write", {"file_path": "login.py"}),
        AssistantText("<summary>Added login</summary>"),
        ResultEvent("final result text"),
    ])
    orchestrator = make_orchestrator(provider)
    payloads = recorded_events(orchestrator)

    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "verified"
    assert job.summary == "Added login"
    assert job.error is None
    assert job.started_at is not None

    output = store.read_output(project_dir, "feat-1")
    assert output.startswith("Working on it.")
    assert "Tool: Write" in output
    assert "final result text" not in output

    assert len(provider.requests) == 1
    assert provider.requests[0].prompt.startswith("## Feature Implementation Task")
    assert provider.requests[0].cwd == project_dir.resolve()

    event_types = types_of(payloads)
    assert event_types[0] == FEATURE_START
    complete = [p for p in payloads if p["type"] == FEATURE_COMPLETE]
    assert complete[0]["passes"] is True
    assert not orchestrator.is_job_running("feat-1")


def test_skip_tests_waits_for_review(store, project_dir, make_job, make_orchestrator, scripted_provider):
    make_job("feat-1", skip_tests=True)
    orchestrator = make_orchestrator(scripted_provider([AssistantText("Done.")]))

    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "waiting_approval"
    assert job.just_finished_at is not None
    assert "Playwright" not in orchestrator.provider.requests[0].prompt


def test_spec_mode_with_approval_runs_tasks(store, project_dir, make_job, make_orchestrator,
                                            scripted_provider, recorded_events):
    make_job("feat-1", planning_mode="spec", require_plan_approval=True)
    provider = scripted_provider(
        [AssistantText(PLAN + "\n\n[SPEC_GENERATED] Please review the specification above."),
         AssistantText("This text is never consumed.")],
        [AssistantText("Added the form.")],
        [AssistantText("Added the handler.")],
    )
    orchestrator = make_orchestrator(provider)
    payloads = recorded_events(orchestrator)

    async def approve(name, payload):
        if payload["type"] == PLAN_APPROVAL_REQUIRED:
            await orchestrator.resolve_plan_approval("feat-1", approved=True)

    orchestrator.events.subscribe(approve)
    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "verified"
    spec = job.plan_spec
    assert spec.status == "approved"
    assert spec.reviewed_by_user is True
    assert spec.version == 1
    assert spec.tasks_total == 2
    assert spec.tasks_completed == 2
    assert spec.current_task_id is None
    assert [t.status for t in spec.tasks] == ["completed", "completed"]

    assert len(provider.requests) == 3
    assert provider.requests[0].prompt.startswith("## Specification Phase")
    assert provider.requests[1].prompt.startswith("# Task Execution: T001")
    assert provider.requests[2].prompt.startswith("# Task Execution: T002")
    assert provider.requests[1].max_turns == MAX_TASK_TURNS

    event_types = types_of(payloads)
    assert event_types.count(PLAN_APPROVAL_REQUIRED) == 1
    assert PLAN_APPROVED in event_types
    assert event_types.count(TASK_STARTED) == 2
    assert event_types.count(TASK_COMPLETE) == 2
    assert "This text is never consumed." not in store.read_output(project_dir, "feat-1")


def test_rejection_with_feedback_revises_plan(store, project_dir, make_job, make_orchestrator,
                                              scripted_provider, recorded_events):
    make_job("feat-1", planning_mode="spec", require_plan_approval=True)
    make_job("other", status="in_progress",
             plan_spec=PlanSpec(status="approved", tasks_total=3, tasks_completed=2))
    provider = scripted_provider(
        [AssistantText(PLAN + "\n[SPEC_GENERATED] Please review.")],
        [AssistantText(REVISED_PLAN + "\n[SPEC_GENERATED] Please review the revised specification above.")],
        [AssistantText("Added the form and tests.")],
    )
    orchestrator = make_orchestrator(provider)
    payloads = recorded_events(orchestrator)
    decisions = [{"approved": False, "feedback": "Add tests"}, {"approved": True}]

    async def decide(name, payload):
        if payload["type"] == PLAN_APPROVAL_REQUIRED:
            await orchestrator.resolve_plan_approval("feat-1", **decisions.pop(0))

    orchestrator.events.subscribe(decide)
    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "verified"
    assert job.plan_spec.version == 2
    assert job.plan_spec.content == REVISED_PLAN
    assert [t.id for t in job.plan_spec.tasks] == ["T001"]

    assert "## Previous Plan (v1)" in provider.requests[1].prompt
    assert "Add tests" in provider.requests[1].prompt
    assert len(provider.requests) == 3

    required = [p for p in payloads if p["type"] == PLAN_APPROVAL_REQUIRED]
    assert [p["planVersion"] for p in required] == [1, 2]
    event_types = types_of(payloads)
    assert PLAN_REJECTED in event_types
    assert PLAN_REVISION_REQUESTED in event_types

    other = store.read(project_dir, "other")
    assert other.status == "in_progress"
    assert other.plan_spec.tasks_completed == 2
    assert other.plan_spec.tasks_total == 3


def test_approval_with_edits_replaces_plan(store, project_dir, make_job, make_orchestrator, scripted_provider):
    make_job("feat-1", planning_mode="lite", require_plan_approval=True)
    provider = scripted_provider(
        [AssistantText("Outline\n[SPEC_GENERATED] Please review.")],
        [AssistantText("Did it.")],
    )
    orchestrator = make_orchestrator(provider)

    async def approve_with_edits(name, payload):
        if payload["type"] == PLAN_APPROVAL_REQUIRED:
            await orchestrator.resolve_plan_approval(
                "feat-1", approved=True, edited_plan="Edited plan without tasks"
            )

    orchestrator.events.subscribe(approve_with_edits)
    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "verified"
    assert job.plan_spec.content == "Edited plan without tasks"
    assert provider.requests[0].prompt.startswith("## Planning Phase (Lite Mode with Approval)")
    assert provider.requests[1].prompt.startswith("The plan/specification has been approved.")
    assert "Edited plan without tasks" in provider.requests[1].prompt


def test_rejection_without_feedback_cancels_plan(store, project_dir, make_job, make_orchestrator,
                                                 scripted_provider, recorded_events):
    make_job("feat-1", planning_mode="spec", require_plan_approval=True)
    provider = scripted_provider([AssistantText(PLAN + "\n[SPEC_GENERATED]")])
    orchestrator = make_orchestrator(provider)
    payloads = recorded_events(orchestrator)

    async def reject(name, payload):
        if payload["type"] == PLAN_APPROVAL_REQUIRED:
            await orchestrator.resolve_plan_approval("feat-1", approved=False)

    orchestrator.events.subscribe(reject)
    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "backlog"
    assert job.error == "Plan cancelled by user"
    assert job.plan_spec.status == "rejected"
    assert job.plan_spec.reviewed_by_user is True
    errors = [p for p in payloads if p["type"] == "auto_mode_error"]
    assert errors[0]["errorType"] == "plan_cancelled"
    assert orchestrator.failure_tracker.failure_count == 0


def test_approval_timeout_returns_job_to_backlog(store, project_dir, make_job, make_orchestrator,
                                                 scripted_provider):
    make_job("feat-1", planning_mode="spec", require_plan_approval=True)
    provider = scripted_provider([AssistantText(PLAN + "\n[SPEC_GENERATED]")])
    orchestrator = make_orchestrator(provider, approval_timeout_seconds=0.05)

    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "backlog"
    assert "timed out" in job.error
    assert job.plan_spec.status == "generated"
    assert orchestrator.get_status(project_dir)["pending_approvals"] == []
    assert orchestrator.failure_tracker.failure_count == 0


def test_full_mode_auto_approved_with_phases(store, project_dir, make_job, make_orchestrator,
                                             scripted_provider, recorded_events):
    make_job("feat-1", planning_mode="full")
    provider = scripted_provider(
        [AssistantText(FULL_PLAN + "\n[SPEC_GENERATED]")],
        [AssistantText("Model added.")],
        [AssistantText("Service added.")],
    )
    orchestrator = make_orchestrator(provider)
    payloads = recorded_events(orchestrator)

    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "verified"
    assert job.plan_spec.status == "approved"
    assert job.plan_spec.reviewed_by_user is False

    event_types = types_of(payloads)
    assert PLAN_AUTO_APPROVED in event_types
    assert PLAN_APPROVAL_REQUIRED not in event_types
    phases = [p for p in payloads if p["type"] == PHASE_COMPLETE]
    assert [p["phaseNumber"] for p in phases] == [1]


def test_lite_mode_outline_continues_stream(store, project_dir, make_job, make_orchestrator,
                                            scripted_provider, recorded_events):
    make_job("feat-1", planning_mode="lite")
    provider = scripted_provider([
        AssistantText("1. Goal: add login\n2. Approach: form\n\n[PLAN_GENERATED] Planning outline complete."),
        AssistantText("Now implementing."),
    ])
    orchestrator = make_orchestrator(provider)
    payloads = recorded_events(orchestrator)

    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "verified"
    assert job.plan_spec.status == "approved"
    assert job.plan_spec.content.startswith("1. Goal: add login")
    assert len(provider.requests) == 1
    assert "Now implementing." in store.read_output(project_dir, "feat-1")
    assert types_of(payloads).count(PLAN_AUTO_APPROVED) == 1


def test_pipeline_steps_run_after_implementation(store, project_dir, make_job, make_orchestrator,
                                                 scripted_provider, recorded_events):
    make_job("feat-1")
    config = get_pipeline_config_path(project_dir)
    config.write_text(
        "steps:\n"
        "  - id: review\n"
        "    name: Code Review\n"
        "    order: 1\n"
        "    instructions: Review the diff.\n"
    )
    provider = scripted_provider([AssistantText("Implemented.")], [AssistantText("Reviewed.")])
    orchestrator = make_orchestrator(provider)
    payloads = recorded_events(orchestrator)

    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    assert store.read(project_dir, "feat-1").status == "verified"
    assert provider.requests[1].prompt.startswith("## Pipeline Step: Code Review")
    assert "Review the diff." in provider.requests[1].prompt

    steps = [p for p in payloads if p["type"] in (PIPELINE_STEP_STARTED, PIPELINE_STEP_COMPLETE)]
    assert [p["stepId"] for p in steps] == ["review", "review"]

    output = store.read_output(project_dir, "feat-1")
    assert output.startswith("Implemented.")
    assert FOLLOW_UP_SEPARATOR in output
    assert output.endswith("Reviewed.")


def test_auth_marker_in_stream_pauses(store, project_dir, make_job, make_orchestrator,
                                      scripted_provider, recorded_events):
    make_job("feat-1")
    provider = scripted_provider([AssistantText("Invalid API key · Fix external API key")])
    orchestrator = make_orchestrator(provider)
    payloads = recorded_events(orchestrator)

    asyncio.run(orchestrator.execute_job(project_dir, "feat-1", use_worktrees=False))

    job = store.read(project_dir, "feat-1")
    assert job.status == "backlog"
    assert "Authentication failed" in job.error
    assert orchestrator.failure_tracker.paused
    assert "auto_mode_paused_failures" in types_of(payloads)

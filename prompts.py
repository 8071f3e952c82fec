"""
Prompt Assembly
===============

Builders for every prompt the job executor sends to an agent.

Planning prefixes can be overridden per project. Fallback chain:
1. Project-specific: {project}/.featureforge/prompts/{name}.md
2. Built-in default from PLANNING_PROMPTS
"""

import logging
from pathlib import Path

from api.models import Job, ParsedTask
from featureforge_paths import get_prompts_dir

logger = logging.getLogger(__name__)

SPEC_GENERATED_MARKER = "[SPEC_GENERATED]"
PLAN_GENERATED_MARKER = "[PLAN_GENERATED]"

_PLANNING_OUTLINE = """IMPORTANT: Do NOT output exploration text, tool usage, or thinking before the plan. Start DIRECTLY with the planning outline format below.

Create a brief planning outline:

1. **Goal**: What are we accomplishing? (1 sentence)
2. **Approach**: How will we do it? (2-3 sentences)
3. **Files to Touch**: List files and what changes
4. **Tasks**: Numbered task list (3-7 items)
5. **Risks**: Any gotchas to watch for
"""

_APPROVAL_FOOTER = (
    "DO NOT proceed with implementation until approval is received.\n"
)

PLANNING_LITE = f"""## Planning Phase (Lite Mode)

{_PLANNING_OUTLINE}
After generating the outline, output:
"[PLAN_GENERATED] Planning outline complete."

Then proceed with implementation.
"""

PLANNING_LITE_WITH_APPROVAL = f"""## Planning Phase (Lite Mode with Approval)

{_PLANNING_OUTLINE}
After generating the outline, output:
"[SPEC_GENERATED] Please review the plan above. Reply with 'approved' to proceed or provide feedback for revisions."

{_APPROVAL_FOOTER}"""

PLANNING_SPEC = f"""## Specification Phase (Spec Mode)

Generate a specification with an actionable task breakdown. WAIT for approval before implementing.

### Specification Format

1. **Problem**: What problem are we solving? (user perspective)
2. **Solution**: Brief approach (1-2 sentences)
3. **Acceptance Criteria**: 3-5 items in GIVEN-WHEN-THEN format
4. **Files to Modify**:
   | File | Changes |
   |------|---------|
   | path/to/file | Brief description |

5. **Implementation Tasks**:
   ```tasks
   - [ ] T001: [Description] | File: [path/to/file]
   - [ ] T002: [Description] | File: [path/to/file]
   - [ ] T003: [Description] | File: [path/to/file]
   ```

6. **Verification**: How to confirm feature works

After generating the spec, output:
"[SPEC_GENERATED] Please review the specification above. Reply with 'approved' to proceed or provide feedback for revisions."

{_APPROVAL_FOOTER}"""

PLANNING_FULL = f"""## Software Design Document (Full Mode)

Generate a comprehensive specification with phased task breakdown. WAIT for approval before implementing.

### SDD Format

#### 1. Problem Statement
Brief description of the problem we're solving (user perspective)

#### 2. User Story
AS A [user type]
I WANT TO [action]
SO THAT [benefit]

#### 3. Acceptance Criteria
Multiple scenarios in GIVEN-WHEN-THEN format:
- **Scenario 1**: [Name]
  - GIVEN [context]
  - WHEN [action]
  - THEN [expected outcome]

#### 4. Technical Context
- **Existing Components**: What's already in place
- **Integration Points**: Where this feature connects
- **Constraints**: Technical or business limitations

#### 5. Non-Goals
What this feature explicitly does NOT include (to prevent scope creep)

#### 6. Implementation Plan

**Phase 1: Foundation**
```tasks
- [ ] T001: [Description] | File: [path]
- [ ] T002: [Description] | File: [path]
```

**Phase 2: Core Implementation**
```tasks
- [ ] T003: [Description] | File: [path]
- [ ] T004: [Description] | File: [path]
```

**Phase 3: Integration & Testing**
```tasks
- [ ] T005: [Description] | File: [path]
- [ ] T006: [Description] | File: [path]
```

#### 7. Success Metrics
How we'll measure if this feature is working correctly

#### 8. Risks & Mitigations
| Risk | Impact | Mitigation |
|------|--------|------------|
| [risk] | [H/M/L] | [approach] |

After generating the SDD, output:
"[SPEC_GENERATED] Please review the specification above. Reply with 'approved' to proceed or provide feedback for revisions."

{_APPROVAL_FOOTER}"""

PLANNING_PROMPTS = {
    "lite": PLANNING_LITE,
    "lite_with_approval": PLANNING_LITE_WITH_APPROVAL,
    "spec": PLANNING_SPEC,
    "full": PLANNING_FULL,
}

_SUMMARY_TEMPLATE = """When done, wrap your final summary in <summary> tags like this:

<summary>
## Summary: [Feature Title]

### Changes Implemented
- [List of changes made]

### Files Modified
- [List of files]
{verification}
### Notes for Developer
- [Any important notes]
</summary>

This helps parse your summary correctly in the output logs."""

_IMPLEMENTATION_STEPS = """## Instructions

Implement this feature by:
1. First, explore the codebase to understand the existing structure
2. Plan your implementation approach
3. Write the necessary code changes
4. Ensure the code follows existing patterns and conventions
"""

_AUTOMATED_VERIFICATION = """## Verification with Playwright (REQUIRED)

After implementing the feature, you MUST verify it works correctly using Playwright:

1. **Create a temporary Playwright test** to verify the feature works as expected
2. **Run the test** to confirm the feature is working
3. **Delete the test file** after verification - this is a temporary verification test, not a permanent test suite addition

Example verification workflow:
```bash
# Create a simple verification test
npx playwright test my-verification-test.spec.ts

# After successful verification, delete the test
rm my-verification-test.spec.ts
```

The test should verify the core functionality of the feature. If the test fails, fix the implementation and re-test.
"""


def load_prompt(name: str, project_dir: Path | None = None) -> str:
    """
    Load a planning prompt with the project override fallback chain.

    Raises:
        KeyError: if ``name`` is neither overridden nor a built-in prompt
    """
    if project_dir:
        override = get_prompts_dir(project_dir) / f"{name}.md"
        if override.exists():
            try:
                return override.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Could not read %s: %s", override, e)

    return PLANNING_PROMPTS[name]


def get_planning_prefix(job: Job, project_dir: Path | None = None) -> str:
    """
    Planning instructions prepended to the feature prompt.

    Lite mode switches to the approval variant when the job requires approval.
    Returns "" for planning_mode "skip".
    """
    mode = job.planning_mode
    if mode == "skip":
        return ""
    if mode == "lite" and job.require_plan_approval:
        mode = "lite_with_approval"
    return load_prompt(mode, project_dir) + "\n\n---\n\n## Feature Request\n\n"


def extract_title(description: str) -> str:
    """First line of the description, capped at 60 characters."""
    if not description or not description.strip():
        return "Untitled Feature"
    first_line = description.split("\n")[0].strip()
    if len(first_line) <= 60:
        return first_line
    return first_line[:57] + "..."


def build_feature_prompt(job: Job) -> str:
    title = job.title or extract_title(job.description)
    prompt = (
        "## Feature Implementation Task\n\n"
        f"**Feature ID:** {job.id}\n"
        f"**Title:** {title}\n"
        f"**Description:** {job.description}\n"
    )

    if job.spec:
        prompt += f"\n**Specification:**\n{job.spec}\n"

    if job.image_paths:
        images = "\n".join(
            f"   {idx}. {Path(path).name}\n      Path: {path}"
            for idx, path in enumerate(job.image_paths, start=1)
        )
        prompt += (
            "\n**Context Images Attached:**\n"
            f"The user has attached {len(job.image_paths)} image(s) for context. "
            "These are provided as files you can read:\n\n"
            f"{images}\n\n"
            "You can use the Read tool to view these images at any time during implementation. "
            "Review them carefully before implementing.\n"
        )

    prompt += "\n" + _IMPLEMENTATION_STEPS
    if job.skip_tests:
        prompt += "\n" + _SUMMARY_TEMPLATE.format(verification="")
    else:
        prompt += "\n" + _AUTOMATED_VERIFICATION + "\n" + _SUMMARY_TEMPLATE.format(
            verification=(
                "\n### Verification Status\n"
                "- [Describe how the feature was verified with Playwright]\n"
            )
        )
    return prompt


def build_task_prompt(
    task: ParsedTask,
    all_tasks: list[ParsedTask],
    task_index: int,
    plan_content: str,
    user_feedback: str | None = None,
) -> str:
    """Prompt for one narrowly-scoped task call."""
    completed = all_tasks[:task_index]
    remaining = all_tasks[task_index + 1:]

    lines = [
        f"# Task Execution: {task.id}",
        "",
        "You are executing a specific task as part of a larger feature implementation.",
        "",
        "## Your Current Task",
        "",
        f"**Task ID:** {task.id}",
        f"**Description:** {task.description}",
    ]
    if task.file_path:
        lines.append(f"**Primary File:** {task.file_path}")
    if task.phase:
        lines.append(f"**Phase:** {task.phase}")
    prompt = "\n".join(lines) + "\n\n## Context\n\n"

    if completed:
        done = "\n".join(f"- [x] {t.id}: {t.description}" for t in completed)
        prompt += f"### Already Completed ({len(completed)} tasks)\n{done}\n\n"

    if remaining:
        upcoming = "\n".join(f"- [ ] {t.id}: {t.description}" for t in remaining[:3])
        prompt += f"### Coming Up Next ({len(remaining)} tasks remaining)\n{upcoming}\n"
        if len(remaining) > 3:
            prompt += f"... and {len(remaining) - 3} more tasks\n"
        prompt += "\n"

    if user_feedback:
        prompt += f"### User Feedback\n{user_feedback}\n\n"

    prompt += (
        f"### Reference: Full Plan\n<details>\n{plan_content}\n</details>\n\n"
        "## Instructions\n\n"
        f'1. Focus ONLY on completing task {task.id}: "{task.description}"\n'
        "2. Do not work on other tasks\n"
        "3. Use the existing codebase patterns\n"
        "4. When done, summarize what you implemented\n\n"
        f"Begin implementing task {task.id} now."
    )
    return prompt


def build_revision_prompt(
    plan_content: str,
    plan_version: int,
    feedback: str | None,
    planning_mode: str,
) -> str:
    """Ask the agent to regenerate a plan after rejection with feedback."""
    document = "plan" if planning_mode == "lite" else "specification"
    task_format = ""
    if planning_mode in ("spec", "full"):
        task_format = (
            "Keep the same format with the ```tasks block for task definitions "
            "(- [ ] T###: Description | File: path).\n"
        )
    return (
        "The user has requested revisions to the plan/specification.\n\n"
        f"## Previous Plan (v{plan_version - 1})\n{plan_content}\n\n"
        f"## User Feedback\n{feedback or 'Please revise the plan based on the edits above.'}\n\n"
        "## Instructions\n"
        f"Please regenerate the {document} incorporating the user's feedback.\n"
        f"{task_format}"
        "After generating the revised spec, output:\n"
        '"[SPEC_GENERATED] Please review the revised specification above."'
    )


def build_continuation_prompt(plan_content: str, user_feedback: str | None = None) -> str:
    """Single implementation call for an approved plan without parsed tasks."""
    feedback = f"\n## User Feedback\n{user_feedback}\n" if user_feedback else ""
    return (
        "The plan/specification has been approved. Now implement it.\n"
        f"{feedback}\n"
        f"## Approved Plan\n\n{plan_content}\n\n"
        "## Instructions\n\n"
        "Implement all the changes described in the plan above."
    )


def build_recovery_prompt(plan_content: str, feedback: str | None = None) -> str:
    """Continuation for a plan approved after the original wait was lost (restart)."""
    prompt = "The plan/specification has been approved. "
    if feedback:
        prompt += f"\n\nUser feedback: {feedback}\n\n"
    prompt += (
        "Now proceed with the implementation as specified in the plan:\n\n"
        f"{plan_content}\n\n"
        "Implement the feature now."
    )
    return prompt


def build_resume_prompt(job: Job, previous_context: str) -> str:
    return (
        "## Continuing Feature Implementation\n\n"
        f"{build_feature_prompt(job)}\n\n"
        "## Previous Context\n"
        "The following is the output from a previous implementation attempt. "
        "Continue from where you left off:\n\n"
        f"{previous_context}\n\n"
        "## Instructions\n"
        "Review the previous work and continue the implementation. "
        "If the feature appears complete, verify it works correctly."
    )


def build_follow_up_prompt(job: Job | None, job_id: str, previous_context: str, instructions: str) -> str:
    feature_prompt = build_feature_prompt(job) if job else f"**Feature ID:** {job_id}"
    prompt = f"## Follow-up on Feature Implementation\n\n{feature_prompt}\n"
    if previous_context:
        prompt += (
            "\n## Previous Agent Work\n"
            "The following is the output from the previous implementation attempt:\n\n"
            f"{previous_context}\n"
        )
    prompt += (
        f"\n## Follow-up Instructions\n{instructions}\n\n"
        "## Task\n"
        "Address the follow-up instructions above. "
        "Review the previous work and make the requested changes or fixes."
    )
    return prompt


def build_pipeline_step_prompt(
    step_name: str,
    instructions: str,
    job: Job,
    previous_context: str,
) -> str:
    prompt = (
        f"## Pipeline Step: {step_name}\n\n"
        "This is an automated pipeline step following the initial feature implementation.\n\n"
        f"### Feature Context\n{build_feature_prompt(job)}\n\n"
    )
    if previous_context:
        prompt += (
            "### Previous Work\n"
            "The following is the output from the previous work on this feature:\n\n"
            f"{previous_context}\n\n"
        )
    prompt += (
        f"### Pipeline Step Instructions\n{instructions}\n\n"
        "### Task\n"
        "Complete the pipeline step instructions above. "
        "Review the previous work and apply the required changes or actions."
    )
    return prompt

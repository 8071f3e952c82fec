"""
Plan Task Parser
================

Extracts the ordered task list from a generated plan document.

Tasks are written inside fenced ``tasks`` blocks:

    ```tasks
    ## Phase 1: Foundation
    - [ ] T001: Create the model | File: src/models.py
    - [ ] T002: Wire the route
    ```

``## `` headings inside a block set the phase of the tasks that follow.
Full-mode plans put a ``**Phase N: ...**`` heading above each block instead;
such a heading labels the tasks of the next block. When the document has no
tasks block at all, every ``- [ ] T###: ...`` line in the text is used.

Parsing is pure: the same text always yields the same task list.
"""

from __future__ import annotations

import re

from api.models import ParsedTask

# Fenced ```tasks ... ``` block
_TASKS_BLOCK_RE = re.compile(r"```tasks[^\S\n]*\n?([\s\S]*?)```")
# - [ ] T001: Description | File: path/to/file
_TASK_WITH_FILE_RE = re.compile(r"^- \[ \] (T\d{3}):\s*([^|]+?)\s*\|\s*File:\s*(.+?)\s*$")
# - [ ] T001: Description
_TASK_RE = re.compile(r"^- \[ \] (T\d{3}):\s*(.+?)\s*$")
# Phase heading inside a tasks block
_BLOCK_PHASE_RE = re.compile(r"^##\s+(.+?)\s*$")
# Phase heading between blocks: **Phase 2: Core** / ### Phase 2: Core
_OUTER_PHASE_RE = re.compile(
    r"^(?:#{2,4}\s*(Phase\s*\d+\b.*?)|\*\*(Phase\s*\d+\b[^*]*?)\*\*:?)\s*$",
    re.IGNORECASE,
)
# Standalone task lines anywhere (fallback)
_LOOSE_TASK_RE = re.compile(r"- \[ \] T\d{3}:.*$", re.MULTILINE)
# Phase number for phase-complete events
_PHASE_NUMBER_RE = re.compile(r"Phase\s*(\d+)", re.IGNORECASE)


def parse_task_line(line: str, current_phase: str | None = None) -> ParsedTask | None:
    """Parse one ``- [ ] T###: ...`` line, or return None if it isn't a task."""
    line = line.strip()

    match = _TASK_WITH_FILE_RE.match(line)
    if match:
        return ParsedTask(
            id=match.group(1),
            description=match.group(2).strip(),
            file_path=match.group(3).strip(),
            phase=current_phase,
        )

    match = _TASK_RE.match(line)
    if match:
        return ParsedTask(
            id=match.group(1),
            description=match.group(2).strip(),
            phase=current_phase,
        )

    return None


def _last_outer_phase(text: str) -> str | None:
    """Return the last phase heading found in a stretch of prose."""
    phase = None
    for line in text.split("\n"):
        match = _OUTER_PHASE_RE.match(line.strip())
        if match:
            phase = (match.group(1) or match.group(2)).strip()
    return phase


def parse_tasks_from_spec(spec_content: str) -> list[ParsedTask]:
    """
    Parse tasks from a generated plan.

    Args:
        spec_content: Plan text (everything before the generation marker)

    Returns:
        Tasks in document order, each with status "pending".
    """
    if not spec_content:
        return []

    tasks: list[ParsedTask] = []
    blocks = list(_TASKS_BLOCK_RE.finditer(spec_content))

    if not blocks:
        for match in _LOOSE_TASK_RE.finditer(spec_content):
            task = parse_task_line(match.group(0))
            if task:
                tasks.append(task)
        return tasks

    previous_end = 0
    for block in blocks:
        current_phase = _last_outer_phase(spec_content[previous_end:block.start()])
        previous_end = block.end()

        for line in block.group(1).split("\n"):
            stripped = line.strip()
            if not stripped:
                continue

            phase_match = _BLOCK_PHASE_RE.match(stripped)
            if phase_match:
                current_phase = phase_match.group(1)
                continue

            if stripped.startswith("- [ ]"):
                task = parse_task_line(stripped, current_phase)
                if task:
                    tasks.append(task)

    return tasks


def get_phase_number(phase: str | None) -> int | None:
    """Extract N from a "Phase N..." label."""
    if not phase:
        return None
    match = _PHASE_NUMBER_RE.search(phase)
    return int(match.group(1)) if match else None

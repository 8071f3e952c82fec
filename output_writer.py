"""
Agent Output Writer
===================

Debounced persistence of a job's accumulated agent transcript.

Streamed text arrives in many small chunks; writes are coalesced on a
short timer (WRITE_DEBOUNCE_SECONDS) instead of hitting disk per chunk.
close() cancels pending timers and performs the final flush; callers
invoke it from a ``finally`` block so the last chunk is never lost.

Raw stream events can additionally be appended to ``raw-output.jsonl``
when FEATUREFORGE_DEBUG_RAW_OUTPUT is enabled.
"""

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from api.job_store import JobStore, JobStoreError

logger = logging.getLogger(__name__)

WRITE_DEBOUNCE_SECONDS = 0.5

_ENDS_WITH_SENTENCE_RE = re.compile(r"[.!?:]\s*$")
_ENDS_WITH_NEWLINE_RE = re.compile(r"\n\s*$")
_STARTS_NEW_PARAGRAPH_RE = re.compile(r"^[\n#\-*>]")
_WORD_CHAR_RE = re.compile(r"[a-zA-Z0-9]")


def append_streamed_text(existing: str, new_text: str) -> str:
    """
    Append a streamed text block, inserting a paragraph break only at a
    natural boundary (after a sentence or before a heading/list), never
    mid-word or mid-sentence.
    """
    if not new_text:
        return existing
    if existing:
        ends_with_sentence = bool(_ENDS_WITH_SENTENCE_RE.search(existing))
        ends_with_newline = bool(_ENDS_WITH_NEWLINE_RE.search(existing))
        starts_new_paragraph = bool(_STARTS_NEW_PARAGRAPH_RE.match(new_text))
        mid_word = bool(_WORD_CHAR_RE.match(existing[-1]))
        if not ends_with_newline and (ends_with_sentence or starts_new_paragraph) and not mid_word:
            existing += "\n\n"
    return existing + new_text


class AgentOutputWriter:
    """Coalescing writer for ``agent-output.md`` (and optional raw log)."""

    def __init__(
        self,
        store: JobStore,
        project_path: Path,
        job_id: str,
        initial_text: str = "",
        debounce_seconds: float = WRITE_DEBOUNCE_SECONDS,
        raw_output_enabled: bool = False,
    ):
        self.store = store
        self.project_path = Path(project_path)
        self.job_id = job_id
        self.text = initial_text
        self.debounce_seconds = debounce_seconds
        self.raw_output_enabled = raw_output_enabled
        self._write_handle: asyncio.TimerHandle | None = None
        self._raw_handle: asyncio.TimerHandle | None = None
        self._raw_lines: list[str] = []
        self._closed = False

    def append_streamed(self, new_text: str) -> None:
        """Append a streamed assistant text block and schedule a write."""
        self.text = append_streamed_text(self.text, new_text)
        self.schedule_write()

    def append_tool_use(self, name: str, tool_input: Any) -> None:
        """Record a tool invocation in the transcript."""
        if self.text and not self.text.endswith("\n"):
            self.text += "\n"
        self.text += f"\nTool: {name}\n"
        if tool_input:
            self.text += f"Input: {json.dumps(tool_input, indent=2, default=str)}\n"
        self.schedule_write()

    def schedule_write(self) -> None:
        """(Re)start the debounce timer for the transcript."""
        if self._closed:
            return
        if self._write_handle is not None:
            self._write_handle.cancel()
        loop = asyncio.get_running_loop()
        self._write_handle = loop.call_later(self.debounce_seconds, self.flush)

    def record_raw_event(self, event: dict[str, Any]) -> None:
        """Queue a raw stream event for the NDJSON debug log."""
        if not self.raw_output_enabled or self._closed:
            return
        line = json.dumps(
            {"timestamp": datetime.now(timezone.utc).isoformat(), "event": event},
            default=str,
        )
        self._raw_lines.append(line)
        if self._raw_handle is not None:
            self._raw_handle.cancel()
        loop = asyncio.get_running_loop()
        self._raw_handle = loop.call_later(self.debounce_seconds, self.flush_raw)

    def flush(self) -> None:
        """Write the current transcript now. Write errors are logged, not raised."""
        self._write_handle = None
        try:
            self.store.write_output(self.project_path, self.job_id, self.text)
        except JobStoreError as e:
            logger.error("Failed to write agent output for %s: %s", self.job_id, e)

    def flush_raw(self) -> None:
        self._raw_handle = None
        if not self._raw_lines:
            return
        lines, self._raw_lines = self._raw_lines, []
        try:
            self.store.append_raw_output(self.project_path, self.job_id, lines)
        except JobStoreError as e:
            logger.error("Failed to write raw output for %s: %s", self.job_id, e)

    def close(self) -> None:
        """Cancel pending timers and perform the final flush."""
        if self._closed:
            return
        self._closed = True
        if self._write_handle is not None:
            self._write_handle.cancel()
            self._write_handle = None
        if self._raw_handle is not None:
            self._raw_handle.cancel()
            self._raw_handle = None
        self.flush()
        self.flush_raw()

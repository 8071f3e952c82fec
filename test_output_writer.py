"""
Output Writer Tests
===================

Run with: pytest test_output_writer.py
"""

import asyncio
import json

from featureforge_paths import get_raw_output_path
from output_writer import AgentOutputWriter, append_streamed_text


def test_paragraph_break_after_sentence():
    assert append_streamed_text("I'll start.", "Next step") == "I'll start.\n\nNext step"


def test_no_break_mid_word_or_sentence():
    assert append_streamed_text("Implement", "ing the thing") == "Implementing the thing"
    assert append_streamed_text("Looking at the ", "file now") == "Looking at the file now"


def test_break_before_heading_and_not_after_newline():
    assert append_streamed_text("done) ", "# Heading") == "done) \n\n# Heading"
    assert append_streamed_text("Line one.\n", "Line two") == "Line one.\nLine two"
    assert append_streamed_text("", "first") == "first"
    assert append_streamed_text("same", "") == "same"


def test_debounced_writes_and_final_flush(store, project_dir, make_job):
    make_job("feat-1")

    async def scenario():
        writer = AgentOutputWriter(store, project_dir, "feat-1", debounce_seconds=0.05)
        writer.append_streamed("Hello.")
        writer.append_tool_use("Read", {"file_path": "a.py"})
        assert store.read_output(project_dir, "feat-1") is None

        await asyncio.sleep(0.15)
        assert store.read_output(project_dir, "feat-1").startswith("Hello.")

        writer.append_streamed("More text")
        writer.close()
        writer.close()
        return writer.text

    text = asyncio.run(scenario())
    saved = store.read_output(project_dir, "feat-1")
    assert saved == text
    assert "\nTool: Read\n" in saved
    assert '"file_path": "a.py"' in saved
    assert saved.endswith("More text")


def test_raw_output_log(store, project_dir, make_job):
    make_job("feat-1")

    async def scenario():
        writer = AgentOutputWriter(store, project_dir, "feat-1", raw_output_enabled=True)
        writer.record_raw_event({"type": "text", "text": "hi"})
        writer.record_raw_event({"type": "result"})
        writer.close()

    asyncio.run(scenario())
    lines = get_raw_output_path(project_dir, "feat-1").read_text().splitlines()
    assert [json.loads(line)["event"]["type"] for line in lines] == ["text", "result"]
    assert "timestamp" in json.loads(lines[0])

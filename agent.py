"""
Agent Execution Provider
========================

Runs a single agent call and yields a stream of decoded events.

SDK messages are decoded at this boundary into a closed set of event
dataclasses (AssistantText, ToolUse, ResultEvent, ErrorEvent) so the job
executor never inspects SDK types. A provider must honor mid-stream
cancellation through the request's CancellationToken.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Protocol, Union

from claude_agent_sdk.types import AssistantMessage, ResultMessage, TextBlock, ToolUseBlock

from client import BUILTIN_TOOLS, create_client
from errors import JobCancelledError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AssistantText:
    text: str


@dataclass(slots=True, frozen=True)
class ToolUse:
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ResultEvent:
    result: str = ""
    subtype: str = "success"


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    error: str


AgentEvent = Union[AssistantText, ToolUse, ResultEvent, ErrorEvent]


class CancellationToken:
    """Per-job cancellation flag that can also be awaited."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError()


@dataclass
class QueryRequest:
    """One agent invocation."""

    prompt: str
    model: str
    cwd: Path
    allowed_tools: list[str] = field(default_factory=lambda: list(BUILTIN_TOOLS))
    cancel_token: CancellationToken | None = None
    system_prompt: str | None = None
    mcp_servers: dict[str, Any] | None = None
    max_turns: int | None = None


class ExecutionProvider(Protocol):
    name: str

    def execute_query(self, request: QueryRequest) -> AsyncIterator[AgentEvent]:
        ...


def decode_message(msg: Any) -> list[AgentEvent]:
    """Translate one SDK message into zero or more agent events."""
    events: list[AgentEvent] = []
    if isinstance(msg, AssistantMessage):
        for block in msg.content:
            if isinstance(block, TextBlock):
                if block.text:
                    events.append(AssistantText(block.text))
            elif isinstance(block, ToolUseBlock):
                events.append(ToolUse(block.name, dict(block.input or {})))
    elif isinstance(msg, ResultMessage):
        if msg.is_error:
            events.append(ErrorEvent(msg.result or f"Agent execution failed ({msg.subtype})"))
        else:
            events.append(ResultEvent(msg.result or "", msg.subtype))
    return events


class ClaudeAgentProvider:
    """Execution provider backed by the Claude Agent SDK."""

    name = "claude"

    async def execute_query(self, request: QueryRequest) -> AsyncIterator[AgentEvent]:
        token = request.cancel_token
        token_raise = token.raise_if_cancelled if token else (lambda: None)
        token_raise()

        client = create_client(
            request.cwd,
            request.model,
            allowed_tools=request.allowed_tools,
            system_prompt=request.system_prompt,
            max_turns=request.max_turns,
            mcp_servers=request.mcp_servers,
        )

        async with client:
            await client.query(request.prompt)

            async def interrupt_on_cancel() -> None:
                await token.wait()
                logger.info("Interrupting agent in %s", request.cwd)
                try:
                    await client.interrupt()
                except Exception as e:
                    logger.warning("Failed to interrupt agent: %s", e)

            watcher = asyncio.create_task(interrupt_on_cancel()) if token else None
            try:
                async for msg in client.receive_response():
                    token_raise()
                    for event in decode_message(msg):
                        yield event
            finally:
                if watcher is not None:
                    watcher.cancel()

        token_raise()

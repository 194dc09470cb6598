"""Shared fixtures: settings, session state, a scripted model client and test tools."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

import pytest

from tandem.config import Settings
from tandem.engine.cancellation import CancellationToken
from tandem.messages import AssistantMessage, TextBlock, ToolUseBlock, Usage
from tandem.session.context import SessionContext
from tandem.tools.registry import ToolContext, ToolOutput, ToolProgress

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_assistant(
    text: str = "",
    tool_uses: list[dict] | None = None,
    usage: Usage | None = None,
    stop_reason: str | None = None,
) -> AssistantMessage:
    """Build an AssistantMessage with text and/or tool_use blocks."""
    content: list[Any] = []
    if text:
        content.append(TextBlock(text=text))
    for tu in tool_uses or []:
        content.append(
            ToolUseBlock(
                id=tu.get("id", f"toolu_{uuid.uuid4().hex[:12]}"),
                name=tu["name"],
                input=tu.get("input", {}),
            )
        )
    return AssistantMessage(
        content=tuple(content),
        usage=usage or Usage(input_tokens=10, output_tokens=5),
        stop_reason=stop_reason or ("tool_use" if tool_uses else "end_turn"),
        model="claude-test",
    )


class ScriptedClient:
    """Stands in for LlmClient: returns queued replies and records requests.

    A queued reply may be an AssistantMessage, an exception to raise, or
    an async callable ``(request, token) -> AssistantMessage``.
    """

    def __init__(self, replies: list[Any] | None = None) -> None:
        self.replies = list(replies or [])
        self.requests: list[Any] = []

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def send(self, request, token: CancellationToken | None = None) -> AssistantMessage:
        self.requests.append(request)
        if token is not None:
            token.raise_if_cancelled()
        if not self.replies:
            raise AssertionError("ScriptedClient ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return await reply(request, token)
        return reply


class ConcurrencyTracker:
    """Records tool start/end order and the peak number of running tools."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0
        self.events: list[tuple[str, str]] = []

    def enter(self, name: str) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(("start", name))

    def exit(self, name: str) -> None:
        self.active -= 1
        self.events.append(("end", name))

    def index(self, kind: str, name: str) -> int:
        return self.events.index((kind, name))


class SleepTool:
    """Configurable tool for scheduler and orchestrator tests."""

    def __init__(
        self,
        name: str,
        *,
        safe: bool = True,
        delay: float = 0.0,
        tracker: ConcurrencyTracker | None = None,
        fail: bool = False,
        output: str | None = None,
        progress: str | None = None,
        needs_permission: bool = False,
        block: asyncio.Event | None = None,
    ) -> None:
        self.name = name
        self.description = f"{name} tool"
        self.input_schema: dict[str, Any] = {"type": "object", "properties": {}}
        self.concurrency_safe = safe
        self.read_only = safe
        self.needs_permission = needs_permission
        self.delay = delay
        self.tracker = tracker or ConcurrencyTracker()
        self.fail = fail
        self.output = output
        self.progress = progress
        self.block = block
        self.started = asyncio.Event()
        self.cancelled = False
        self.calls = 0

    async def execute(self, tool_input: dict[str, Any], context: ToolContext):
        self.calls += 1
        self.tracker.enter(self.name)
        self.started.set()
        try:
            if self.progress:
                yield ToolProgress(self.progress)
            if self.block is not None:
                await self.block.wait()
            await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError(f"{self.name} exploded")
            yield ToolOutput(self.output or f"{self.name} done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        finally:
            self.tracker.exit(self.name)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        agent_id="test-agent",
        workspace_dir=str(tmp_path),
        max_tokens=1024,
        max_retries=3,
    )


@pytest.fixture
def session() -> SessionContext:
    return SessionContext()


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def tool_context(session, token) -> ToolContext:
    return ToolContext(agent_id="test-agent", token=token, session=session)

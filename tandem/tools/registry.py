"""Tool contract and registry.

A tool is any object with the attributes of the Tool protocol. Its
execute() is an async generator yielding zero or more ToolProgress
items followed by one ToolOutput. FunctionTool adapts a plain async
handler taking keyword arguments, the simplest way to add a tool.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from tandem.engine.cancellation import CancellationToken, TurnPhase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolProgress:
    """Intermediate output while a tool runs."""

    text: str


@dataclass(frozen=True)
class ToolOutput:
    """Final output of a tool execution."""

    content: str
    is_error: bool = False
    render_hint: str | None = None


@dataclass(frozen=True)
class SubAgentResult:
    """Outcome of a delegated sub-agent run."""

    text: str
    tool_uses: int = 0
    tokens: int = 0
    duration_ms: int = 0


@dataclass
class ToolContext:
    """Everything a running tool may touch besides its input."""

    agent_id: str
    token: CancellationToken
    session: Any = None  # SessionContext
    can_use_tool: Callable[[Any, dict[str, Any]], Awaitable[bool]] | None = None
    delegate: Callable[[str, str], Awaitable[SubAgentResult]] | None = None
    on_phase: Callable[[TurnPhase], None] | None = None

    def set_phase(self, phase: TurnPhase) -> None:
        if self.on_phase is not None:
            self.on_phase(phase)


@runtime_checkable
class Tool(Protocol):
    name: str
    description: str
    input_schema: dict[str, Any]
    concurrency_safe: bool
    read_only: bool
    needs_permission: bool

    def execute(
        self, tool_input: dict[str, Any], context: ToolContext
    ) -> AsyncIterator[ToolProgress | ToolOutput]: ...


class FunctionTool:
    """Tool backed by an async handler returning text.

    The handler is called with the tool input as keyword arguments and
    the ToolContext as ``context`` when it accepts one.
    """

    def __init__(
        self,
        name: str,
        handler: Callable[..., Awaitable[str]],
        input_schema: dict[str, Any],
        description: str = "",
        *,
        concurrency_safe: bool = False,
        read_only: bool = False,
        needs_permission: bool = False,
        pass_context: bool = False,
    ) -> None:
        self.name = name
        self.description = description or input_schema.get("description", "")
        self.input_schema = input_schema
        self.concurrency_safe = concurrency_safe
        self.read_only = read_only
        self.needs_permission = needs_permission
        self._handler = handler
        self._pass_context = pass_context

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> AsyncIterator[ToolOutput]:
        if self._pass_context:
            text = await self._handler(context=context, **tool_input)
        else:
            text = await self._handler(**tool_input)
        yield ToolOutput(text)


class ToolRegistry:
    """Registered tools by name, in registration order."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def without(self, *names: str) -> ToolRegistry:
        """Copy of the registry minus the named tools."""
        return ToolRegistry(t for n, t in self._tools.items() if n not in names)

    def definitions(self) -> list[dict[str, Any]]:
        """Tool schemas in content-block API format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.input_schema,
            }
            for tool in self._tools.values()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

"""Concurrency planning and execution for a batch of tool calls.

A batch is split into groups in call order. Each maximal run of
consecutive concurrency-safe calls forms one concurrent group; every
other call is a sequential group of its own. Groups run one after the
other; calls inside a concurrent group share a semaphore.

Every invocation produces exactly one ToolResult, keyed by call id.
Unknown tools, invalid input, denied permission and tool exceptions all
become error results rather than aborting the batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from tandem.engine.cancellation import TurnCancelled, TurnPhase
from tandem.messages import ProgressMessage, ToolResultBlock, ToolUseBlock
from tandem.tools.registry import Tool, ToolContext, ToolOutput, ToolProgress, ToolRegistry

logger = logging.getLogger(__name__)

_DONE = object()

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    call_id: str
    input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_block(cls, block: ToolUseBlock) -> ToolInvocation:
        return cls(name=block.name, call_id=block.id, input=dict(block.input))


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    content: str
    is_error: bool = False
    render_hint: str | None = None
    duration_ms: int = 0

    def to_block(self) -> ToolResultBlock:
        return ToolResultBlock(tool_use_id=self.call_id, content=self.content, is_error=self.is_error)


@dataclass(frozen=True)
class ToolProgressEvent:
    call_id: str
    tool_name: str
    text: str

    def to_message(self) -> ProgressMessage:
        return ProgressMessage(tool_use_id=self.call_id, text=self.text)


@dataclass
class ExecutionGroup:
    concurrent: bool
    invocations: list[ToolInvocation] = field(default_factory=list)


def validate_schema(tool: Tool, tool_input: Any) -> str | None:
    """Check required keys and primitive types against the input schema."""
    if not isinstance(tool_input, dict):
        return f"Invalid input for {tool.name}: expected an object"
    schema = tool.input_schema or {}
    for key in schema.get("required", []):
        if key not in tool_input:
            return f"Missing required parameter '{key}' for {tool.name}"
    properties = schema.get("properties") or {}
    for key, value in tool_input.items():
        expected = (properties.get(key) or {}).get("type")
        types = _JSON_TYPES.get(expected) if isinstance(expected, str) else None
        if types is None:
            continue
        if isinstance(value, bool) and bool not in types:
            return f"Parameter '{key}' for {tool.name} must be of type {expected}"
        if not isinstance(value, types):
            return f"Parameter '{key}' for {tool.name} must be of type {expected}"
    return None


class ToolScheduler:
    """Plans and runs tool batches against a registry."""

    def __init__(self, registry: ToolRegistry, max_concurrency: int = 10) -> None:
        self.registry = registry
        self.max_concurrency = max(1, max_concurrency)

    def is_concurrency_safe(self, invocation: ToolInvocation) -> bool:
        tool = self.registry.get(invocation.name)
        if tool is None:
            logger.warning("Unknown tool %s requested, scheduling sequentially", invocation.name)
            return False
        return bool(tool.concurrency_safe)

    def plan(self, invocations: Sequence[ToolInvocation]) -> list[ExecutionGroup]:
        groups: list[ExecutionGroup] = []
        pending: list[ToolInvocation] = []
        for invocation in invocations:
            if self.is_concurrency_safe(invocation):
                pending.append(invocation)
                continue
            if pending:
                groups.append(ExecutionGroup(concurrent=True, invocations=pending))
                pending = []
            groups.append(ExecutionGroup(concurrent=False, invocations=[invocation]))
        if pending:
            groups.append(ExecutionGroup(concurrent=True, invocations=pending))
        return groups

    async def execute(
        self,
        invocations: Sequence[ToolInvocation],
        context: ToolContext,
    ) -> AsyncIterator[ToolProgressEvent | ToolResult]:
        """Run a batch, yielding progress events and results as they happen.

        Each group is joined before the next one starts. Raises
        TurnCancelled if the context's token fires.
        """
        context.set_phase(TurnPhase.AWAITING_TOOLS)
        for group in self.plan(invocations):
            context.token.raise_if_cancelled()
            if group.concurrent and len(group.invocations) > 1:
                async for event in self._run_concurrently(group.invocations, context):
                    yield event
            else:
                for invocation in group.invocations:
                    async for event in self.run_one(invocation, context):
                        yield event

    async def _run_concurrently(
        self,
        invocations: Sequence[ToolInvocation],
        context: ToolContext,
    ) -> AsyncIterator[ToolProgressEvent | ToolResult]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def worker(invocation: ToolInvocation) -> None:
            try:
                async with semaphore:
                    async for event in self.run_one(invocation, context):
                        await queue.put(event)
            finally:
                queue.put_nowait(_DONE)

        tasks = [asyncio.create_task(worker(inv)) for inv in invocations]
        remaining = len(tasks)
        try:
            while remaining:
                item = await context.token.run(queue.get())
                if item is _DONE:
                    remaining -= 1
                    continue
                yield item
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_one(
        self,
        invocation: ToolInvocation,
        context: ToolContext,
    ) -> AsyncIterator[ToolProgressEvent | ToolResult]:
        """Validate, authorize and execute one call. Always ends with one ToolResult."""
        started = time.monotonic()

        def result(content: str, is_error: bool = False, render_hint: str | None = None) -> ToolResult:
            return ToolResult(
                call_id=invocation.call_id,
                tool_name=invocation.name,
                content=content,
                is_error=is_error,
                render_hint=render_hint,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        tool = self.registry.get(invocation.name)
        if tool is None:
            yield result(f"Error: No such tool available: {invocation.name}", is_error=True)
            return

        try:
            rejection = await self._check(tool, invocation, context)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.exception("Checking tool %s failed", invocation.name)
            rejection = f"Error: {e}"
        if rejection:
            yield result(rejection, is_error=True)
            return

        output: ToolOutput | None = None
        try:
            stream = tool.execute(invocation.input, context)
            try:
                while True:
                    try:
                        item = await context.token.run(stream.__anext__())
                    except StopAsyncIteration:
                        break
                    if isinstance(item, ToolProgress):
                        yield ToolProgressEvent(invocation.call_id, invocation.name, item.text)
                    elif isinstance(item, ToolOutput):
                        output = item
            finally:
                await stream.aclose()
        except TurnCancelled:
            raise
        except Exception as e:
            logger.exception("Tool %s failed", invocation.name)
            yield result(f"Error: {e}", is_error=True)
            return

        if output is None:
            yield result("(no output)")
            return
        yield result(output.content, is_error=output.is_error, render_hint=output.render_hint)

    async def _check(self, tool: Tool, invocation: ToolInvocation, context: ToolContext) -> str | None:
        """Input validation then permission. Returns the rejection text, if any."""
        error = validate_schema(tool, invocation.input)
        if error is None and hasattr(tool, "validate_input"):
            error = await tool.validate_input(invocation.input, context)
        if error:
            return f"Error: {error}"

        if tool.needs_permission and context.can_use_tool is not None:
            context.set_phase(TurnPhase.AWAITING_PERMISSION)
            try:
                allowed = await context.token.run(context.can_use_tool(tool, invocation.input))
            finally:
                context.set_phase(TurnPhase.AWAITING_TOOLS)
            if not allowed:
                return f"Permission to use {invocation.name} was denied."
        return None

"""Query orchestration: the tool-call loop of one turn.

Each round compresses the conversation if needed, asks the reminder
engine for transient context, calls the model and, when the reply
requests tools, runs them through the scheduler and appends one
tool-result message. The turn ends when the model stops asking for
tools, when a provider error survives retries (terminal error
message), or on cancellation (exactly one interruption message).
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tandem.api.errors import ApiError, error_message_for
from tandem.api.providers import LlmRequest
from tandem.engine.cancellation import RequestHandle, TurnCancelled, TurnPhase
from tandem.engine.compaction import Compactor, message_chars
from tandem.messages import (
    AssistantMessage,
    create_assistant_error_message,
    create_assistant_message,
    create_interruption_message,
    create_tool_result_message,
    create_user_message,
    extract_text,
    to_api_messages,
    tool_use_blocks,
)
from tandem.tools.registry import SubAgentResult, ToolContext, ToolRegistry
from tandem.tools.scheduler import ToolInvocation, ToolProgressEvent, ToolResult, ToolScheduler

logger = logging.getLogger(__name__)

PermissionCallback = Callable[[Any, dict[str, Any]], Awaitable[bool]]

SUB_AGENT_EXCLUDED_TOOLS = ("task",)


@dataclass(frozen=True)
class TurnEvent:
    """Something the caller should see: a progress update or an appended message."""

    type: str  # "progress" | "result"
    message: Any


@dataclass
class Turn:
    """Accumulator for one turn's conversation."""

    handle: RequestHandle
    messages: list[Any]
    agent_id: str
    rounds: int = 0
    tool_uses: int = 0
    is_sub_agent: bool = False
    started_at: float = field(default_factory=time.monotonic)


def build_system_prompt(parts: list[str], context: dict[str, str] | None) -> list[str]:
    """System prompt parts with project context appended as tagged blocks."""
    system = [p for p in parts if p]
    if context:
        blocks = "\n".join(f'<context name="{name}">{value}</context>' for name, value in context.items())
        system.append(f"As you answer the user's questions, you can use the following context:\n{blocks}")
    return system


class QueryOrchestrator:
    """Drives the model/tool loop for a turn."""

    def __init__(
        self,
        client: Any,  # LlmClient
        registry: ToolRegistry,
        session: Any,  # SessionContext
        compactor: Compactor | None = None,
        *,
        max_tool_rounds: int = 100,
        max_concurrency: int = 10,
        can_use_tool: PermissionCallback | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.session = session
        self.compactor = compactor
        self.max_tool_rounds = max_tool_rounds
        self.max_concurrency = max_concurrency
        self.can_use_tool = can_use_tool
        self.scheduler = ToolScheduler(registry, max_concurrency)

    async def run(
        self,
        turn: Turn,
        system_prompt: list[str],
        context: dict[str, str] | None = None,
    ) -> AsyncIterator[TurnEvent]:
        """Run the turn, yielding events as messages are appended to turn.messages."""
        token = turn.handle.token
        system = build_system_prompt(system_prompt, context)
        has_context = bool(context)
        tools = self.registry.definitions()
        tools_chars = len(json.dumps(tools)) if tools else 0

        try:
            while True:
                token.raise_if_cancelled()

                if turn.rounds >= self.max_tool_rounds:
                    logger.warning("Turn %s hit max tool rounds (%d)", turn.handle.id, self.max_tool_rounds)
                    message = create_assistant_message(
                        f"Stopped after {self.max_tool_rounds} tool rounds without a final answer.",
                        stop_reason="max_tool_rounds",
                    )
                    turn.messages.append(message)
                    yield TurnEvent("result", message)
                    return

                if self.compactor is not None:
                    turn.messages, _ = await self.compactor.maybe_compress(turn.messages, token, tools)

                await self.session.files.scan_for_changes(turn.agent_id)
                reminders = self.session.reminders.generate(has_context, turn.agent_id)
                request = LlmRequest(
                    messages=to_api_messages(turn.messages, [r.content for r in reminders]),
                    system_prompt=system,
                    tools=tools,
                )

                self._set_phase(turn, TurnPhase.AWAITING_MODEL)
                try:
                    assistant = await self.client.send(request, token)
                except ApiError as e:
                    logger.error("Model call failed for turn %s: %s", turn.handle.id, e)
                    message = create_assistant_error_message(error_message_for(e))
                    turn.messages.append(message)
                    yield TurnEvent("result", message)
                    return

                self._calibrate(turn.messages, system, tools_chars, assistant)
                turn.messages.append(assistant)
                yield TurnEvent("result", assistant)

                uses = tool_use_blocks(assistant)
                if not uses:
                    return

                invocations = [ToolInvocation.from_block(block) for block in uses]
                tool_context = ToolContext(
                    agent_id=turn.agent_id,
                    token=token,
                    session=self.session,
                    can_use_tool=self.can_use_tool,
                    delegate=self._delegate(turn, system_prompt, context) if not turn.is_sub_agent else None,
                    on_phase=lambda phase: self._set_phase(turn, phase),
                )
                results: dict[str, ToolResult] = {}
                async for event in self.scheduler.execute(invocations, tool_context):
                    if isinstance(event, ToolProgressEvent):
                        yield TurnEvent("progress", event.to_message())
                    else:
                        results[event.call_id] = event

                # Results gathered after cancellation are discarded
                token.raise_if_cancelled()
                message = create_tool_result_message(results[inv.call_id].to_block() for inv in invocations)
                turn.messages.append(message)
                turn.rounds += 1
                turn.tool_uses += len(invocations)
                yield TurnEvent("result", message)

        except TurnCancelled as e:
            logger.info("Turn %s interrupted (%s)", turn.handle.id, e.reason or "cancelled")
            last = turn.messages[-1] if turn.messages else None
            pending = tool_use_blocks(last) if isinstance(last, AssistantMessage) else []
            message = create_interruption_message(pending)
            turn.messages.append(message)
            yield TurnEvent("result", message)

    def _set_phase(self, turn: Turn, phase: TurnPhase) -> None:
        if not turn.is_sub_agent:
            turn.handle.phase = phase

    def _calibrate(
        self,
        messages: list[Any],
        system: list[str],
        tools_chars: int,
        assistant: AssistantMessage,
    ) -> None:
        if self.compactor is None:
            return
        usage = assistant.usage
        actual = usage.input_tokens + usage.cache_creation_input_tokens + usage.cache_read_input_tokens
        chars = sum(message_chars(m) for m in messages) + sum(len(p) for p in system) + tools_chars
        self.compactor.estimator.calibrate(chars, actual)

    def _delegate(
        self,
        parent: Turn,
        system_prompt: list[str],
        context: dict[str, str] | None,
    ) -> Callable[[str, str], Awaitable[SubAgentResult]]:
        """Sub-agent runner bound to the parent turn's token."""

        async def run_sub_agent(description: str, prompt: str) -> SubAgentResult:
            child = QueryOrchestrator(
                self.client,
                self.registry.without(*SUB_AGENT_EXCLUDED_TOOLS),
                self.session,
                max_tool_rounds=self.max_tool_rounds,
                max_concurrency=self.max_concurrency,
                can_use_tool=self.can_use_tool,
            )
            sub_turn = Turn(
                handle=parent.handle,
                messages=[create_user_message(prompt)],
                agent_id=str(uuid.uuid4()),
                is_sub_agent=True,
            )
            logger.info("Sub-agent %s started: %s", sub_turn.agent_id, description)
            async for _ in child.run(sub_turn, system_prompt, context):
                pass

            last = next((m for m in reversed(sub_turn.messages) if isinstance(m, AssistantMessage)), None)
            return SubAgentResult(
                text=extract_text(last) if last is not None else "",
                tool_uses=sub_turn.tool_uses,
                tokens=last.usage.total if last is not None else 0,
                duration_ms=int((time.monotonic() - sub_turn.started_at) * 1000),
            )

        return run_sub_agent

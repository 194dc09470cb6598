"""Runtime facade: one conversation, one active turn at a time.

start_turn() returns immediately with a RequestHandle; the turn runs as
a background task whose events are read through events(handle).
cancel(handle) may be called at any point and is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from tandem.engine.cancellation import AlreadyActive, CancellationController, RequestHandle
from tandem.engine.orchestrator import QueryOrchestrator, Turn, TurnEvent
from tandem.messages import create_user_message

logger = logging.getLogger(__name__)

_END = object()


class AgentRuntime:
    """Owns the conversation and runs turns through the orchestrator."""

    def __init__(
        self,
        orchestrator: QueryOrchestrator,
        *,
        system_prompt: list[str] | None = None,
        agent_id: str = "main",
        controller: CancellationController | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.system_prompt = list(system_prompt or [])
        self.agent_id = agent_id
        self.controller = controller or CancellationController()
        self._messages: list[Any] = []
        self._queues: dict[str, asyncio.Queue[Any]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._errors: dict[str, BaseException] = {}
        self._current: RequestHandle | None = None

    @property
    def messages(self) -> list[Any]:
        """The conversation as of the last finished turn."""
        return list(self._messages)

    @property
    def session(self) -> Any:
        return self.orchestrator.session

    async def start(self) -> None:
        await self.orchestrator.client.start()

    async def close(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.orchestrator.client.close()

    async def __aenter__(self) -> AgentRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def start_turn(self, user_input: str) -> RequestHandle:
        """Begin a turn.

        Raises AlreadyActive while another turn runs, including a cancelled
        turn that has not finished unwinding.
        """
        unwinding = [handle_id for handle_id, task in self._tasks.items() if not task.done()]
        if unwinding:
            raise AlreadyActive(f"Turn {unwinding[0]} is still finishing")
        handle = self.controller.start()
        self._current = handle
        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._queues[handle.id] = queue
        turn = Turn(
            handle=handle,
            messages=[*self._messages, create_user_message(user_input)],
            agent_id=self.agent_id,
        )
        self._tasks[handle.id] = asyncio.create_task(self._drive(turn, queue))
        return handle

    def cancel(self, handle: RequestHandle, reason: str = "user") -> bool:
        return self.controller.cancel(handle, reason)

    async def events(self, handle: RequestHandle) -> AsyncIterator[TurnEvent]:
        """Events of a turn until it ends. Re-raises an unexpected turn failure."""
        queue = self._queues.get(handle.id)
        if queue is None:
            return
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
        finally:
            self._queues.pop(handle.id, None)
        error = self._errors.pop(handle.id, None)
        if error is not None:
            raise error

    async def run_turn(self, user_input: str) -> list[Any]:
        """Run a turn to completion and return the resulting conversation."""
        handle = self.start_turn(user_input)
        async for _ in self.events(handle):
            pass
        return self.messages

    async def _drive(self, turn: Turn, queue: asyncio.Queue[Any]) -> None:
        handle = turn.handle
        try:
            async for event in self.orchestrator.run(turn, self.system_prompt, self.session.project_context):
                queue.put_nowait(event)
            if self._current is handle:
                self._messages = turn.messages
        except Exception as e:
            logger.exception("Turn %s failed", handle.id)
            self._errors[handle.id] = e
        finally:
            self.controller.complete(handle)
            self._tasks.pop(handle.id, None)
            queue.put_nowait(_END)

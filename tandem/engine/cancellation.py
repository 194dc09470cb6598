"""Turn cancellation.

One RequestHandle exists per active turn. Its CancellationToken is
shared by every await in the turn (model calls, backoff sleeps, tool
executions, sub-agents); cancelling the token makes whichever of those
is pending raise TurnCancelled.

Controller lifecycle: idle -> active -> {completed | cancelled} -> idle.
The return to idle is delayed by a short grace period so late events
from the finished turn are not mistaken for a new one.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TurnCancelled(Exception):
    """The active turn was cancelled. A terminal state, not an error."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or "cancelled")
        self.reason = reason


class AlreadyActive(RuntimeError):
    """A turn is already running."""


class TurnPhase(StrEnum):
    STARTING = "starting"
    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOLS = "awaiting_tools"
    AWAITING_PERMISSION = "awaiting_permission"


class RequestState(StrEnum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative cancellation signal for one turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user") -> bool:
        """Set the token. Returns False if it was already set."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await work, abandoning it if the token fires first.

        The work task is cancelled and awaited before TurnCancelled is
        raised, so its cleanup (killing subprocesses, closing streams)
        has finished when the caller sees the cancellation.
        """
        work = asyncio.ensure_future(awaitable)
        if self.cancelled:
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise TurnCancelled(self.reason)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise TurnCancelled(self.reason)

    async def sleep(self, delay: float) -> None:
        await self.run(asyncio.sleep(delay))


@dataclass
class RequestHandle:
    """The active turn: its token, current phase and state."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    token: CancellationToken = field(default_factory=CancellationToken)
    phase: TurnPhase = TurnPhase.STARTING
    state: RequestState = RequestState.ACTIVE
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


class CancellationController:
    """Owns the single active RequestHandle."""

    def __init__(self, grace_seconds: float = 0.5) -> None:
        self._grace = grace_seconds
        self._state = RequestState.IDLE
        self._active: RequestHandle | None = None
        self._idle_timer: asyncio.TimerHandle | None = None

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def active(self) -> RequestHandle | None:
        return self._active if self._state == RequestState.ACTIVE else None

    def start(self) -> RequestHandle:
        if self._state == RequestState.ACTIVE:
            raise AlreadyActive(f"Turn {self._active.id if self._active else '?'} is still running")
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None
        handle = RequestHandle()
        self._active = handle
        self._state = RequestState.ACTIVE
        logger.debug("Turn %s started", handle.id)
        return handle

    def cancel(self, handle: RequestHandle, reason: str = "user") -> bool:
        """Cancel a turn. Idempotent: returns False if nothing changed."""
        if handle is not self._active or self._state != RequestState.ACTIVE:
            return False
        handle.token.cancel(reason)
        handle.state = RequestState.CANCELLED
        self._state = RequestState.CANCELLED
        logger.info("Turn %s cancelled (%s) during %s", handle.id, reason, handle.phase)
        self._schedule_idle(handle)
        return True

    def complete(self, handle: RequestHandle) -> bool:
        if handle is not self._active or self._state != RequestState.ACTIVE:
            return False
        handle.state = RequestState.COMPLETED
        self._state = RequestState.COMPLETED
        logger.debug("Turn %s completed in %.1fs", handle.id, handle.elapsed)
        self._schedule_idle(handle)
        return True

    def set_phase(self, handle: RequestHandle, phase: TurnPhase) -> None:
        handle.phase = phase

    def _schedule_idle(self, handle: RequestHandle) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._go_idle(handle)
            return
        self._idle_timer = loop.call_later(self._grace, self._go_idle, handle)

    def _go_idle(self, handle: RequestHandle) -> None:
        if self._active is handle and self._state != RequestState.ACTIVE:
            self._state = RequestState.IDLE
            self._active = None
            self._idle_timer = None

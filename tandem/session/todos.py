"""Per-agent todo lists kept in memory for the session."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from tandem.events import TODO_CHANGED, EventBus

logger = logging.getLogger(__name__)

TodoStatus = Literal["pending", "in_progress", "completed"]
TodoPriority = Literal["high", "medium", "low"]


class TodoItem(BaseModel):
    id: str
    content: str = Field(..., min_length=1)
    status: TodoStatus = "pending"
    priority: TodoPriority = "medium"
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class TaskStore(Protocol):
    def get_tasks(self, agent_id: str) -> list[TodoItem]: ...


def format_todos(todos: list[TodoItem], verbose: bool = False) -> str:
    """Checkbox listing used by the todo tools."""
    if not todos:
        return "No todos found."
    lines = []
    for todo in todos:
        checkbox = "☒" if todo.status == "completed" else "☐"
        if verbose:
            lines.append(f"{checkbox} [{todo.id}] {todo.content} ({todo.status}, {todo.priority})")
        else:
            lines.append(f"{checkbox} {todo.content}")
    return "\n".join(lines)


def _status_pairs(todos: list[TodoItem]) -> list[tuple[str, str]]:
    return sorted((t.id, t.status) for t in todos)


class TodoStore:
    """In-memory TaskStore. Publishes todo:changed on every write."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus
        self._todos: dict[str, list[TodoItem]] = {}

    def get_tasks(self, agent_id: str) -> list[TodoItem]:
        return list(self._todos.get(agent_id, []))

    async def set_tasks(self, agent_id: str, todos: list[TodoItem]) -> None:
        """Replace an agent's list. Ids must be unique within the list."""
        ids = [t.id for t in todos]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate todo ids in list")
        in_progress = sum(1 for t in todos if t.status == "in_progress")
        if in_progress > 1:
            logger.info("Agent %s has %d todos in progress", agent_id, in_progress)

        previous = self._todos.get(agent_id, [])
        self._todos[agent_id] = list(todos)
        if self._bus is not None:
            await self._bus.publish(
                TODO_CHANGED,
                agent_id=agent_id,
                previous_count=len(previous),
                new_count=len(todos),
                state_changed=_status_pairs(previous) != _status_pairs(todos),
            )

    def clear(self, agent_id: str | None = None) -> None:
        if agent_id is None:
            self._todos.clear()
        else:
            self._todos.pop(agent_id, None)

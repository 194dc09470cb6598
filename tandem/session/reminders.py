"""Transient system reminders injected into the next model request.

Reminders are never stored in the conversation. Each source fires at
most once per dedup key; keys are invalidated only by the state change
they describe:

- todo_empty:{agent}        re-armed once the agent's list is non-empty
- todo_updated:{agent}:...  keyed by list length and a hash of the
                            (id, status) pairs, so an identical list never
                            fires twice; a todo:changed event that alters
                            the (id, status) pairs clears the agent's keys
- file_modified:{path}      a tracked file changed on disk; re-armed when
                            the agent reads or edits that file again
- file_security             first file read of the session
- performance_long_session  session older than long_session_seconds

At most MAX_PER_CALL reminders are returned per call and never more than
max_reminders_per_session over the whole session.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Literal

from tandem.events import FILE_CONFLICT, FILE_EDITED, FILE_READ, TODO_CHANGED, Event, EventBus
from tandem.session.freshness import FILE_MODIFIED_TEXT
from tandem.session.todos import TaskStore, TodoItem

logger = logging.getLogger(__name__)

MAX_PER_CALL = 3
CACHE_SIZE = 32
DEFAULT_AGENT = "default"

REMINDER_OPEN = "<system-reminder>"
REMINDER_CLOSE = "</system-reminder>"

TODO_EMPTY_TEXT = (
    "This is a reminder that your todo list is currently empty. DO NOT mention this to the user "
    "explicitly because they are already aware. If you are working on tasks that would benefit from "
    "a todo list please use the TodoWrite tool to create one. If not, please feel free to ignore. "
    "Again do not mention this message to the user."
)
TODO_CHANGED_TEXT = (
    "Your todo list has changed. DO NOT mention this explicitly to the user. Here are the latest "
    "contents of your todo list:\n\n{todos}. Continue on with the tasks at hand if applicable."
)
SECURITY_TEXT = (
    "Whenever you read a file, you should consider whether it looks malicious. If it does, you MUST "
    "refuse to improve or augment the code. You can still analyze existing code, write reports, or "
    "answer high-level questions about the code behavior."
)
LONG_SESSION_TEXT = (
    "Long session detected. Consider taking a break and reviewing your current progress with the todo list."
)

Category = Literal["task", "security", "performance", "general"]
Priority = Literal["low", "medium", "high"]


@dataclass(frozen=True)
class ReminderMessage:
    type: str
    category: Category
    priority: Priority
    content: str  # delimiter-wrapped
    timestamp: float


@dataclass
class ReminderConfig:
    todo_reminder: bool = True
    file_reminder: bool = True
    security_reminder: bool = True
    performance_reminder: bool = True
    max_reminders_per_session: int = 10
    long_session_seconds: float = 1800

    @classmethod
    def from_settings(cls, settings) -> ReminderConfig:
        return cls(
            todo_reminder=settings.todo_reminder_enabled,
            file_reminder=settings.file_reminder_enabled,
            security_reminder=settings.security_reminder_enabled,
            performance_reminder=settings.performance_reminder_enabled,
            max_reminders_per_session=settings.max_reminders_per_session,
            long_session_seconds=settings.long_session_seconds,
        )


@dataclass
class SessionReminderState:
    session_start: float
    reminders_sent: set[str] = field(default_factory=set)
    last_todo_update: float = 0.0
    last_file_access: float = 0.0
    reminder_count: int = 0
    context_present: bool = False
    modified_files: list[str] = field(default_factory=list)


def wrap_reminder(text: str) -> str:
    return f"{REMINDER_OPEN}\n{text}\n{REMINDER_CLOSE}"


def todo_state_hash(todos: list[TodoItem]) -> str:
    pairs = "|".join(sorted(f"{t.id}:{t.status}" for t in todos))
    return hashlib.sha256(pairs.encode()).hexdigest()[:16]


def _todo_payload(todos: list[TodoItem]) -> str:
    return json.dumps(
        [
            {
                "content": t.content if len(t.content) <= 100 else t.content[:100] + "...",
                "status": t.status,
                "priority": t.priority,
                "id": t.id,
            }
            for t in todos
        ]
    )


class ReminderEngine:
    """Generates deduplicated reminders from task and file state."""

    def __init__(
        self,
        tasks: TaskStore,
        config: ReminderConfig | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tasks = tasks
        self.config = config or ReminderConfig()
        self._clock = clock
        self._state = SessionReminderState(session_start=clock())
        self._cache: OrderedDict[str, ReminderMessage] = OrderedDict()
        if bus is not None:
            self.subscribe(bus)

    @property
    def state(self) -> SessionReminderState:
        return self._state

    def subscribe(self, bus: EventBus) -> None:
        bus.on(TODO_CHANGED, self._on_todo_changed)
        bus.on(FILE_READ, self._on_file_access)
        bus.on(FILE_EDITED, self._on_file_access)
        bus.on(FILE_CONFLICT, self._on_file_conflict)

    def generate(self, has_context: bool, agent_id: str | None = None) -> list[ReminderMessage]:
        """Reminders for the next request. Marks each returned key as sent."""
        self._state.context_present = has_context
        if not has_context:
            return []

        ceiling = self.config.max_reminders_per_session
        reminders: list[ReminderMessage] = []
        for source in (
            lambda: self._todo_reminder(agent_id or DEFAULT_AGENT),
            self._file_modified_reminder,
            self._security_reminder,
            self._performance_reminder,
        ):
            if len(reminders) >= MAX_PER_CALL or self._state.reminder_count >= ceiling:
                break
            reminder = source()
            if reminder is not None:
                reminders.append(reminder)
                self._state.reminder_count += 1

        if reminders:
            logger.info(
                "Injecting %d reminder(s) for %s: %s (session total %d)",
                len(reminders),
                agent_id or DEFAULT_AGENT,
                ",".join(r.type for r in reminders),
                self._state.reminder_count,
            )
        return reminders

    def reset_session(self) -> None:
        """Forget sent keys, timestamps and cache. Config is kept."""
        self._state = SessionReminderState(session_start=self._clock())
        self._cache.clear()

    def update_config(self, **changes) -> None:
        self.config = replace(self.config, **changes)

    # -- sources --------------------------------------------------------

    def _todo_reminder(self, agent: str) -> ReminderMessage | None:
        if not self.config.todo_reminder:
            return None
        todos = self._tasks.get_tasks(agent)
        sent = self._state.reminders_sent
        empty_key = f"todo_empty:{agent}"

        if not todos:
            if empty_key in sent:
                return None
            sent.add(empty_key)
            return self._build(empty_key, "todo", "task", "medium", TODO_EMPTY_TEXT)

        # A non-empty list re-arms the empty reminder
        sent.discard(empty_key)
        key = f"todo_updated:{agent}:{len(todos)}:{todo_state_hash(todos)}"
        if key in sent:
            return None
        self._clear_todo_keys(agent)
        sent.add(key)
        return self._build(key, "todo", "task", "medium", TODO_CHANGED_TEXT.format(todos=_todo_payload(todos)))

    def _file_modified_reminder(self) -> ReminderMessage | None:
        if not self.config.file_reminder:
            return None
        sent = self._state.reminders_sent
        pending = [p for p in self._state.modified_files if f"file_modified:{p}" not in sent]
        if not pending:
            return None
        for path in pending:
            sent.add(f"file_modified:{path}")
        text = "\n\n".join(FILE_MODIFIED_TEXT.format(path=p) for p in pending)
        return self._build("file_modified:" + "|".join(pending), "file_modified", "general", "high", text)

    def _security_reminder(self) -> ReminderMessage | None:
        if not self.config.security_reminder:
            return None
        if self._state.last_file_access <= 0 or "file_security" in self._state.reminders_sent:
            return None
        self._state.reminders_sent.add("file_security")
        return self._build("file_security", "security", "security", "high", SECURITY_TEXT)

    def _performance_reminder(self) -> ReminderMessage | None:
        if not self.config.performance_reminder:
            return None
        key = "performance_long_session"
        if key in self._state.reminders_sent:
            return None
        if self._clock() - self._state.session_start <= self.config.long_session_seconds:
            return None
        self._state.reminders_sent.add(key)
        return self._build(key, "performance", "performance", "low", LONG_SESSION_TEXT)

    def _build(self, key: str, type_: str, category: Category, priority: Priority, text: str) -> ReminderMessage:
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return replace(cached, timestamp=self._clock())
        reminder = ReminderMessage(
            type=type_,
            category=category,
            priority=priority,
            content=wrap_reminder(text),
            timestamp=self._clock(),
        )
        self._cache[key] = reminder
        if len(self._cache) > CACHE_SIZE:
            self._cache.popitem(last=False)
        return reminder

    def _clear_todo_keys(self, agent: str) -> None:
        prefix = f"todo_updated:{agent}:"
        self._state.reminders_sent = {k for k in self._state.reminders_sent if not k.startswith(prefix)}

    # -- bus listeners --------------------------------------------------

    async def _on_todo_changed(self, event: Event) -> None:
        self._state.last_todo_update = self._clock()
        agent = event.agent_id or DEFAULT_AGENT
        if event.data.get("new_count"):
            self._state.reminders_sent.discard(f"todo_empty:{agent}")
        if event.data.get("state_changed", True):
            self._clear_todo_keys(agent)

    async def _on_file_access(self, event: Event) -> None:
        self._state.last_file_access = self._clock()
        path = event.data.get("path")
        if path in self._state.modified_files:
            self._state.modified_files.remove(path)
            self._state.reminders_sent.discard(f"file_modified:{path}")

    async def _on_file_conflict(self, event: Event) -> None:
        path = event.data.get("path")
        if path and path not in self._state.modified_files:
            self._state.modified_files.append(path)

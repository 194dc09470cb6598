"""Session-scoped state shared by the components of one conversation."""

from __future__ import annotations

from dataclasses import dataclass, field

from tandem.config import Settings
from tandem.events import EventBus
from tandem.session.freshness import FileFreshnessTracker
from tandem.session.reminders import ReminderConfig, ReminderEngine
from tandem.session.todos import TodoStore


@dataclass
class SessionContext:
    """Owns the event bus and every collaborator subscribed to it.

    Passed by reference into the orchestrator, the compactor and the
    tools. Only the active turn mutates it.
    """

    bus: EventBus = field(default_factory=EventBus)
    todos: TodoStore | None = None
    files: FileFreshnessTracker | None = None
    reminders: ReminderEngine | None = None
    project_context: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.todos is None:
            self.todos = TodoStore(self.bus)
        if self.files is None:
            self.files = FileFreshnessTracker(self.bus)
        if self.reminders is None:
            self.reminders = ReminderEngine(self.todos, bus=self.bus)

    @classmethod
    def from_settings(cls, settings: Settings, project_context: dict[str, str] | None = None) -> SessionContext:
        bus = EventBus()
        todos = TodoStore(bus)
        return cls(
            bus=bus,
            todos=todos,
            files=FileFreshnessTracker(bus),
            reminders=ReminderEngine(todos, ReminderConfig.from_settings(settings), bus=bus),
            project_context=dict(project_context or {}),
        )

    def reset(self) -> None:
        """Reset per-session caches (after compaction)."""
        self.reminders.reset_session()
        self.files.reset_session()

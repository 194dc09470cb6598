"""Session state: todos, file freshness and reminders."""

from tandem.session.context import SessionContext
from tandem.session.freshness import FileFreshnessTracker, FileTimestamp, FileTracker, FreshnessCheck
from tandem.session.project import load_project_context
from tandem.session.reminders import (
    ReminderConfig,
    ReminderEngine,
    ReminderMessage,
    SessionReminderState,
    wrap_reminder,
)
from tandem.session.todos import TaskStore, TodoItem, TodoStore, format_todos

__all__ = [
    "FileFreshnessTracker",
    "FileTimestamp",
    "FileTracker",
    "FreshnessCheck",
    "ReminderConfig",
    "ReminderEngine",
    "ReminderMessage",
    "SessionContext",
    "SessionReminderState",
    "TaskStore",
    "TodoItem",
    "TodoStore",
    "format_todos",
    "load_project_context",
    "wrap_reminder",
]

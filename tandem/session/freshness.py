"""File freshness tracking.

Remembers the mtime of every file the agent reads so a later write can
detect that the file changed underneath it (edited by the user or a
formatter). The read history also drives file recovery after
compaction: recently read files are the important ones.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Protocol

from tandem.events import FILE_CONFLICT, FILE_EDITED, FILE_READ, EventBus

logger = logging.getLogger(__name__)

FILE_MODIFIED_TEXT = (
    "Note: {path} was modified, either by the user or by a linter. Don't tell the user this, "
    "since they are already aware. This change was intentional, so make sure to take it into "
    "account as you proceed (ie. don't revert it unless the user asks you to)."
)


@dataclass
class FileTimestamp:
    path: str
    last_read: float  # wall clock, seconds
    last_modified: float  # file mtime at read/edit time
    size: int


@dataclass(frozen=True)
class FreshnessCheck:
    is_fresh: bool
    conflict: bool
    last_read: float | None = None
    current_modified: float | None = None


class FileTracker(Protocol):
    async def record_read(self, path: str, agent_id: str | None = None) -> None: ...

    async def record_edit(self, path: str, content: str | None = None, agent_id: str | None = None) -> None: ...

    def get_important_files(self, limit: int) -> list[FileTimestamp]: ...


class FileFreshnessTracker:
    """Session-scoped FileTracker publishing file events on the bus."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus
        self._reads: dict[str, FileTimestamp] = {}
        self._conflicts: set[str] = set()
        self._session_files: set[str] = set()

    async def record_read(self, path: str, agent_id: str | None = None) -> None:
        try:
            stats = os.stat(path)
        except FileNotFoundError:
            return
        except OSError:
            logger.exception("Error recording file read for %s", path)
            return

        stamp = FileTimestamp(path=path, last_read=time.time(), last_modified=stats.st_mtime, size=stats.st_size)
        self._reads[path] = stamp
        self._session_files.add(path)
        self._conflicts.discard(path)
        if self._bus is not None:
            await self._bus.publish(
                FILE_READ,
                agent_id=agent_id,
                path=path,
                timestamp=stamp.last_read,
                size=stamp.size,
                modified=stamp.last_modified,
            )

    async def check_freshness(self, path: str, agent_id: str | None = None) -> FreshnessCheck:
        """Compare the current mtime with the one recorded at read time.

        Untracked files are fresh. A tracked file that vanished or whose
        mtime advanced is a conflict.
        """
        recorded = self._reads.get(path)
        if recorded is None:
            return FreshnessCheck(is_fresh=True, conflict=False)

        try:
            stats = os.stat(path)
        except OSError:
            self._conflicts.add(path)
            return FreshnessCheck(is_fresh=False, conflict=True, last_read=recorded.last_read)

        is_fresh = stats.st_mtime <= recorded.last_modified
        if not is_fresh:
            self._conflicts.add(path)
            if self._bus is not None:
                await self._bus.publish(
                    FILE_CONFLICT,
                    agent_id=agent_id,
                    path=path,
                    last_read=recorded.last_read,
                    last_modified=recorded.last_modified,
                    current_modified=stats.st_mtime,
                    size_diff=stats.st_size - recorded.size,
                )
        return FreshnessCheck(
            is_fresh=is_fresh,
            conflict=not is_fresh,
            last_read=recorded.last_read,
            current_modified=stats.st_mtime,
        )

    async def record_edit(self, path: str, content: str | None = None, agent_id: str | None = None) -> None:
        existing = self._reads.get(path)
        if existing is not None:
            try:
                stats = os.stat(path)
            except OSError:
                logger.warning("Edited file %s disappeared", path)
            else:
                existing.last_modified = stats.st_mtime
                existing.size = stats.st_size
        self._conflicts.discard(path)
        if self._bus is not None:
            await self._bus.publish(
                FILE_EDITED,
                agent_id=agent_id,
                path=path,
                timestamp=time.time(),
                content_length=len(content or ""),
            )

    async def modification_reminder(self, path: str) -> str | None:
        check = await self.check_freshness(path)
        if not check.conflict:
            return None
        return FILE_MODIFIED_TEXT.format(path=path)

    async def scan_for_changes(self, agent_id: str | None = None) -> list[str]:
        """Check every tracked file not already in conflict.

        Publishes file:conflict for each one modified since it was read and
        returns those paths.
        """
        changed: list[str] = []
        for path in list(self._reads):
            if path in self._conflicts:
                continue
            check = await self.check_freshness(path, agent_id)
            if check.conflict:
                changed.append(path)
        if changed:
            logger.info("Files modified outside the agent: %s", ", ".join(changed))
        return changed

    def get_important_files(self, limit: int) -> list[FileTimestamp]:
        """Most recently read files that still exist, newest first."""
        candidates = sorted(self._reads.values(), key=lambda s: s.last_read, reverse=True)
        return [s for s in candidates if os.path.isfile(s.path)][:limit]

    def conflicted_files(self) -> list[str]:
        return sorted(self._conflicts)

    def session_files(self) -> list[str]:
        return sorted(self._session_files)

    def file_info(self, path: str) -> FileTimestamp | None:
        return self._reads.get(path)

    def is_tracked(self, path: str) -> bool:
        return path in self._reads

    def reset_session(self) -> None:
        self._reads.clear()
        self._conflicts.clear()
        self._session_files.clear()

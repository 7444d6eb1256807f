"""In-memory first-seen / last-seen / removed tracking per agent and library.

The tracker is advisory, process-local state: the catalog tables remain the
source of truth and a restarted worker simply starts with an empty tracker.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MISSING = -1


@dataclass
class TemporalInfo:
    """Lifecycle timestamps (epoch millis) for one library on one agent."""

    first_seen: int
    last_seen: int
    removed: bool = False
    removed_at: int | None = None


@dataclass(frozen=True)
class LibraryStats:
    total: int
    active: int
    removed: int


class LibraryTemporalTracker:
    """Thread-safe map of AID -> library id -> ``TemporalInfo``.

    Removal is one-way through ``update_timestamp``: a removed library keeps
    its removed flag when observed again, and only ``reactivate`` clears it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_aid: dict[str, dict[str, TemporalInfo]] = {}

    @staticmethod
    def _valid(op: str, aid: str | None, library_id: str | None) -> bool:
        if not aid or not library_id:
            logger.warning("tracker_invalid_key op=%s aid=%s library_id=%s", op, aid, library_id)
            return False
        return True

    def update_timestamp(self, aid: str | None, library_id: str | None, timestamp: int) -> None:
        """Record an observation, creating the entry or advancing last-seen."""
        if not self._valid("update_timestamp", aid, library_id):
            return
        ts = int(timestamp)
        with self._lock:
            libraries = self._by_aid.setdefault(str(aid), {})
            info = libraries.get(str(library_id))
            if info is None:
                libraries[str(library_id)] = TemporalInfo(first_seen=ts, last_seen=ts)
                logger.debug("tracker_first_seen aid=%s library_id=%s ts=%d", aid, library_id, ts)
                return
            if ts > info.last_seen:
                info.last_seen = ts

    def mark_removed(self, aid: str | None, library_id: str | None, timestamp: int) -> None:
        """Flag a library as removed; the first removal time wins."""
        if not self._valid("mark_removed", aid, library_id):
            return
        with self._lock:
            info = self._by_aid.get(str(aid), {}).get(str(library_id))
            if info is None:
                logger.warning("tracker_remove_unknown aid=%s library_id=%s", aid, library_id)
                return
            if info.removed:
                return
            info.removed = True
            info.removed_at = int(timestamp)
        logger.info("library_removed aid=%s library_id=%s ts=%d", aid, library_id, int(timestamp))

    def reactivate(self, aid: str | None, library_id: str | None, timestamp: int) -> bool:
        """Clear the removed flag and advance last-seen; False if the entry is unknown."""
        if not self._valid("reactivate", aid, library_id):
            return False
        ts = int(timestamp)
        with self._lock:
            info = self._by_aid.get(str(aid), {}).get(str(library_id))
            if info is None:
                return False
            info.removed = False
            info.removed_at = None
            if ts > info.last_seen:
                info.last_seen = ts
        return True

    def is_first_seen(self, aid: str | None, library_id: str | None) -> bool:
        """True when no observation is recorded yet for this agent and library."""
        if not aid or not library_id:
            return False
        with self._lock:
            return str(library_id) not in self._by_aid.get(str(aid), {})

    def _lookup(self, aid: str | None, library_id: str | None) -> TemporalInfo | None:
        if not aid or not library_id:
            return None
        with self._lock:
            return self._by_aid.get(str(aid), {}).get(str(library_id))

    def get_first_seen(self, aid: str | None, library_id: str | None) -> int:
        info = self._lookup(aid, library_id)
        return info.first_seen if info is not None else MISSING

    def get_last_seen(self, aid: str | None, library_id: str | None) -> int:
        info = self._lookup(aid, library_id)
        return info.last_seen if info is not None else MISSING

    def get_info(self, aid: str | None, library_id: str | None) -> TemporalInfo | None:
        """Return a copy of the entry, or None."""
        info = self._lookup(aid, library_id)
        if info is None:
            return None
        return TemporalInfo(info.first_seen, info.last_seen, info.removed, info.removed_at)

    def get_active_libraries(self, aid: str | None) -> set[str]:
        """Snapshot of library ids not flagged removed for ``aid``."""
        if not aid:
            return set()
        with self._lock:
            libraries = self._by_aid.get(str(aid), {})
            return {lib_id for lib_id, info in libraries.items() if not info.removed}

    def get_stats(self, aid: str | None) -> LibraryStats:
        if not aid:
            return LibraryStats(total=0, active=0, removed=0)
        with self._lock:
            infos = list(self._by_aid.get(str(aid), {}).values())
        removed = sum(1 for info in infos if info.removed)
        return LibraryStats(total=len(infos), active=len(infos) - removed, removed=removed)

    def clear_aid(self, aid: str | None) -> None:
        if not aid:
            return
        with self._lock:
            dropped = self._by_aid.pop(str(aid), None)
        if dropped is not None:
            logger.info("tracker_cleared aid=%s libraries=%d", aid, len(dropped))

    def tracked_aid_count(self) -> int:
        with self._lock:
            return len(self._by_aid)

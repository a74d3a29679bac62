"""Per-meeting mutual exclusion shared by the reconciler and session manager."""

from __future__ import annotations

import asyncio


class SessionLocks:
    """Registry of asyncio.Lock objects keyed by meeting id.

    At most one reconciliation or stop runs for a given meeting at a time.
    Locks are created on first use and dropped once a meeting completes.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, meeting_id: str) -> asyncio.Lock:
        lock = self._locks.get(meeting_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[meeting_id] = lock
        return lock

    def discard(self, meeting_id: str) -> None:
        """Forget the lock for a meeting unless someone is holding it."""
        lock = self._locks.get(meeting_id)
        if lock is not None and not lock.locked():
            del self._locks[meeting_id]

    def __contains__(self, meeting_id: str) -> bool:
        return meeting_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)

"""Poll scheduler -- periodic reconciliation per active meeting.

Each registered meeting gets its own asyncio background loop that calls the
reconcile callable every POLL_INTERVAL_SECONDS. A separate discovery loop
enumerates remote bots on its own interval. Loops log and continue on
failure; one bad tick never stops a session's polling.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from src.copileo.core.monitoring import active_poll_sessions

logger = structlog.get_logger(__name__)


@dataclass
class _PollEntry:
    task: asyncio.Task
    stop: asyncio.Event


class PollScheduler:
    """Registry of per-meeting poll loops plus the bot discovery loop.

    Args:
        reconcile: Async callable taking a meeting id (TranscriptReconciler.reconcile).
        discover: Optional async callable run on the discovery interval.
        interval: Seconds between reconciliation ticks for one meeting.
        discovery_interval: Seconds between discovery ticks.
    """

    def __init__(
        self,
        reconcile: Callable[[str], Awaitable[Any]],
        discover: Callable[[], Awaitable[Any]] | None = None,
        interval: float = 5.0,
        discovery_interval: float = 5.0,
    ) -> None:
        self._reconcile = reconcile
        self._discover = discover
        self._interval = interval
        self._discovery_interval = discovery_interval
        self._entries: dict[str, _PollEntry] = {}
        self._discovery_task: asyncio.Task | None = None
        self._discovery_stop = asyncio.Event()

    # ── Registration ─────────────────────────────────────────────────────

    def register(self, meeting_id: str) -> None:
        """Start polling a meeting. Registering twice is a no-op."""
        if meeting_id in self._entries:
            return
        stop = asyncio.Event()
        task = asyncio.create_task(
            self._poll_loop(meeting_id, stop),
            name=f"poll_{meeting_id}",
        )
        self._entries[meeting_id] = _PollEntry(task=task, stop=stop)
        active_poll_sessions.set(len(self._entries))
        logger.info("scheduler.session_registered", meeting_id=meeting_id)

    def deregister(self, meeting_id: str) -> None:
        """Stop future ticks for a meeting.

        A tick already in progress is allowed to finish; the loop exits
        afterwards instead of waiting for the next interval.
        """
        entry = self._entries.pop(meeting_id, None)
        if entry is None:
            return
        entry.stop.set()
        active_poll_sessions.set(len(self._entries))
        logger.info("scheduler.session_deregistered", meeting_id=meeting_id)

    def is_registered(self, meeting_id: str) -> bool:
        return meeting_id in self._entries

    @property
    def active_sessions(self) -> list[str]:
        return list(self._entries)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def set_discover(self, discover: Callable[[], Awaitable[Any]]) -> None:
        """Attach the discovery callable; takes effect on the next start()."""
        self._discover = discover

    def start(self) -> None:
        """Launch the discovery loop, if a discover callable was given."""
        if self._discover is None or self._discovery_task is not None:
            return
        self._discovery_stop.clear()
        self._discovery_task = asyncio.create_task(
            self._discovery_loop(), name="bot_discovery"
        )
        logger.info(
            "scheduler.discovery_started",
            interval=self._discovery_interval,
        )

    async def shutdown(self) -> None:
        """Cancel every loop and wait for them to exit."""
        tasks = [entry.task for entry in self._entries.values()]
        for entry in self._entries.values():
            entry.stop.set()
        self._entries.clear()
        active_poll_sessions.set(0)

        if self._discovery_task is not None:
            self._discovery_stop.set()
            tasks.append(self._discovery_task)
            self._discovery_task = None

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler.shutdown", cancelled=len(tasks))

    # ── Loops ────────────────────────────────────────────────────────────

    async def _poll_loop(self, meeting_id: str, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self._reconcile(meeting_id)
            except asyncio.CancelledError:
                logger.info("scheduler.poll_cancelled", meeting_id=meeting_id)
                raise
            except Exception:
                logger.warning(
                    "scheduler.poll_tick_error", meeting_id=meeting_id, exc_info=True
                )
            if await _wait_or_timeout(stop, self._interval):
                break

    async def _discovery_loop(self) -> None:
        while not self._discovery_stop.is_set():
            try:
                await self._discover()
            except asyncio.CancelledError:
                logger.info("scheduler.discovery_cancelled")
                raise
            except Exception:
                logger.warning("scheduler.discovery_tick_error", exc_info=True)
            if await _wait_or_timeout(self._discovery_stop, self._discovery_interval):
                break


async def _wait_or_timeout(event: asyncio.Event, timeout: float) -> bool:
    """Sleep for ``timeout`` seconds; return True early if ``event`` is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True

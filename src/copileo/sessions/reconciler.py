"""Transcript reconciliation -- pull Vexa snapshots into the Meeting Store.

Vexa reports the whole transcript so far on every fetch, so each pass
replaces the stored segment set with the latest snapshot. A pass is a
no-op for missing or completed meetings and for empty snapshots, which
means a transient empty read never wipes good data.

Reconcile never raises: remote and store failures are logged and reported
through ReconcileOutcome so the poll loop keeps running.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import structlog

from src.copileo.core.monitoring import reconcile_runs_total
from src.copileo.sessions.errors import RemoteRejected, RemoteUnavailable, StoreUnavailable
from src.copileo.sessions.locks import SessionLocks
from src.copileo.sessions.schemas import (
    LifecycleEventType,
    MeetingStatus,
    RemoteSegment,
    TranscriptSegmentCreate,
)

logger = structlog.get_logger(__name__)


class ReconcileOutcome(str, Enum):
    REPLACED = "replaced"
    EMPTY = "empty"
    SKIPPED = "skipped"
    FAILED = "failed"


def normalize_segments(
    remote: list[RemoteSegment],
    meeting_language: str,
    now: datetime | None = None,
) -> list[TranscriptSegmentCreate]:
    """Apply field fallbacks to remote segments, preserving provider order.

    speaker -> "Unknown"; timestamp -> absolute_start_time -> now (ISO-8601
    UTC); language -> the meeting language.
    """
    fallback_ts = (now or datetime.now(timezone.utc)).isoformat()
    return [
        TranscriptSegmentCreate(
            speaker=seg.speaker or "Unknown",
            text=seg.text or "",
            timestamp=seg.timestamp or seg.absolute_start_time or fallback_ts,
            language=seg.language or meeting_language,
        )
        for seg in remote
    ]


class TranscriptReconciler:
    """Merges remote transcript state into local storage, one meeting at a time.

    Args:
        repository: MeetingRepository (or compatible test double).
        client: VexaClient used for transcript fetches.
        locks: Per-meeting lock registry shared with the SessionManager.
    """

    def __init__(self, repository, client, locks: SessionLocks | None = None) -> None:
        self._repository = repository
        self._client = client
        self._locks = locks or SessionLocks()
        # Last rejection message per meeting, so repeated polls log one event
        self._last_errors: dict[str, str] = {}

    async def reconcile(self, meeting_id: str) -> ReconcileOutcome:
        """Run one reconciliation pass for a meeting under its lock."""
        try:
            async with self._locks.get(meeting_id):
                outcome = await self._reconcile_locked(meeting_id)
        except Exception:
            logger.exception("reconcile.unexpected_error", meeting_id=meeting_id)
            outcome = ReconcileOutcome.FAILED
        if outcome == ReconcileOutcome.SKIPPED:
            # Missing or completed meeting: drop its lock entry
            self._locks.discard(meeting_id)
        reconcile_runs_total.labels(outcome=outcome.value).inc()
        return outcome

    def forget(self, meeting_id: str) -> None:
        """Drop per-meeting error state once a meeting is finished."""
        self._last_errors.pop(meeting_id, None)

    async def _reconcile_locked(self, meeting_id: str) -> ReconcileOutcome:
        try:
            meeting = await self._repository.get_meeting(meeting_id)
        except StoreUnavailable as exc:
            logger.warning("reconcile.store_unavailable", meeting_id=meeting_id, error=str(exc))
            return ReconcileOutcome.FAILED

        if meeting is None or meeting.status == MeetingStatus.COMPLETED:
            logger.debug("reconcile.skipped", meeting_id=meeting_id)
            return ReconcileOutcome.SKIPPED

        try:
            remote = await self._client.fetch_segments(
                meeting.platform, meeting.native_meeting_id
            )
        except RemoteRejected as exc:
            await self._record_rejection(meeting_id, exc)
            return ReconcileOutcome.FAILED
        except RemoteUnavailable as exc:
            logger.warning("reconcile.remote_unavailable", meeting_id=meeting_id, error=str(exc))
            return ReconcileOutcome.FAILED

        self._last_errors.pop(meeting_id, None)

        if not remote:
            logger.debug("reconcile.empty", meeting_id=meeting_id)
            return ReconcileOutcome.EMPTY

        segments = normalize_segments(remote, meeting.language)
        try:
            written = await self._repository.replace_segments(meeting_id, segments)
        except StoreUnavailable as exc:
            logger.warning("reconcile.store_unavailable", meeting_id=meeting_id, error=str(exc))
            return ReconcileOutcome.FAILED

        if not written:
            # Completed between the read above and the locked write
            logger.debug("reconcile.skipped", meeting_id=meeting_id)
            return ReconcileOutcome.SKIPPED

        logger.info(
            "reconcile.replaced",
            meeting_id=meeting_id,
            segment_count=len(segments),
        )
        return ReconcileOutcome.REPLACED

    async def _record_rejection(self, meeting_id: str, exc: RemoteRejected) -> None:
        logger.warning(
            "reconcile.remote_rejected",
            meeting_id=meeting_id,
            status_code=exc.status_code,
            error=exc.message,
        )
        if self._last_errors.get(meeting_id) == exc.message:
            return
        self._last_errors[meeting_id] = exc.message
        try:
            await self._repository.record_event(
                meeting_id,
                LifecycleEventType.ERROR,
                {
                    "source": "reconcile",
                    "message": exc.message,
                    "status_code": exc.status_code,
                },
            )
        except StoreUnavailable as store_exc:
            logger.warning(
                "reconcile.error_event_failed",
                meeting_id=meeting_id,
                error=str(store_exc),
            )

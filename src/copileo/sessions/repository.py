"""Meeting repository -- async persistence for all session entities.

Provides MeetingRepository with the session_factory callable pattern.
Handles serialization between Pydantic schemas and SQLAlchemy models for
meetings, transcript segments, lifecycle events and webhook configs.

Writes that must be atomic with a status check (segment replacement and
the completion transition) lock the meeting row with SELECT ... FOR UPDATE
and re-read its status inside the same transaction. Any SQLAlchemy or
connection failure surfaces as StoreUnavailable.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.copileo.sessions.errors import StoreUnavailable
from src.copileo.sessions.models import (
    MeetingEventModel,
    MeetingModel,
    TranscriptSegmentModel,
    WebhookConfigModel,
)
from src.copileo.sessions.schemas import (
    LifecycleEvent,
    LifecycleEventType,
    Meeting,
    MeetingCreate,
    MeetingStatus,
    TranscriptSegment,
    TranscriptSegmentCreate,
    TranscriptView,
    TranscriptViewSegment,
    WebhookConfig,
    WebhookConfigUpdate,
    extract_segments,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_meeting(model: MeetingModel) -> Meeting:
    """Convert MeetingModel to Meeting schema."""
    return Meeting(
        id=model.id,
        account_id=model.account_id,
        platform=model.platform,
        native_meeting_id=model.native_meeting_id,
        passcode=model.passcode or "",
        bot_name=model.bot_name,
        language=model.language,
        status=MeetingStatus(model.status),
        started_at=model.started_at,
        ended_at=model.ended_at,
        complete_transcript=model.complete_transcript,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_segment(model: TranscriptSegmentModel) -> TranscriptSegment:
    return TranscriptSegment(
        meeting_id=model.meeting_id,
        segment_index=model.segment_index,
        speaker=model.speaker,
        text=model.text,
        timestamp=model.timestamp,
        language=model.language,
    )


def _model_to_event(model: MeetingEventModel) -> LifecycleEvent:
    return LifecycleEvent(
        id=model.id,
        meeting_id=model.meeting_id,
        event_type=LifecycleEventType(model.event_type),
        event_data=model.event_data,
        created_at=model.created_at,
    )


def _model_to_webhook_config(model: WebhookConfigModel) -> WebhookConfig:
    return WebhookConfig(
        account_id=model.account_id,
        webhook_url=model.webhook_url or "",
        webhook_secret=model.webhook_secret or "",
        webhook_enabled=bool(model.webhook_enabled),
        updated_at=model.updated_at,
    )


def build_transcript_view(
    meeting: Meeting, segments: list[TranscriptSegment]
) -> TranscriptView:
    """Prefer the completion snapshot; fall back to the live segments."""
    if meeting.status == MeetingStatus.COMPLETED and meeting.complete_transcript:
        return TranscriptView(
            meeting_id=meeting.id,
            complete=True,
            segments=[
                TranscriptViewSegment(
                    speaker=seg.speaker or "Unknown",
                    text=seg.text,
                    timestamp=seg.timestamp or seg.absolute_start_time,
                )
                for seg in extract_segments(meeting.complete_transcript)
            ],
        )
    return TranscriptView(
        meeting_id=meeting.id,
        complete=False,
        segments=[
            TranscriptViewSegment(
                speaker=seg.speaker,
                text=seg.text,
                timestamp=seg.timestamp,
            )
            for seg in sorted(segments, key=lambda s: s.segment_index)
        ],
    )


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    """Translate datastore failures into StoreUnavailable."""
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("store.operation_failed", operation=operation, error=str(exc))
        raise StoreUnavailable(f"{operation} failed: {exc}") from exc


# ── Repository ──────────────────────────────────────────────────────────────


class MeetingRepository:
    """Async persistence for meetings, segments, events and webhook configs.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Meetings ─────────────────────────────────────────────────────────

    async def create_meeting(
        self,
        account_id: str,
        data: MeetingCreate,
        event_type: LifecycleEventType,
        event_data: dict | None,
    ) -> tuple[Meeting, LifecycleEvent]:
        """Create an active meeting together with its opening event.

        Both rows are committed in a single transaction.

        Args:
            account_id: Owning account id.
            data: MeetingCreate with the bot/meeting details.
            event_type: Event recorded alongside the meeting (bot_started).
            event_data: Event payload.

        Returns:
            Tuple of (persisted Meeting, persisted LifecycleEvent).
        """
        now = datetime.now(timezone.utc)
        async with _store_errors("create_meeting"):
            async for session in self._session_factory():
                model = MeetingModel(
                    id=uuid.uuid4(),
                    account_id=account_id,
                    platform=data.platform,
                    native_meeting_id=data.native_meeting_id,
                    passcode=data.passcode,
                    bot_name=data.bot_name,
                    language=data.language,
                    status=MeetingStatus.ACTIVE.value,
                    started_at=now,
                    created_at=now,
                    updated_at=now,
                )
                event = MeetingEventModel(
                    id=uuid.uuid4(),
                    meeting_id=model.id,
                    event_type=event_type.value,
                    event_data=event_data,
                    created_at=now,
                )
                session.add(model)
                await session.flush()
                session.add(event)
                await session.commit()
                return _model_to_meeting(model), _model_to_event(event)

    async def get_meeting(
        self, meeting_id: str, account_id: str | None = None
    ) -> Meeting | None:
        """Get a meeting by ID, optionally restricted to one account.

        Returns:
            Meeting if found, None otherwise.
        """
        async with _store_errors("get_meeting"):
            async for session in self._session_factory():
                stmt = select(MeetingModel).where(MeetingModel.id == uuid.UUID(meeting_id))
                if account_id is not None:
                    stmt = stmt.where(MeetingModel.account_id == account_id)
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                if model is None:
                    return None
                return _model_to_meeting(model)

    async def get_active_meeting_by_native_id(
        self, account_id: str, platform: str, native_meeting_id: str
    ) -> Meeting | None:
        """Find the active meeting tracking a given remote bot (for adoption dedup)."""
        async with _store_errors("get_active_meeting_by_native_id"):
            async for session in self._session_factory():
                stmt = (
                    select(MeetingModel)
                    .where(
                        MeetingModel.account_id == account_id,
                        MeetingModel.platform == platform,
                        MeetingModel.native_meeting_id == native_meeting_id,
                        MeetingModel.status == MeetingStatus.ACTIVE.value,
                    )
                    .order_by(MeetingModel.created_at.desc())
                    .limit(1)
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                if model is None:
                    return None
                return _model_to_meeting(model)

    async def list_meetings(self, account_id: str) -> list[Meeting]:
        """All meetings for an account, newest first."""
        async with _store_errors("list_meetings"):
            async for session in self._session_factory():
                stmt = (
                    select(MeetingModel)
                    .where(MeetingModel.account_id == account_id)
                    .order_by(MeetingModel.created_at.desc())
                )
                result = await session.execute(stmt)
                return [_model_to_meeting(m) for m in result.scalars().all()]

    async def list_active_meetings(self) -> list[Meeting]:
        """All meetings still active, across accounts (startup resume, discovery)."""
        async with _store_errors("list_active_meetings"):
            async for session in self._session_factory():
                stmt = (
                    select(MeetingModel)
                    .where(MeetingModel.status == MeetingStatus.ACTIVE.value)
                    .order_by(MeetingModel.created_at)
                )
                result = await session.execute(stmt)
                return [_model_to_meeting(m) for m in result.scalars().all()]

    async def complete_meeting(
        self,
        meeting_id: str,
        ended_at: datetime,
        complete_transcript: dict | None,
    ) -> tuple[Meeting, LifecycleEvent | None]:
        """Transition an active meeting to completed and record bot_stopped.

        The status change, ended_at, snapshot and event are committed in one
        transaction. If the meeting is already completed nothing is written
        and the event is None.

        Raises:
            ValueError: If meeting not found.
        """
        async with _store_errors("complete_meeting"):
            async for session in self._session_factory():
                stmt = (
                    select(MeetingModel)
                    .where(MeetingModel.id == uuid.UUID(meeting_id))
                    .with_for_update()
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()

                if model is None:
                    raise ValueError(f"Meeting not found: id={meeting_id}")

                if model.status == MeetingStatus.COMPLETED.value:
                    await session.rollback()
                    return _model_to_meeting(model), None

                model.status = MeetingStatus.COMPLETED.value
                model.ended_at = ended_at
                model.complete_transcript = complete_transcript
                model.updated_at = ended_at
                event = MeetingEventModel(
                    id=uuid.uuid4(),
                    meeting_id=model.id,
                    event_type=LifecycleEventType.BOT_STOPPED.value,
                    event_data={"complete_transcript": complete_transcript},
                    created_at=ended_at,
                )
                session.add(event)
                await session.commit()
                return _model_to_meeting(model), _model_to_event(event)

    # ── Transcript Segments ──────────────────────────────────────────────

    async def replace_segments(
        self, meeting_id: str, segments: list[TranscriptSegmentCreate]
    ) -> bool:
        """Replace all stored segments of an active meeting with a new batch.

        Deletes the existing set, inserts the new one with segment_index equal
        to list position, and touches the meeting's updated_at, all in one
        transaction under a row lock on the meeting.

        Returns:
            True if written, False if the meeting is missing or completed.
        """
        async with _store_errors("replace_segments"):
            async for session in self._session_factory():
                stmt = (
                    select(MeetingModel)
                    .where(MeetingModel.id == uuid.UUID(meeting_id))
                    .with_for_update()
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                if model is None or model.status != MeetingStatus.ACTIVE.value:
                    await session.rollback()
                    return False

                await session.execute(
                    delete(TranscriptSegmentModel).where(
                        TranscriptSegmentModel.meeting_id == model.id
                    )
                )
                session.add_all(
                    [
                        TranscriptSegmentModel(
                            meeting_id=model.id,
                            segment_index=index,
                            speaker=seg.speaker,
                            text=seg.text,
                            timestamp=seg.timestamp,
                            language=seg.language,
                        )
                        for index, seg in enumerate(segments)
                    ]
                )
                model.updated_at = datetime.now(timezone.utc)
                await session.commit()
                return True

    async def list_segments(self, meeting_id: str) -> list[TranscriptSegment]:
        """All stored segments for a meeting, ordered by index."""
        async with _store_errors("list_segments"):
            async for session in self._session_factory():
                stmt = (
                    select(TranscriptSegmentModel)
                    .where(TranscriptSegmentModel.meeting_id == uuid.UUID(meeting_id))
                    .order_by(TranscriptSegmentModel.segment_index)
                )
                result = await session.execute(stmt)
                return [_model_to_segment(m) for m in result.scalars().all()]

    async def get_transcript_view(
        self, meeting_id: str, account_id: str | None = None
    ) -> TranscriptView | None:
        """Read the meeting and its segments in one session and build the view."""
        async with _store_errors("get_transcript_view"):
            async for session in self._session_factory():
                stmt = select(MeetingModel).where(MeetingModel.id == uuid.UUID(meeting_id))
                if account_id is not None:
                    stmt = stmt.where(MeetingModel.account_id == account_id)
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                if model is None:
                    return None
                meeting = _model_to_meeting(model)
                if meeting.status == MeetingStatus.COMPLETED and meeting.complete_transcript:
                    return build_transcript_view(meeting, [])

                seg_stmt = (
                    select(TranscriptSegmentModel)
                    .where(TranscriptSegmentModel.meeting_id == model.id)
                    .order_by(TranscriptSegmentModel.segment_index)
                )
                seg_result = await session.execute(seg_stmt)
                segments = [_model_to_segment(m) for m in seg_result.scalars().all()]
                return build_transcript_view(meeting, segments)

    # ── Lifecycle Events ─────────────────────────────────────────────────

    async def record_event(
        self,
        meeting_id: str,
        event_type: LifecycleEventType,
        event_data: dict | None = None,
    ) -> LifecycleEvent:
        """Append a lifecycle event for a meeting."""
        async with _store_errors("record_event"):
            async for session in self._session_factory():
                model = MeetingEventModel(
                    id=uuid.uuid4(),
                    meeting_id=uuid.UUID(meeting_id),
                    event_type=event_type.value,
                    event_data=event_data,
                    created_at=datetime.now(timezone.utc),
                )
                session.add(model)
                await session.commit()
                return _model_to_event(model)

    async def list_events(self, meeting_id: str) -> list[LifecycleEvent]:
        """All lifecycle events for a meeting, oldest first."""
        async with _store_errors("list_events"):
            async for session in self._session_factory():
                stmt = (
                    select(MeetingEventModel)
                    .where(MeetingEventModel.meeting_id == uuid.UUID(meeting_id))
                    .order_by(MeetingEventModel.created_at)
                )
                result = await session.execute(stmt)
                return [_model_to_event(m) for m in result.scalars().all()]

    # ── Webhook Config ───────────────────────────────────────────────────

    async def get_webhook_config(self, account_id: str) -> WebhookConfig | None:
        """Get the single webhook config for an account."""
        async with _store_errors("get_webhook_config"):
            async for session in self._session_factory():
                stmt = select(WebhookConfigModel).where(
                    WebhookConfigModel.account_id == account_id
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                if model is None:
                    return None
                return _model_to_webhook_config(model)

    async def upsert_webhook_config(
        self, account_id: str, data: WebhookConfigUpdate
    ) -> WebhookConfig:
        """Insert or replace the webhook config for an account."""
        now = datetime.now(timezone.utc)
        values = {
            "webhook_url": data.webhook_url,
            "webhook_secret": data.webhook_secret,
            "webhook_enabled": data.webhook_enabled,
            "updated_at": now,
        }
        async with _store_errors("upsert_webhook_config"):
            async for session in self._session_factory():
                stmt = (
                    pg_insert(WebhookConfigModel)
                    .values(account_id=account_id, **values)
                    .on_conflict_do_update(
                        index_elements=[WebhookConfigModel.account_id],
                        set_=values,
                    )
                    .returning(WebhookConfigModel)
                )
                result = await session.execute(stmt)
                model = result.scalar_one()
                await session.commit()
                return _model_to_webhook_config(model)

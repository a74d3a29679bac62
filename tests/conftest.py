"""Shared test doubles and fixtures for the session engine.

Provides:
- InMemoryMeetingRepository: dict-backed stand-in for MeetingRepository
- FakeVexaClient: scripted stand-in for VexaClient that records calls
- Fixtures for both, plus bot-default settings and recording
  scheduler/dispatcher mocks
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from src.copileo.sessions.errors import StoreUnavailable
from src.copileo.sessions.repository import build_transcript_view
from src.copileo.sessions.schemas import (
    BotDescriptor,
    LifecycleEvent,
    LifecycleEventType,
    Meeting,
    MeetingCreate,
    MeetingStatus,
    RemoteSegment,
    TranscriptSegment,
    TranscriptSegmentCreate,
    TranscriptView,
    WebhookConfig,
    WebhookConfigUpdate,
    extract_segments,
)


# ── In-Memory Repository ─────────────────────────────────────────────────────


class InMemoryMeetingRepository:
    """In-memory test double for MeetingRepository.

    Mirrors the MeetingRepository interface using dicts for storage. Set
    ``fail`` to make every call raise StoreUnavailable.
    """

    def __init__(self) -> None:
        self.meetings: dict[str, Meeting] = {}
        self.segments: dict[str, list[TranscriptSegment]] = {}
        self.events: dict[str, list[LifecycleEvent]] = {}
        self.webhooks: dict[str, WebhookConfig] = {}
        self.replace_calls = 0
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise StoreUnavailable("store down")

    async def create_meeting(
        self,
        account_id: str,
        data: MeetingCreate,
        event_type: LifecycleEventType,
        event_data: dict | None,
    ) -> tuple[Meeting, LifecycleEvent]:
        self._check()
        now = datetime.now(timezone.utc)
        meeting = Meeting(
            id=uuid.uuid4(),
            account_id=account_id,
            platform=data.platform,
            native_meeting_id=data.native_meeting_id,
            passcode=data.passcode,
            bot_name=data.bot_name,
            language=data.language,
            status=MeetingStatus.ACTIVE,
            started_at=now,
            created_at=now,
            updated_at=now,
        )
        event = LifecycleEvent(
            meeting_id=meeting.id,
            event_type=event_type,
            event_data=event_data,
            created_at=now,
        )
        self.meetings[str(meeting.id)] = meeting
        self.events[str(meeting.id)] = [event]
        return meeting, event

    async def get_meeting(
        self, meeting_id: str, account_id: str | None = None
    ) -> Meeting | None:
        self._check()
        m = self.meetings.get(meeting_id)
        if m is None:
            return None
        if account_id is not None and m.account_id != account_id:
            return None
        return m

    async def get_active_meeting_by_native_id(
        self, account_id: str, platform: str, native_meeting_id: str
    ) -> Meeting | None:
        self._check()
        for m in self.meetings.values():
            if (
                m.account_id == account_id
                and m.platform == platform
                and m.native_meeting_id == native_meeting_id
                and m.status == MeetingStatus.ACTIVE
            ):
                return m
        return None

    async def list_meetings(self, account_id: str) -> list[Meeting]:
        self._check()
        return sorted(
            (m for m in self.meetings.values() if m.account_id == account_id),
            key=lambda m: m.created_at,
            reverse=True,
        )

    async def list_active_meetings(self) -> list[Meeting]:
        self._check()
        return [m for m in self.meetings.values() if m.status == MeetingStatus.ACTIVE]

    async def complete_meeting(
        self,
        meeting_id: str,
        ended_at: datetime,
        complete_transcript: dict | None,
    ) -> tuple[Meeting, LifecycleEvent | None]:
        self._check()
        m = self.meetings.get(meeting_id)
        if m is None:
            raise ValueError(f"Meeting not found: id={meeting_id}")
        if m.status == MeetingStatus.COMPLETED:
            return m, None
        completed = m.model_copy(
            update={
                "status": MeetingStatus.COMPLETED,
                "ended_at": ended_at,
                "complete_transcript": complete_transcript,
                "updated_at": ended_at,
            }
        )
        event = LifecycleEvent(
            meeting_id=m.id,
            event_type=LifecycleEventType.BOT_STOPPED,
            event_data={"complete_transcript": complete_transcript},
            created_at=ended_at,
        )
        self.meetings[meeting_id] = completed
        self.events.setdefault(meeting_id, []).append(event)
        return completed, event

    async def replace_segments(
        self, meeting_id: str, segments: list[TranscriptSegmentCreate]
    ) -> bool:
        self._check()
        m = self.meetings.get(meeting_id)
        if m is None or m.status != MeetingStatus.ACTIVE:
            return False
        self.replace_calls += 1
        self.segments[meeting_id] = [
            TranscriptSegment(meeting_id=m.id, segment_index=i, **seg.model_dump())
            for i, seg in enumerate(segments)
        ]
        self.meetings[meeting_id] = m.model_copy(
            update={"updated_at": datetime.now(timezone.utc)}
        )
        return True

    async def list_segments(self, meeting_id: str) -> list[TranscriptSegment]:
        self._check()
        return list(self.segments.get(meeting_id, []))

    async def get_transcript_view(
        self, meeting_id: str, account_id: str | None = None
    ) -> TranscriptView | None:
        meeting = await self.get_meeting(meeting_id, account_id)
        if meeting is None:
            return None
        return build_transcript_view(meeting, self.segments.get(meeting_id, []))

    async def record_event(
        self,
        meeting_id: str,
        event_type: LifecycleEventType,
        event_data: dict | None = None,
    ) -> LifecycleEvent:
        self._check()
        event = LifecycleEvent(
            meeting_id=uuid.UUID(meeting_id),
            event_type=event_type,
            event_data=event_data,
            created_at=datetime.now(timezone.utc),
        )
        self.events.setdefault(meeting_id, []).append(event)
        return event

    async def list_events(self, meeting_id: str) -> list[LifecycleEvent]:
        self._check()
        return list(self.events.get(meeting_id, []))

    async def get_webhook_config(self, account_id: str) -> WebhookConfig | None:
        self._check()
        return self.webhooks.get(account_id)

    async def upsert_webhook_config(
        self, account_id: str, data: WebhookConfigUpdate
    ) -> WebhookConfig:
        self._check()
        config = WebhookConfig(
            account_id=account_id,
            updated_at=datetime.now(timezone.utc),
            **data.model_dump(),
        )
        self.webhooks[account_id] = config
        return config

    # ── Test helpers ─────────────────────────────────────────────────────

    def events_of(self, meeting_id: str, event_type: LifecycleEventType) -> list[LifecycleEvent]:
        return [e for e in self.events.get(meeting_id, []) if e.event_type == event_type]


# ── Fake Vexa Client ─────────────────────────────────────────────────────────


class FakeVexaClient:
    """Scripted VexaClient double.

    Set ``transcript`` to the payload returned by transcript reads and the
    ``*_error`` attributes to make the matching call raise. ``calls``
    records (operation, args) tuples in order.
    """

    def __init__(self) -> None:
        self.start_response: dict = {"id": 42, "status": "requested"}
        self.start_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.transcript: dict = {"segments": []}
        self.transcript_error: Exception | None = None
        self.bots: list[BotDescriptor] = []
        self.bots_error: Exception | None = None
        self.webhook_error: Exception | None = None
        self.before_fetch = None
        self.calls: list[tuple] = []

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    async def start_bot(self, platform, native_meeting_id, passcode, bot_name, language):
        self.calls.append(("start_bot", platform, native_meeting_id, passcode, bot_name, language))
        if self.start_error is not None:
            raise self.start_error
        return self.start_response

    async def stop_bot(self, platform, native_meeting_id):
        self.calls.append(("stop_bot", platform, native_meeting_id))
        if self.stop_error is not None:
            raise self.stop_error
        return {}

    async def get_transcript(self, platform, native_meeting_id) -> dict:
        self.calls.append(("get_transcript", platform, native_meeting_id))
        if self.before_fetch is not None:
            self.before_fetch()
        if self.transcript_error is not None:
            raise self.transcript_error
        return self.transcript

    async def fetch_segments(self, platform, native_meeting_id) -> list[RemoteSegment]:
        return extract_segments(await self.get_transcript(platform, native_meeting_id))

    async def list_active_bots(self) -> list[BotDescriptor]:
        self.calls.append(("list_active_bots",))
        if self.bots_error is not None:
            raise self.bots_error
        return list(self.bots)

    async def set_user_webhook(self, webhook_url: str):
        self.calls.append(("set_user_webhook", webhook_url))
        if self.webhook_error is not None:
            raise self.webhook_error
        return {}


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryMeetingRepository:
    return InMemoryMeetingRepository()


@pytest.fixture
def vexa() -> FakeVexaClient:
    return FakeVexaClient()


@pytest.fixture
def bot_settings():
    """Settings carrying bot defaults."""
    return SimpleNamespace(
        DEFAULT_PLATFORM="teams",
        DEFAULT_BOT_NAME="Copileo",
        DEFAULT_LANGUAGE="fr",
        VEXA_REGISTER_USER_WEBHOOK=False,
    )


@pytest.fixture
def scheduler():
    """Recording PollScheduler mock."""
    return MagicMock()


@pytest.fixture
def dispatcher():
    """Recording WebhookDispatcher mock."""
    return MagicMock()


"""Pydantic v2 schemas for the bot session domain.

Defines the data contracts for meetings, transcript segments, lifecycle
events, webhook configuration, remote bot descriptors and the transcript
read model. The repository, Vexa client, session services and API layer
all import from this module.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import (
    AliasChoices,
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)


# ── Enums ────────────────────────────────────────────────────────────────────


class MeetingStatus(str, Enum):
    """Lifecycle status of a meeting. COMPLETED is terminal."""

    ACTIVE = "active"
    COMPLETED = "completed"


class LifecycleEventType(str, Enum):
    """Kinds of append-only lifecycle events recorded per meeting."""

    BOT_STARTED = "bot_started"
    BOT_STOPPED = "bot_stopped"
    TRANSCRIPTION_STARTED = "transcription_started"
    TRANSCRIPTION_ENDED = "transcription_ended"
    ERROR = "error"


# ── Meeting Models ───────────────────────────────────────────────────────────


class MeetingCreate(BaseModel):
    """Fields needed to persist a newly started (or adopted) session."""

    platform: str
    native_meeting_id: str
    passcode: str = ""
    bot_name: str
    language: str


class Meeting(BaseModel):
    """Locally tracked meeting correlated with a remote Vexa bot."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    account_id: str
    platform: str
    native_meeting_id: str
    passcode: str = ""
    bot_name: str
    language: str
    status: MeetingStatus = MeetingStatus.ACTIVE
    started_at: datetime
    ended_at: datetime | None = None
    complete_transcript: dict | None = None
    created_at: datetime
    updated_at: datetime


# ── Transcript Models ────────────────────────────────────────────────────────


class RemoteSegment(BaseModel):
    """One segment as reported by Vexa's cumulative transcript snapshot."""

    model_config = ConfigDict(extra="ignore")

    speaker: str | None = None
    text: str = ""
    timestamp: str | None = None
    absolute_start_time: str | None = None
    language: str | None = None

    @field_validator(
        "speaker", "timestamp", "absolute_start_time", "language", mode="before"
    )
    @classmethod
    def _coerce_optional(cls, value: Any) -> str | None:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return None

    @field_validator("text", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return ""


def extract_segments(payload: Any) -> list[RemoteSegment]:
    """Parse the segment list out of a Vexa transcript payload.

    Accepts the documented ``{"segments": [...]}`` shape or a bare list.
    Entries that are not objects are dropped.
    """
    if isinstance(payload, dict):
        raw = payload.get("segments") or []
    elif isinstance(payload, list):
        raw = payload
    else:
        raw = []
    return [RemoteSegment.model_validate(item) for item in raw if isinstance(item, dict)]


class TranscriptSegmentCreate(BaseModel):
    """A segment ready to be written, with fallbacks already applied."""

    speaker: str
    text: str
    timestamp: str
    language: str


class TranscriptSegment(BaseModel):
    """A stored transcript segment."""

    meeting_id: uuid.UUID
    segment_index: int
    speaker: str
    text: str
    timestamp: str
    language: str


class TranscriptViewSegment(BaseModel):
    speaker: str
    text: str
    timestamp: str | None = None


class TranscriptView(BaseModel):
    """Transcript as shown to readers.

    Built from the immutable completion snapshot when one exists
    (complete=True), otherwise from the live reconciled segments.
    """

    meeting_id: uuid.UUID
    complete: bool = False
    segments: list[TranscriptViewSegment] = Field(default_factory=list)


# ── Lifecycle Events ─────────────────────────────────────────────────────────


class LifecycleEvent(BaseModel):
    """Immutable record of a state-changing action on a meeting."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    meeting_id: uuid.UUID
    event_type: LifecycleEventType
    event_data: dict | None = None
    created_at: datetime


# ── Webhook Configuration ────────────────────────────────────────────────────


_HTTP_URL = TypeAdapter(AnyHttpUrl)


class WebhookConfigUpdate(BaseModel):
    """Request schema for saving an account's webhook settings."""

    webhook_url: str = ""
    webhook_secret: str = ""
    webhook_enabled: bool = False

    @field_validator("webhook_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        if value:
            try:
                _HTTP_URL.validate_python(value)
            except ValidationError:
                raise ValueError(f"webhook_url is not a valid http(s) URL: {value!r}")
        return value


class WebhookConfig(BaseModel):
    """Per-account webhook settings, at most one per account."""

    account_id: str
    webhook_url: str = ""
    webhook_secret: str = ""
    webhook_enabled: bool = False
    updated_at: datetime | None = None


# ── Remote Bots ──────────────────────────────────────────────────────────────


class BotDescriptor(BaseModel):
    """A bot reported as running by Vexa's status endpoint."""

    model_config = ConfigDict(extra="allow")

    platform: str = "teams"
    native_meeting_id: str = Field(
        validation_alias=AliasChoices("native_meeting_id", "meeting_id"),
    )
    bot_name: str | None = None
    language: str | None = None
    passcode: str | None = None
    status: str | None = None


# ── Session Commands ─────────────────────────────────────────────────────────

_TEAMS_MEETING_ID = re.compile(r"meet/(\d+)")
_TEAMS_PASSCODE = re.compile(r"[?&]p=([^&]+)")


def parse_teams_url(url: str) -> tuple[str, str]:
    """Extract (meeting_id, passcode) from a Teams meeting link.

    Either value is "" when absent, e.g.
    https://teams.live.com/meet/9366473044740?p=waw4q9dPAvdIG3aknh
    """
    id_match = _TEAMS_MEETING_ID.search(url)
    passcode_match = _TEAMS_PASSCODE.search(url)
    return (
        id_match.group(1) if id_match else "",
        passcode_match.group(1) if passcode_match else "",
    )


class SessionStartRequest(BaseModel):
    """Request schema for starting a bot in a meeting.

    Either native_meeting_id + passcode, or a Teams meeting_url from which
    both are extracted. Explicit values win over the URL.
    """

    platform: str | None = None
    native_meeting_id: str = ""
    passcode: str = ""
    meeting_url: str | None = None
    bot_name: str | None = None
    language: str | None = None

    @model_validator(mode="after")
    def _fill_from_meeting_url(self) -> "SessionStartRequest":
        if self.meeting_url:
            meeting_id, passcode = parse_teams_url(self.meeting_url)
            if not self.native_meeting_id:
                self.native_meeting_id = meeting_id
            if not self.passcode:
                self.passcode = passcode
        return self


class SessionStartResult(BaseModel):
    """Outcome of StartSession: the optimistic meeting plus the remote reply."""

    meeting: Meeting
    remote_response: Any = None
    remote_error: str | None = None

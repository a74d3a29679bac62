"""REST endpoints for bot sessions and meeting transcripts.

Provides endpoints for starting and stopping transcription bots, listing
meetings, reading transcripts and lifecycle events, and discovering or
adopting bots that were started outside this service.

All endpoints require a Bearer token; every read and command is scoped to
the token's account. A meeting owned by another account answers 404.
Endpoints only read the Meeting Store; reconciliation happens solely in
the poll scheduler.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.copileo.api.deps import get_current_account, get_session_manager
from src.copileo.sessions.errors import (
    InvalidSessionRequest,
    MeetingNotFound,
    RemoteRejected,
    RemoteUnavailable,
    SessionConflict,
    SessionError,
    StoreUnavailable,
)
from src.copileo.sessions.manager import SessionManager
from src.copileo.sessions.schemas import (
    BotDescriptor,
    LifecycleEvent,
    Meeting,
    SessionStartRequest,
    TranscriptView,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/meetings", tags=["meetings"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class MeetingResponse(BaseModel):
    """Response for meeting data, serializes datetimes to ISO strings."""

    id: str
    platform: str
    native_meeting_id: str
    bot_name: str
    language: str
    status: str
    started_at: str
    ended_at: str | None = None
    has_complete_transcript: bool = False
    created_at: str
    updated_at: str | None = None


class StartSessionResponse(BaseModel):
    """Response for a started session; remote_error is set when Vexa refused."""

    meeting: MeetingResponse
    remote_response: Any = None
    remote_error: str | None = None


class TranscriptResponse(BaseModel):
    meeting_id: str
    complete: bool
    segments: list[dict] = Field(default_factory=list)


class EventResponse(BaseModel):
    id: str
    event_type: str
    event_data: dict | None = None
    created_at: str


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _meeting_to_response(m: Meeting) -> MeetingResponse:
    """Convert Meeting schema to MeetingResponse."""
    return MeetingResponse(
        id=str(m.id),
        platform=m.platform,
        native_meeting_id=m.native_meeting_id,
        bot_name=m.bot_name,
        language=m.language,
        status=m.status.value,
        started_at=m.started_at.isoformat(),
        ended_at=m.ended_at.isoformat() if m.ended_at else None,
        has_complete_transcript=m.complete_transcript is not None,
        created_at=m.created_at.isoformat(),
        updated_at=m.updated_at.isoformat() if m.updated_at else None,
    )


def _transcript_to_response(t: TranscriptView) -> TranscriptResponse:
    return TranscriptResponse(
        meeting_id=str(t.meeting_id),
        complete=t.complete,
        segments=[s.model_dump(mode="json") for s in t.segments],
    )


def _event_to_response(e: LifecycleEvent) -> EventResponse:
    return EventResponse(
        id=str(e.id),
        event_type=e.event_type.value,
        event_data=e.event_data,
        created_at=e.created_at.isoformat(),
    )


def _to_http_error(exc: SessionError) -> HTTPException:
    """Map session engine errors onto HTTP status codes."""
    if isinstance(exc, MeetingNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidSessionRequest):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, SessionConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, StoreUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Meeting store unavailable",
        )
    if isinstance(exc, (RemoteRejected, RemoteUnavailable)):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


# ── Collection Endpoints ─────────────────────────────────────────────────────


@router.get("", response_model=list[MeetingResponse])
async def list_meetings(
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> list[MeetingResponse]:
    """List the account's meetings, newest first."""
    try:
        meetings = await manager.list_meetings(account_id)
    except SessionError as exc:
        raise _to_http_error(exc) from exc
    return [_meeting_to_response(m) for m in meetings]


@router.post("", response_model=StartSessionResponse, status_code=status.HTTP_201_CREATED)
async def start_session(
    body: SessionStartRequest,
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> StartSessionResponse:
    """Send a bot into a meeting.

    Accepts either native_meeting_id + passcode or a Teams meeting_url.
    The meeting is created even if Vexa rejects the bot; the rejection is
    returned in remote_error.
    """
    try:
        result = await manager.start_session(account_id, body)
    except SessionError as exc:
        raise _to_http_error(exc) from exc
    return StartSessionResponse(
        meeting=_meeting_to_response(result.meeting),
        remote_response=result.remote_response,
        remote_error=result.remote_error,
    )


@router.get("/remote-bots", response_model=list[BotDescriptor])
async def list_remote_bots(
    cached: bool = Query(default=False, description="Return the last discovery result"),
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> list[BotDescriptor]:
    """Running Vexa bots that no active meeting tracks."""
    if cached:
        return manager.unadopted_bots
    try:
        return await manager.discover_remote_bots(account_id)
    except SessionError as exc:
        raise _to_http_error(exc) from exc


@router.post("/adopt", response_model=MeetingResponse)
async def adopt_session(
    body: BotDescriptor,
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> MeetingResponse:
    """Start tracking a bot that is already running remotely. Idempotent.

    Answers 409 when another account already tracks the bot.
    """
    try:
        meeting = await manager.adopt_external_session(account_id, body)
    except SessionError as exc:
        raise _to_http_error(exc) from exc
    return _meeting_to_response(meeting)


# ── Meeting Endpoints ────────────────────────────────────────────────────────


@router.get("/{meeting_id}", response_model=MeetingResponse)
async def get_meeting(
    meeting_id: str,
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> MeetingResponse:
    """Get meeting details by ID."""
    try:
        meeting = await manager.get_meeting(meeting_id, account_id)
    except SessionError as exc:
        raise _to_http_error(exc) from exc
    return _meeting_to_response(meeting)


@router.post("/{meeting_id}/stop", response_model=MeetingResponse)
async def stop_session(
    meeting_id: str,
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> MeetingResponse:
    """Remove the bot and complete the meeting. Safe to call twice."""
    try:
        meeting = await manager.stop_session(meeting_id, account_id)
    except SessionError as exc:
        raise _to_http_error(exc) from exc
    return _meeting_to_response(meeting)


@router.get("/{meeting_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(
    meeting_id: str,
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> TranscriptResponse:
    """Final snapshot for completed meetings, live segments otherwise."""
    try:
        view = await manager.get_transcript(meeting_id, account_id)
    except SessionError as exc:
        raise _to_http_error(exc) from exc
    return _transcript_to_response(view)


@router.get("/{meeting_id}/events", response_model=list[EventResponse])
async def list_events(
    meeting_id: str,
    account_id: str = Depends(get_current_account),
    manager: SessionManager = Depends(get_session_manager),
) -> list[EventResponse]:
    """Lifecycle events for a meeting, oldest first."""
    try:
        events = await manager.list_events(meeting_id, account_id)
    except SessionError as exc:
        raise _to_http_error(exc) from exc
    return [_event_to_response(e) for e in events]

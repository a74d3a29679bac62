"""SessionManager -- bot session lifecycle orchestration.

Drives a meeting through active -> completed:
- start_session: ask Vexa for a bot, record the meeting optimistically,
  begin polling, notify the account webhook
- adopt_external_session: track a bot that was started outside this service
- stop_session: capture the final transcript snapshot, remove the bot and
  complete the meeting exactly once
- resume_active_sessions: re-register polling for active meetings at startup

Remote failures during start and stop are recorded, not fatal. Store
failures propagate to the caller. Webhook delivery always runs in the
background and never affects the outcome of an operation.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from src.copileo.sessions.errors import (
    InvalidSessionRequest,
    MeetingNotFound,
    RemoteRejected,
    RemoteUnavailable,
    SessionConflict,
)
from src.copileo.sessions.locks import SessionLocks
from src.copileo.sessions.schemas import (
    BotDescriptor,
    LifecycleEvent,
    LifecycleEventType,
    Meeting,
    MeetingCreate,
    MeetingStatus,
    SessionStartRequest,
    SessionStartResult,
    TranscriptView,
    WebhookConfig,
    WebhookConfigUpdate,
)

if TYPE_CHECKING:
    from src.copileo.sessions.reconciler import TranscriptReconciler
    from src.copileo.sessions.remote.vexa_client import VexaClient
    from src.copileo.sessions.repository import MeetingRepository
    from src.copileo.sessions.scheduler import PollScheduler
    from src.copileo.sessions.webhooks import WebhookDispatcher

logger = structlog.get_logger(__name__)


def _require_meeting_id(meeting_id: str) -> str:
    """Normalize a meeting id; anything that is not a UUID cannot exist."""
    try:
        return str(uuid.UUID(str(meeting_id)))
    except ValueError:
        raise MeetingNotFound(f"Meeting not found: id={meeting_id}")


class SessionManager:
    """Orchestrates bot start/stop against the meeting lifecycle.

    Args:
        client: VexaClient for bot control and transcript fetches.
        repository: MeetingRepository (or compatible test double).
        scheduler: PollScheduler that reconciles registered meetings.
        dispatcher: WebhookDispatcher for lifecycle notifications.
        settings: Application settings (bot defaults, webhook registration).
        locks: Per-meeting lock registry shared with the reconciler.
        reconciler: Optional reconciler whose per-meeting state is cleared
            on completion.
    """

    def __init__(
        self,
        client: VexaClient,
        repository: MeetingRepository,
        scheduler: PollScheduler,
        dispatcher: WebhookDispatcher,
        settings: object,
        locks: SessionLocks | None = None,
        reconciler: TranscriptReconciler | None = None,
    ) -> None:
        self._client = client
        self._repository = repository
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._settings = settings
        self._locks = locks or SessionLocks()
        self._reconciler = reconciler
        self._unadopted_bots: list[BotDescriptor] = []

    # ── Start ────────────────────────────────────────────────────────────

    async def start_session(
        self, account_id: str, request: SessionStartRequest
    ) -> SessionStartResult:
        """Send a bot into a meeting and start tracking it.

        The meeting is recorded as active even when Vexa refuses or cannot
        be reached; the remote outcome is stored on the bot_started event
        and returned to the caller.

        Raises:
            InvalidSessionRequest: Missing meeting id or passcode.
            StoreUnavailable: The meeting could not be persisted.
        """
        platform = request.platform or self._settings.DEFAULT_PLATFORM
        bot_name = request.bot_name or self._settings.DEFAULT_BOT_NAME
        language = request.language or self._settings.DEFAULT_LANGUAGE
        native_meeting_id = request.native_meeting_id.strip()
        passcode = request.passcode.strip()

        if not native_meeting_id or not passcode:
            raise InvalidSessionRequest("native_meeting_id and passcode are required")

        remote_response: Any = None
        remote_error: str | None = None
        try:
            remote_response = await self._client.start_bot(
                platform=platform,
                native_meeting_id=native_meeting_id,
                passcode=passcode,
                bot_name=bot_name,
                language=language,
            )
            event_data: dict[str, Any] = {"vexa_response": remote_response}
        except RemoteRejected as exc:
            remote_error = exc.message
            event_data = {"vexa_error": exc.message, "status_code": exc.status_code}
            logger.warning(
                "session.start_rejected",
                account_id=account_id,
                native_meeting_id=native_meeting_id,
                error=exc.message,
            )
        except RemoteUnavailable as exc:
            remote_error = str(exc)
            event_data = {"vexa_error": remote_error}
            logger.warning(
                "session.start_remote_unavailable",
                account_id=account_id,
                native_meeting_id=native_meeting_id,
                error=remote_error,
            )

        meeting, _ = await self._repository.create_meeting(
            account_id,
            MeetingCreate(
                platform=platform,
                native_meeting_id=native_meeting_id,
                passcode=passcode,
                bot_name=bot_name,
                language=language,
            ),
            LifecycleEventType.BOT_STARTED,
            event_data,
        )
        self._scheduler.register(str(meeting.id))
        self._dispatcher.dispatch_in_background(
            account_id,
            LifecycleEventType.BOT_STARTED,
            meeting.id,
            self._webhook_data(meeting),
        )
        logger.info(
            "session.started",
            account_id=account_id,
            meeting_id=str(meeting.id),
            platform=platform,
            native_meeting_id=native_meeting_id,
            remote_ok=remote_error is None,
        )
        return SessionStartResult(
            meeting=meeting,
            remote_response=remote_response,
            remote_error=remote_error,
        )

    # ── Adoption & Discovery ─────────────────────────────────────────────

    async def adopt_external_session(
        self, account_id: str, bot: BotDescriptor
    ) -> Meeting:
        """Track a bot that is already running remotely.

        Idempotent: if an active meeting already tracks this bot for the
        account, it is returned unchanged.

        Raises:
            SessionConflict: Another account already tracks this bot.
        """
        existing = await self._repository.get_active_meeting_by_native_id(
            account_id, bot.platform, bot.native_meeting_id
        )
        if existing is not None:
            logger.debug(
                "session.adopt_existing",
                account_id=account_id,
                meeting_id=str(existing.id),
            )
            return existing

        for active in await self._repository.list_active_meetings():
            if (active.platform, active.native_meeting_id) == (
                bot.platform,
                bot.native_meeting_id,
            ):
                logger.warning(
                    "session.adopt_conflict",
                    account_id=account_id,
                    native_meeting_id=bot.native_meeting_id,
                )
                raise SessionConflict(
                    f"Bot already tracked: platform={bot.platform} id={bot.native_meeting_id}"
                )

        meeting, _ = await self._repository.create_meeting(
            account_id,
            MeetingCreate(
                platform=bot.platform,
                native_meeting_id=bot.native_meeting_id,
                passcode=bot.passcode or "",
                bot_name=bot.bot_name or self._settings.DEFAULT_BOT_NAME,
                language=bot.language or self._settings.DEFAULT_LANGUAGE,
            ),
            LifecycleEventType.BOT_STARTED,
            {"adopted": True, "bot": bot.model_dump(mode="json")},
        )
        self._unadopted_bots = [
            b
            for b in self._unadopted_bots
            if (b.platform, b.native_meeting_id) != (bot.platform, bot.native_meeting_id)
        ]
        self._scheduler.register(str(meeting.id))
        self._dispatcher.dispatch_in_background(
            account_id,
            LifecycleEventType.BOT_STARTED,
            meeting.id,
            {**self._webhook_data(meeting), "adopted": True},
        )
        logger.info(
            "session.adopted",
            account_id=account_id,
            meeting_id=str(meeting.id),
            native_meeting_id=bot.native_meeting_id,
        )
        return meeting

    async def discover_remote_bots(
        self, account_id: str | None = None
    ) -> list[BotDescriptor]:
        """List running remote bots that no active local meeting tracks.

        A bot counts as tracked when any account has an active meeting for
        it. Without account_id the result is also kept as ``unadopted_bots``
        for the dashboard.

        Raises:
            RemoteUnavailable / RemoteRejected: Vexa status call failed.
        """
        bots = await self._client.list_active_bots()
        active = await self._repository.list_active_meetings()
        tracked = {(m.platform, m.native_meeting_id) for m in active}
        unadopted = [
            bot for bot in bots if (bot.platform, bot.native_meeting_id) not in tracked
        ]
        if account_id is None:
            self._unadopted_bots = unadopted
        if unadopted:
            logger.info(
                "session.unadopted_bots_found",
                count=len(unadopted),
                native_meeting_ids=[b.native_meeting_id for b in unadopted],
            )
        return unadopted

    @property
    def unadopted_bots(self) -> list[BotDescriptor]:
        return list(self._unadopted_bots)

    # ── Stop ─────────────────────────────────────────────────────────────

    async def stop_session(
        self, meeting_id: str, account_id: str | None = None
    ) -> Meeting:
        """Remove the bot and complete the meeting.

        The final transcript fetch and the remote stop are both best-effort.
        Completion, ended_at, the snapshot and the bot_stopped event commit
        together. Stopping a completed meeting returns it unchanged.

        Raises:
            MeetingNotFound: Unknown id, or not owned by account_id.
            StoreUnavailable: The completion could not be persisted.
        """
        meeting_id = _require_meeting_id(meeting_id)
        meeting = await self._repository.get_meeting(meeting_id, account_id)
        if meeting is None:
            raise MeetingNotFound(f"Meeting not found: id={meeting_id}")
        if meeting.status == MeetingStatus.COMPLETED:
            self._scheduler.deregister(meeting_id)
            return meeting

        async with self._locks.get(meeting_id):
            meeting = await self._repository.get_meeting(meeting_id)
            if meeting is None:
                raise MeetingNotFound(f"Meeting not found: id={meeting_id}")
            if meeting.status == MeetingStatus.COMPLETED:
                self._scheduler.deregister(meeting_id)
                return meeting

            snapshot: dict | None = None
            try:
                snapshot = await self._client.get_transcript(
                    meeting.platform, meeting.native_meeting_id
                )
            except (RemoteRejected, RemoteUnavailable) as exc:
                logger.warning(
                    "session.final_transcript_failed",
                    meeting_id=meeting_id,
                    error=str(exc),
                )

            try:
                await self._client.stop_bot(meeting.platform, meeting.native_meeting_id)
            except (RemoteRejected, RemoteUnavailable) as exc:
                logger.warning(
                    "session.stop_bot_failed",
                    meeting_id=meeting_id,
                    error=str(exc),
                )

            try:
                completed, event = await self._repository.complete_meeting(
                    meeting_id, datetime.now(timezone.utc), snapshot
                )
            except ValueError:
                raise MeetingNotFound(f"Meeting not found: id={meeting_id}")

        if event is not None:
            self._dispatcher.dispatch_in_background(
                completed.account_id,
                LifecycleEventType.BOT_STOPPED,
                completed.id,
                {**self._webhook_data(completed), "complete_transcript": snapshot},
            )
            logger.info(
                "session.stopped",
                meeting_id=meeting_id,
                snapshot_captured=snapshot is not None,
            )

        self._scheduler.deregister(meeting_id)
        if self._reconciler is not None:
            self._reconciler.forget(meeting_id)
        self._locks.discard(meeting_id)
        return completed

    # ── Startup ──────────────────────────────────────────────────────────

    async def resume_active_sessions(self) -> int:
        """Re-register every active meeting with the scheduler.

        Returns:
            Number of meetings registered.
        """
        meetings = await self._repository.list_active_meetings()
        for meeting in meetings:
            self._scheduler.register(str(meeting.id))
        logger.info("session.resumed", count=len(meetings))
        return len(meetings)

    # ── Reads ────────────────────────────────────────────────────────────

    async def list_meetings(self, account_id: str) -> list[Meeting]:
        return await self._repository.list_meetings(account_id)

    async def get_meeting(self, meeting_id: str, account_id: str) -> Meeting:
        meeting_id = _require_meeting_id(meeting_id)
        meeting = await self._repository.get_meeting(meeting_id, account_id)
        if meeting is None:
            raise MeetingNotFound(f"Meeting not found: id={meeting_id}")
        return meeting

    async def get_transcript(self, meeting_id: str, account_id: str) -> TranscriptView:
        """Completion snapshot if present, otherwise the live segments."""
        meeting_id = _require_meeting_id(meeting_id)
        view = await self._repository.get_transcript_view(meeting_id, account_id)
        if view is None:
            raise MeetingNotFound(f"Meeting not found: id={meeting_id}")
        return view

    async def list_events(self, meeting_id: str, account_id: str) -> list[LifecycleEvent]:
        meeting = await self.get_meeting(meeting_id, account_id)
        return await self._repository.list_events(str(meeting.id))

    # ── Webhook Settings ─────────────────────────────────────────────────

    async def get_webhook_config(self, account_id: str) -> WebhookConfig:
        config = await self._repository.get_webhook_config(account_id)
        return config or WebhookConfig(account_id=account_id)

    async def save_webhook_config(
        self, account_id: str, data: WebhookConfigUpdate
    ) -> WebhookConfig:
        """Upsert the account's webhook settings.

        When enabled and VEXA_REGISTER_USER_WEBHOOK is set, the URL is also
        registered with Vexa. That registration is best-effort.
        """
        config = await self._repository.upsert_webhook_config(account_id, data)
        if (
            config.webhook_enabled
            and config.webhook_url
            and getattr(self._settings, "VEXA_REGISTER_USER_WEBHOOK", False)
        ):
            try:
                await self._client.set_user_webhook(config.webhook_url)
            except (RemoteRejected, RemoteUnavailable) as exc:
                logger.warning(
                    "session.user_webhook_registration_failed",
                    account_id=account_id,
                    error=str(exc),
                )
        return config

    @staticmethod
    def _webhook_data(meeting: Meeting) -> dict[str, Any]:
        return {
            "platform": meeting.platform,
            "meeting_id": meeting.native_meeting_id,
            "bot_name": meeting.bot_name,
        }

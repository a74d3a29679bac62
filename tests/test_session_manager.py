"""Tests for SessionManager lifecycle orchestration.

Covers optimistic start (including remote rejection), input validation,
stop with snapshot capture and idempotency, the no-writes-after-completion
guarantee together with the reconciler, adoption and discovery of remote
bots, startup resume, and webhook settings.
"""

from __future__ import annotations

import pytest

from src.copileo.sessions.errors import (
    InvalidSessionRequest,
    MeetingNotFound,
    RemoteRejected,
    RemoteUnavailable,
    SessionConflict,
    StoreUnavailable,
)
from src.copileo.sessions.locks import SessionLocks
from src.copileo.sessions.manager import SessionManager
from src.copileo.sessions.reconciler import ReconcileOutcome, TranscriptReconciler
from src.copileo.sessions.schemas import (
    BotDescriptor,
    LifecycleEventType,
    MeetingStatus,
    SessionStartRequest,
    WebhookConfigUpdate,
)

ACCOUNT = "acct-1"


def _start_request(**overrides) -> SessionStartRequest:
    defaults = {
        "native_meeting_id": "9366473044740",
        "passcode": "waw4q9dPAvdIG3aknh",
    }
    defaults.update(overrides)
    return SessionStartRequest(**defaults)


@pytest.fixture
def locks():
    return SessionLocks()


@pytest.fixture
def reconciler(repo, vexa, locks):
    return TranscriptReconciler(repository=repo, client=vexa, locks=locks)


@pytest.fixture
def manager(repo, vexa, scheduler, dispatcher, bot_settings, locks, reconciler):
    return SessionManager(
        client=vexa,
        repository=repo,
        scheduler=scheduler,
        dispatcher=dispatcher,
        settings=bot_settings,
        locks=locks,
        reconciler=reconciler,
    )


# ── Start ────────────────────────────────────────────────────────────────────


class TestStartSession:
    @pytest.mark.asyncio
    async def test_start_creates_active_meeting(self, manager, repo, vexa, scheduler, dispatcher):
        result = await manager.start_session(ACCOUNT, _start_request())

        meeting = result.meeting
        assert meeting.status == MeetingStatus.ACTIVE
        assert meeting.account_id == ACCOUNT
        assert result.remote_error is None
        assert result.remote_response == vexa.start_response

        events = repo.events_of(str(meeting.id), LifecycleEventType.BOT_STARTED)
        assert len(events) == 1
        assert events[0].event_data == {"vexa_response": vexa.start_response}

        scheduler.register.assert_called_once_with(str(meeting.id))
        dispatcher.dispatch_in_background.assert_called_once()
        args = dispatcher.dispatch_in_background.call_args.args
        assert args[0] == ACCOUNT
        assert args[1] == LifecycleEventType.BOT_STARTED
        assert args[3]["meeting_id"] == "9366473044740"

    @pytest.mark.asyncio
    async def test_start_applies_bot_defaults(self, manager, vexa):
        result = await manager.start_session(ACCOUNT, _start_request())

        assert vexa.calls[0] == (
            "start_bot", "teams", "9366473044740", "waw4q9dPAvdIG3aknh", "Copileo", "fr",
        )
        assert result.meeting.bot_name == "Copileo"
        assert result.meeting.language == "fr"

    @pytest.mark.asyncio
    async def test_start_from_teams_url(self, manager, vexa):
        request = SessionStartRequest(
            meeting_url="https://teams.live.com/meet/9366473044740?p=waw4q9dPAvdIG3aknh",
            bot_name="Notes",
            language="en",
        )

        result = await manager.start_session(ACCOUNT, request)

        assert result.meeting.native_meeting_id == "9366473044740"
        assert result.meeting.passcode == "waw4q9dPAvdIG3aknh"
        assert vexa.calls[0][4:] == ("Notes", "en")

    @pytest.mark.asyncio
    async def test_remote_rejection_still_records_meeting(self, manager, repo, vexa, scheduler):
        vexa.start_error = RemoteRejected("Invalid passcode", status_code=400)

        result = await manager.start_session(ACCOUNT, _start_request())

        assert result.remote_error == "Invalid passcode"
        assert result.meeting.status == MeetingStatus.ACTIVE
        event = repo.events_of(str(result.meeting.id), LifecycleEventType.BOT_STARTED)[0]
        assert event.event_data["vexa_error"] == "Invalid passcode"
        scheduler.register.assert_called_once()

    @pytest.mark.asyncio
    async def test_remote_unavailable_still_records_meeting(self, manager, repo, vexa):
        vexa.start_error = RemoteUnavailable("start_bot: ConnectError")

        result = await manager.start_session(ACCOUNT, _start_request())

        assert result.remote_error == "start_bot: ConnectError"
        assert str(result.meeting.id) in repo.meetings

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"native_meeting_id": ""}, {"passcode": ""}, {"passcode": "   "}],
    )
    async def test_missing_input_is_invalid(self, manager, repo, vexa, overrides):
        with pytest.raises(InvalidSessionRequest):
            await manager.start_session(ACCOUNT, _start_request(**overrides))

        assert repo.meetings == {}
        assert vexa.calls == []

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, manager, repo, scheduler, dispatcher):
        repo.fail = True

        with pytest.raises(StoreUnavailable):
            await manager.start_session(ACCOUNT, _start_request())

        scheduler.register.assert_not_called()
        dispatcher.dispatch_in_background.assert_not_called()


# ── Stop ─────────────────────────────────────────────────────────────────────


class TestStopSession:
    @pytest.mark.asyncio
    async def test_stop_completes_with_snapshot(self, manager, repo, vexa, scheduler, dispatcher):
        started = await manager.start_session(ACCOUNT, _start_request())
        meeting_id = str(started.meeting.id)
        snapshot = {"segments": [{"speaker": "Alice", "text": "Au revoir", "timestamp": "t"}]}
        vexa.transcript = snapshot
        dispatcher.reset_mock()

        stopped = await manager.stop_session(meeting_id, ACCOUNT)

        assert stopped.status == MeetingStatus.COMPLETED
        assert stopped.ended_at is not None
        assert stopped.complete_transcript == snapshot
        assert vexa.count("stop_bot") == 1

        stop_events = repo.events_of(meeting_id, LifecycleEventType.BOT_STOPPED)
        assert len(stop_events) == 1
        assert stop_events[0].event_data == {"complete_transcript": snapshot}

        dispatcher.dispatch_in_background.assert_called_once()
        assert dispatcher.dispatch_in_background.call_args.args[1] == LifecycleEventType.BOT_STOPPED
        scheduler.deregister.assert_called_with(meeting_id)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, manager, repo, vexa, dispatcher):
        started = await manager.start_session(ACCOUNT, _start_request())
        meeting_id = str(started.meeting.id)

        first = await manager.stop_session(meeting_id, ACCOUNT)
        dispatcher.reset_mock()
        second = await manager.stop_session(meeting_id, ACCOUNT)

        assert second == first
        assert len(repo.events_of(meeting_id, LifecycleEventType.BOT_STOPPED)) == 1
        assert vexa.count("stop_bot") == 1
        assert vexa.count("get_transcript") == 1
        dispatcher.dispatch_in_background.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_with_unreachable_transcript(self, manager, repo, vexa):
        started = await manager.start_session(ACCOUNT, _start_request())
        meeting_id = str(started.meeting.id)
        vexa.transcript_error = RemoteUnavailable("timeout")

        stopped = await manager.stop_session(meeting_id, ACCOUNT)

        assert stopped.status == MeetingStatus.COMPLETED
        assert stopped.complete_transcript is None
        assert vexa.count("stop_bot") == 1
        event = repo.events_of(meeting_id, LifecycleEventType.BOT_STOPPED)[0]
        assert event.event_data == {"complete_transcript": None}

    @pytest.mark.asyncio
    async def test_stop_when_bot_already_gone(self, manager, vexa):
        started = await manager.start_session(ACCOUNT, _start_request())
        vexa.stop_error = RemoteRejected("Bot not found", status_code=404)

        stopped = await manager.stop_session(str(started.meeting.id), ACCOUNT)

        assert stopped.status == MeetingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_no_segment_writes_after_stop(self, manager, repo, vexa, reconciler):
        started = await manager.start_session(ACCOUNT, _start_request())
        meeting_id = str(started.meeting.id)
        vexa.transcript = {"segments": [{"speaker": "A", "text": "before"}]}
        await reconciler.reconcile(meeting_id)

        await manager.stop_session(meeting_id, ACCOUNT)
        vexa.transcript = {"segments": [{"speaker": "A", "text": "after"}]}
        outcome = await reconciler.reconcile(meeting_id)

        assert outcome == ReconcileOutcome.SKIPPED
        assert [s.text for s in await repo.list_segments(meeting_id)] == ["before"]

    @pytest.mark.asyncio
    async def test_unknown_meeting(self, manager):
        with pytest.raises(MeetingNotFound):
            await manager.stop_session("00000000-0000-0000-0000-000000000000", ACCOUNT)

    @pytest.mark.asyncio
    async def test_malformed_id(self, manager):
        with pytest.raises(MeetingNotFound):
            await manager.stop_session("not-a-uuid", ACCOUNT)

    @pytest.mark.asyncio
    async def test_other_account_cannot_stop(self, manager, repo, vexa):
        started = await manager.start_session(ACCOUNT, _start_request())

        with pytest.raises(MeetingNotFound):
            await manager.stop_session(str(started.meeting.id), "acct-2")

        assert repo.meetings[str(started.meeting.id)].status == MeetingStatus.ACTIVE
        assert vexa.count("stop_bot") == 0


# ── Reads ────────────────────────────────────────────────────────────────────


class TestTranscriptView:
    @pytest.mark.asyncio
    async def test_active_meeting_reads_stored_segments(self, manager, vexa, reconciler):
        started = await manager.start_session(ACCOUNT, _start_request())
        meeting_id = str(started.meeting.id)
        vexa.transcript = {"segments": [{"speaker": "A", "text": "live"}]}
        await reconciler.reconcile(meeting_id)

        view = await manager.get_transcript(meeting_id, ACCOUNT)

        assert view.complete is False
        assert [s.text for s in view.segments] == ["live"]

    @pytest.mark.asyncio
    async def test_completed_meeting_reads_snapshot(self, manager, vexa, reconciler):
        started = await manager.start_session(ACCOUNT, _start_request())
        meeting_id = str(started.meeting.id)
        vexa.transcript = {"segments": [{"speaker": "A", "text": "partial"}]}
        await reconciler.reconcile(meeting_id)
        vexa.transcript = {
            "segments": [
                {"speaker": "A", "text": "partial"},
                {"speaker": None, "text": "final words"},
            ]
        }

        await manager.stop_session(meeting_id, ACCOUNT)
        view = await manager.get_transcript(meeting_id, ACCOUNT)

        assert view.complete is True
        assert [(s.speaker, s.text) for s in view.segments] == [
            ("A", "partial"),
            ("Unknown", "final words"),
        ]

    @pytest.mark.asyncio
    async def test_events_in_order(self, manager):
        started = await manager.start_session(ACCOUNT, _start_request())
        meeting_id = str(started.meeting.id)
        await manager.stop_session(meeting_id, ACCOUNT)

        events = await manager.list_events(meeting_id, ACCOUNT)

        assert [e.event_type for e in events] == [
            LifecycleEventType.BOT_STARTED,
            LifecycleEventType.BOT_STOPPED,
        ]

    @pytest.mark.asyncio
    async def test_list_is_scoped_to_account(self, manager):
        await manager.start_session(ACCOUNT, _start_request())
        await manager.start_session("acct-2", _start_request(native_meeting_id="555"))

        meetings = await manager.list_meetings(ACCOUNT)

        assert [m.native_meeting_id for m in meetings] == ["9366473044740"]


# ── Adoption & Discovery ─────────────────────────────────────────────────────


class TestAdoption:
    @pytest.mark.asyncio
    async def test_adopt_creates_tracked_meeting(self, manager, repo, vexa, scheduler):
        bot = BotDescriptor(platform="teams", meeting_id="777", bot_name="External")

        meeting = await manager.adopt_external_session(ACCOUNT, bot)

        assert meeting.native_meeting_id == "777"
        assert meeting.bot_name == "External"
        assert meeting.language == "fr"
        event = repo.events_of(str(meeting.id), LifecycleEventType.BOT_STARTED)[0]
        assert event.event_data["adopted"] is True
        assert vexa.count("start_bot") == 0
        scheduler.register.assert_called_once_with(str(meeting.id))

    @pytest.mark.asyncio
    async def test_adopt_is_idempotent(self, manager, repo):
        bot = BotDescriptor(meeting_id="777")

        first = await manager.adopt_external_session(ACCOUNT, bot)
        second = await manager.adopt_external_session(ACCOUNT, bot)

        assert first.id == second.id
        assert len(repo.meetings) == 1
        assert len(repo.events_of(str(first.id), LifecycleEventType.BOT_STARTED)) == 1

    @pytest.mark.asyncio
    async def test_discover_filters_tracked_bots(self, manager, vexa):
        await manager.start_session(ACCOUNT, _start_request(native_meeting_id="111"))
        vexa.bots = [BotDescriptor(meeting_id="111"), BotDescriptor(meeting_id="222")]

        found = await manager.discover_remote_bots()

        assert [b.native_meeting_id for b in found] == ["222"]
        assert [b.native_meeting_id for b in manager.unadopted_bots] == ["222"]

    @pytest.mark.asyncio
    async def test_discover_ignores_completed_meetings(self, manager, vexa):
        started = await manager.start_session(ACCOUNT, _start_request(native_meeting_id="111"))
        await manager.stop_session(str(started.meeting.id), ACCOUNT)
        vexa.bots = [BotDescriptor(meeting_id="111")]

        found = await manager.discover_remote_bots()

        assert [b.native_meeting_id for b in found] == ["111"]

    @pytest.mark.asyncio
    async def test_adoption_removes_bot_from_cache(self, manager, vexa):
        vexa.bots = [BotDescriptor(meeting_id="222")]
        await manager.discover_remote_bots()

        await manager.adopt_external_session(ACCOUNT, vexa.bots[0])

        assert manager.unadopted_bots == []

    @pytest.mark.asyncio
    async def test_discover_propagates_remote_failure(self, manager, vexa):
        vexa.bots_error = RemoteUnavailable("down")

        with pytest.raises(RemoteUnavailable):
            await manager.discover_remote_bots()

    @pytest.mark.asyncio
    async def test_account_does_not_see_bot_tracked_by_another(self, manager, vexa):
        await manager.start_session("acct-a", _start_request(native_meeting_id="111"))
        vexa.bots = [BotDescriptor(meeting_id="111"), BotDescriptor(meeting_id="222")]

        found = await manager.discover_remote_bots("acct-b")

        assert [b.native_meeting_id for b in found] == ["222"]

    @pytest.mark.asyncio
    async def test_adopting_bot_tracked_by_another_account_conflicts(self, manager, repo, scheduler):
        await manager.start_session("acct-a", _start_request(native_meeting_id="111"))
        scheduler.reset_mock()

        with pytest.raises(SessionConflict):
            await manager.adopt_external_session("acct-b", BotDescriptor(meeting_id="111"))

        assert len(repo.meetings) == 1
        scheduler.register.assert_not_called()

    @pytest.mark.asyncio
    async def test_bot_can_be_adopted_after_other_account_stops(self, manager):
        started = await manager.start_session("acct-a", _start_request(native_meeting_id="111"))
        await manager.stop_session(str(started.meeting.id), "acct-a")

        meeting = await manager.adopt_external_session("acct-b", BotDescriptor(meeting_id="111"))

        assert meeting.account_id == "acct-b"


# ── Startup & Settings ───────────────────────────────────────────────────────


class TestResumeAndSettings:
    @pytest.mark.asyncio
    async def test_resume_registers_active_meetings(self, manager, scheduler):
        a = await manager.start_session(ACCOUNT, _start_request(native_meeting_id="1"))
        b = await manager.start_session(ACCOUNT, _start_request(native_meeting_id="2"))
        await manager.stop_session(str(b.meeting.id), ACCOUNT)
        scheduler.reset_mock()

        count = await manager.resume_active_sessions()

        assert count == 1
        scheduler.register.assert_called_once_with(str(a.meeting.id))

    @pytest.mark.asyncio
    async def test_webhook_config_defaults_to_disabled(self, manager):
        config = await manager.get_webhook_config(ACCOUNT)

        assert config.webhook_enabled is False
        assert config.webhook_url == ""

    @pytest.mark.asyncio
    async def test_save_registers_with_vexa_when_configured(self, manager, vexa, bot_settings):
        bot_settings.VEXA_REGISTER_USER_WEBHOOK = True

        await manager.save_webhook_config(
            ACCOUNT,
            WebhookConfigUpdate(
                webhook_url="https://hooks.example.com/x",
                webhook_secret="s3cret",
                webhook_enabled=True,
            ),
        )

        assert ("set_user_webhook", "https://hooks.example.com/x") in vexa.calls

    @pytest.mark.asyncio
    async def test_save_tolerates_registration_failure(self, manager, vexa, bot_settings):
        bot_settings.VEXA_REGISTER_USER_WEBHOOK = True
        vexa.webhook_error = RemoteRejected("forbidden", status_code=403)

        config = await manager.save_webhook_config(
            ACCOUNT,
            WebhookConfigUpdate(webhook_url="https://hooks.example.com/x", webhook_enabled=True),
        )

        assert config.webhook_enabled is True

    @pytest.mark.asyncio
    async def test_save_skips_registration_by_default(self, manager, vexa):
        await manager.save_webhook_config(
            ACCOUNT,
            WebhookConfigUpdate(webhook_url="https://hooks.example.com/x", webhook_enabled=True),
        )

        assert vexa.count("set_user_webhook") == 0

"""Integration tests for SyncJobRunner against in-memory SQLite and fake providers."""
import asyncio
import json
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, select

from omnisync.dlp.gate import DlpGate, source_ref
from omnisync.errors import (
    ConnectionNotFoundError,
    DlpUnavailableError,
    JobInProgressError,
    ProviderError,
    SyncTokenExpiredError,
)
from omnisync.models.connection import Connection
from omnisync.models.records import CalendarEvent, DriveDocument, Email
from omnisync.models.sync import COMPLETE, ERROR, FETCHING, SyncJob
from omnisync.sync.state_machine import ABANDONED_JOB_MESSAGE, AUTH_ERROR_REASON, SyncJobRunner
from omnisync.sync.steps import dumps_checkpoint

from fakes import NOW, FakeProviderClient, FakeScanner, gcal_event, make_connection

MESSAGES = "/gmail/v1/users/me/messages"


def overlapping_events():
    return [
        gcal_event("a", "2025-03-10T10:00:00Z", "2025-03-10T11:00:00Z"),
        gcal_event("b", "2025-03-10T10:30:00Z", "2025-03-10T11:30:00Z"),
        gcal_event("c", "2025-03-10T14:00:00Z", "2025-03-10T15:00:00Z"),
    ]


def gmail_message(message_id, sender, subject):
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "snippet": "Please review",
        "labelIds": ["INBOX", "UNREAD"],
        "internalDate": "1741597200000",
        "payload": {"headers": [
            {"name": "From", "value": sender},
            {"name": "Subject", "value": subject},
        ]},
    }


class SlowProviderClient(FakeProviderClient):
    """Paginates after a short pause and records how many fetches overlap."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.active = 0
        self.max_active = 0

    async def paginate(self, connection_id, provider_config_key, plan):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.05)
            return await super().paginate(connection_id, provider_config_key, plan)
        finally:
            self.active -= 1


def add_running_job(engine, key="tick", lease_expires_at=NOW + timedelta(minutes=5), **fields):
    with Session(engine) as s:
        s.add(SyncJob(
            user_id="u1", provider="calendar", trigger="auto", idempotency_key=key,
            status=FETCHING, started_at=NOW - timedelta(minutes=1),
            lease_owner="worker-b", lease_expires_at=lease_expires_at, **fields,
        ))
        s.commit()


def get_jobs(engine):
    with Session(engine) as s:
        return s.exec(select(SyncJob).order_by(SyncJob.id)).all()


def get_connection(engine, provider="calendar"):
    with Session(engine) as s:
        return s.exec(select(Connection).where(Connection.provider == provider)).one()


class TestCalendarSync:
    @pytest.mark.asyncio
    async def test_connect_flags_conflicts(self, engine, runner, provider_client, embeddings):
        make_connection(engine)
        provider_client.pages = [(overlapping_events(), "tok-1")]

        outcome = await runner.run_sync("u1", "calendar", "connect", "k-connect")

        assert outcome.status == COMPLETE
        assert outcome.items_fetched == 3
        assert outcome.items_inserted == 3
        assert outcome.should_regenerate is True
        assert outcome.sync_mode == "initial"
        with Session(engine) as s:
            events = {e.event_id: e for e in s.exec(select(CalendarEvent)).all()}
        assert events["a"].has_conflict and json.loads(events["a"].conflict_with_json) == ["b"]
        assert events["b"].has_conflict and json.loads(events["b"].conflict_with_json) == ["a"]
        assert not events["c"].has_conflict
        assert len(embeddings.tasks) == 3

    @pytest.mark.asyncio
    async def test_connection_checkpoint_updated(self, engine, runner, provider_client):
        make_connection(engine)
        provider_client.pages = [(overlapping_events(), "tok-1")]
        await runner.run_sync("u1", "calendar", "connect", "k-connect")
        connection = get_connection(engine)
        assert connection.sync_token == "tok-1"
        assert connection.last_sync_at == NOW

    @pytest.mark.asyncio
    async def test_unchanged_auto_sync_does_not_regenerate(self, engine, runner, provider_client, embeddings):
        make_connection(engine)
        provider_client.pages = [(overlapping_events(), "tok-1"), (overlapping_events(), "tok-2")]
        await runner.run_sync("u1", "calendar", "connect", "k1")

        outcome = await runner.run_sync("u1", "calendar", "auto", "k2")

        assert outcome.sync_mode == "delta"
        assert provider_client.plans[1].params["syncToken"] == "tok-1"
        assert (outcome.items_inserted, outcome.items_updated, outcome.items_deleted) == (0, 0, 0)
        assert outcome.data_changed is False
        assert outcome.should_regenerate is False
        # Embeddings skipped on an unchanged auto run
        assert len(embeddings.tasks) == 3

    @pytest.mark.asyncio
    async def test_cancelled_event_removed(self, engine, runner, provider_client):
        make_connection(engine)
        provider_client.pages = [
            (overlapping_events(), "tok-1"),
            ([{"id": "b", "status": "cancelled"}], "tok-2"),
        ]
        await runner.run_sync("u1", "calendar", "connect", "k1")
        outcome = await runner.run_sync("u1", "calendar", "auto", "k2")

        assert outcome.items_deleted == 1
        assert outcome.should_regenerate is True
        with Session(engine) as s:
            a = s.exec(select(CalendarEvent).where(CalendarEvent.event_id == "a")).one()
        assert a.has_conflict is False

    @pytest.mark.asyncio
    async def test_expired_token_falls_back_to_initial(self, engine, runner, provider_client):
        make_connection(engine, sync_token="stale")
        provider_client.pages = [SyncTokenExpiredError(410, "gone"), (overlapping_events(), "tok-new")]
        outcome = await runner.run_sync("u1", "calendar", "manual", "k1")
        assert outcome.sync_mode == "initial"
        assert get_connection(engine).sync_token == "tok-new"

    @pytest.mark.asyncio
    async def test_attendees_and_organizer_redacted(self, engine, runner, provider_client, vault):
        make_connection(engine)
        provider_client.pages = [([
            gcal_event(
                "a", "2025-03-10T10:00:00Z", "2025-03-10T11:00:00Z",
                attendees=[{"email": "bob@corp.com", "responseStatus": "accepted"}],
                organizer={"email": "alice@corp.com"},
            ),
        ], "tok-1")]

        await runner.run_sync("u1", "calendar", "connect", "k1")

        with Session(engine) as s:
            event = s.exec(select(CalendarEvent)).one()
        assert "bob@corp.com" not in event.attendees_json
        assert json.loads(event.attendees_json) == [{"email": "[EMAIL_001]", "responseStatus": "accepted"}]
        assert event.organizer == "[EMAIL_001]"
        assert vault.reveal("u1", source_ref("calendar", "a", "attendees_json"), "[EMAIL_001]") == "bob@corp.com"
        assert vault.reveal("u1", source_ref("calendar", "a", "organizer"), "[EMAIL_001]") == "alice@corp.com"


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_completed_key_short_circuits(self, engine, runner, provider_client):
        make_connection(engine)
        provider_client.pages = [(overlapping_events(), "tok-1")]
        first = await runner.run_sync("u1", "calendar", "manual", "same-key")
        calls = provider_client.calls

        second = await runner.run_sync("u1", "calendar", "manual", "same-key")

        assert provider_client.calls == calls
        assert second.already_complete is True
        assert second.job_id == first.job_id
        assert second.items_inserted == 3
        assert len(get_jobs(engine)) == 1

    @pytest.mark.asyncio
    async def test_unknown_trigger_rejected(self, engine, runner):
        make_connection(engine)
        with pytest.raises(ValueError):
            await runner.run_sync("u1", "calendar", "sometimes", "k1")

    @pytest.mark.asyncio
    async def test_missing_connection(self, runner):
        with pytest.raises(ConnectionNotFoundError):
            await runner.run_sync("u1", "calendar", "manual", "k1")

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_delivery_fetches_once(self, engine, gate, embeddings, settings):
        make_connection(engine)
        client = SlowProviderClient(pages=[(overlapping_events(), "tok-1")])
        runner = SyncJobRunner(engine, client, gate, embeddings, settings=settings, clock=lambda: NOW)
        key = "connect:u1:calendar:conn-1"

        first, second = await asyncio.gather(
            runner.run_sync("u1", "calendar", "connect", key),
            runner.run_sync("u1", "calendar", "connect", key),
        )

        assert len(client.plans) == 1
        assert first.status == COMPLETE and first.already_complete is False
        assert second.already_complete is True
        assert second.job_id == first.job_id
        assert len(get_jobs(engine)) == 1


class TestOverlap:
    @pytest.mark.asyncio
    async def test_runs_for_same_provider_do_not_overlap(self, engine, gate, embeddings, settings):
        make_connection(engine)
        client = SlowProviderClient(pages=[(overlapping_events(), "tok-1"), (overlapping_events(), "tok-2")])
        runner = SyncJobRunner(engine, client, gate, embeddings, settings=settings, clock=lambda: NOW)

        manual, auto = await asyncio.gather(
            runner.run_sync("u1", "calendar", "manual", "k-manual"),
            runner.run_sync("u1", "calendar", "auto", "k-auto"),
        )

        assert client.max_active == 1
        assert (manual.status, auto.status) == (COMPLETE, COMPLETE)
        assert [j.status for j in get_jobs(engine)] == [COMPLETE, COMPLETE]

    @pytest.mark.asyncio
    async def test_live_lease_elsewhere_refused(self, engine, runner, provider_client):
        make_connection(engine)
        add_running_job(engine)

        with pytest.raises(JobInProgressError):
            await runner.run_sync("u1", "calendar", "manual", "k1")

        assert provider_client.calls == 0
        jobs = get_jobs(engine)
        assert len(jobs) == 1
        assert jobs[0].status == FETCHING
        assert jobs[0].lease_owner == "worker-b"

    @pytest.mark.asyncio
    async def test_resume_refused_while_other_worker_holds_lease(self, engine, runner, provider_client):
        make_connection(engine)
        add_running_job(engine, key="k1")

        with pytest.raises(JobInProgressError):
            await runner.run_sync("u1", "calendar", "auto", "k1")

        assert provider_client.calls == 0
        assert get_jobs(engine)[0].status == FETCHING

    @pytest.mark.asyncio
    async def test_expired_lease_abandoned(self, engine, runner, provider_client):
        make_connection(engine)
        add_running_job(engine, lease_expires_at=NOW - timedelta(minutes=1))
        provider_client.pages = [(overlapping_events(), "tok-1")]

        outcome = await runner.run_sync("u1", "calendar", "manual", "k1")

        abandoned, fresh = get_jobs(engine)
        assert abandoned.status == ERROR
        assert abandoned.error_message == ABANDONED_JOB_MESSAGE
        assert abandoned.error_retryable is True
        assert fresh.id == outcome.job_id
        assert fresh.status == COMPLETE

    @pytest.mark.asyncio
    async def test_lease_cleared_when_finished(self, engine, runner, provider_client):
        make_connection(engine)
        provider_client.pages = [(overlapping_events(), "tok-1"), ProviderError(503, "unavailable")]
        await runner.run_sync("u1", "calendar", "manual", "k1")
        with pytest.raises(ProviderError):
            await runner.run_sync("u1", "calendar", "auto", "k2")

        for job in get_jobs(engine):
            assert job.lease_owner is None
            assert job.lease_expires_at is None


class TestScheduledSlot:
    @pytest.mark.asyncio
    async def test_delayed_tick_flags_imminent_event_once(self, engine, gate, embeddings, settings):
        make_connection(engine, sync_token="tok-0", last_sync_at=datetime(2025, 3, 10, 9, 30))
        event = gcal_event("e", "2025-03-10T10:10:30Z", "2025-03-10T11:00:00Z")
        client = FakeProviderClient(pages=[([event], "tok-1"), ([event], "tok-2")])
        wall = {"now": datetime(2025, 3, 10, 9, 41)}
        runner = SyncJobRunner(
            engine, client, gate, embeddings, settings=settings, clock=lambda: wall["now"],
        )

        late = await runner.run_sync(
            "u1", "calendar", "auto", "auto:u1:calendar:2025-03-10T09:40:00Z",
            scheduled_at=datetime(2025, 3, 10, 9, 40),
        )
        wall["now"] = datetime(2025, 3, 10, 9, 50)
        on_time = await runner.run_sync(
            "u1", "calendar", "auto", "auto:u1:calendar:2025-03-10T09:50:00Z",
            scheduled_at=datetime(2025, 3, 10, 9, 50),
        )

        assert late.time_changed is False
        assert on_time.time_changed is True
        assert get_connection(engine).last_sync_at == datetime(2025, 3, 10, 9, 50)


class TestResume:
    @pytest.mark.asyncio
    async def test_resumes_after_checkpointed_fetch(self, engine, runner, provider_client):
        make_connection(engine)
        with Session(engine) as s:
            s.add(SyncJob(
                user_id="u1", provider="calendar", trigger="manual", idempotency_key="k-resume",
                status=FETCHING, started_at=NOW,
                checkpoint_json=dumps_checkpoint({"fetching": {"fetched": 3, "mode": "initial", "removed": 0}}),
            ))
            s.commit()
        provider_client.pages = [(overlapping_events(), "tok-1")]

        outcome = await runner.run_sync("u1", "calendar", "manual", "k-resume")

        assert outcome.status == COMPLETE
        assert outcome.items_inserted == 3
        assert len(provider_client.plans) == 1
        assert len(get_jobs(engine)) == 1

    @pytest.mark.asyncio
    async def test_failed_key_runs_fresh_job(self, engine, runner, provider_client):
        make_connection(engine)
        provider_client.pages = [ProviderError(503, "unavailable"), (overlapping_events(), "tok-1")]
        with pytest.raises(ProviderError):
            await runner.run_sync("u1", "calendar", "manual", "k1")
        outcome = await runner.run_sync("u1", "calendar", "manual", "k1")
        jobs = get_jobs(engine)
        assert [j.status for j in jobs] == [ERROR, COMPLETE]
        assert jobs[0].error_retryable is True
        assert outcome.job_id == jobs[1].id


class TestFailures:
    @pytest.mark.asyncio
    async def test_auth_failure_marks_connection(self, engine, runner, provider_client):
        make_connection(engine)
        provider_client.pages = [ProviderError(401, "invalid_grant")]

        with pytest.raises(ProviderError):
            await runner.run_sync("u1", "calendar", "manual", "k1")

        job = get_jobs(engine)[0]
        assert job.status == ERROR
        assert job.error_retryable is False
        assert "401" in job.error_message
        assert job.completed_at is not None
        connection = get_connection(engine)
        assert connection.status == "error"
        assert json.loads(connection.metadata_json)["error_reason"] == AUTH_ERROR_REASON

    @pytest.mark.asyncio
    async def test_success_clears_error_reason(self, engine, runner, provider_client):
        make_connection(engine, status="error", metadata_json=json.dumps({"error_reason": "x"}))
        provider_client.pages = [(overlapping_events(), "tok-1")]
        await runner.run_sync("u1", "calendar", "manual", "k1")
        connection = get_connection(engine)
        assert connection.status == "connected"
        assert "error_reason" not in json.loads(connection.metadata_json)

    @pytest.mark.asyncio
    async def test_mandatory_dlp_failure_persists_nothing(self, engine, vault, embeddings, settings):
        make_connection(engine)
        client = FakeProviderClient(pages=[(overlapping_events(), "tok-1")])
        runner = SyncJobRunner(
            engine, client, DlpGate(FakeScanner(fail=True), vault), embeddings,
            settings=settings, clock=lambda: NOW,
        )

        with pytest.raises(DlpUnavailableError):
            await runner.run_sync("u1", "calendar", "manual", "k1")

        with Session(engine) as s:
            assert s.exec(select(CalendarEvent)).all() == []
        assert get_jobs(engine)[0].status == ERROR
        assert get_connection(engine).last_sync_at is None
        assert embeddings.tasks == []


class TestMailAndStorage:
    @pytest.mark.asyncio
    async def test_mail_redacted_and_vaulted(self, engine, runner, provider_client, vault):
        make_connection(engine, provider="mail")
        provider_client.pages = [([{"id": "m1"}, {"id": "m2"}], None)]
        provider_client.details = {
            f"{MESSAGES}/m1": gmail_message("m1", "Jane <jane@corp.com>", "Budget"),
            f"{MESSAGES}/m2": ProviderError(404, "not found"),
        }

        outcome = await runner.run_sync("u1", "mail", "manual", "k1")

        assert outcome.items_fetched == 2
        assert outcome.items_inserted == 1
        with Session(engine) as s:
            email = s.exec(select(Email)).one()
        assert email.sender == "Jane <[EMAIL_001]>"
        assert email.security_verified is True
        assert email.is_read is False
        assert vault.reveal("u1", source_ref("mail", "m1", "sender"), "[EMAIL_001]") == "jane@corp.com"

    @pytest.mark.asyncio
    async def test_mail_delta_uses_last_sync(self, engine, runner, provider_client):
        make_connection(engine, provider="mail", last_sync_at=NOW)
        provider_client.pages = [([], None)]
        outcome = await runner.run_sync("u1", "mail", "auto", "k1")
        assert outcome.sync_mode == "delta"
        assert outcome.should_regenerate is False

    @pytest.mark.asyncio
    async def test_storage_trashed_file_removed(self, engine, runner, provider_client):
        make_connection(engine, provider="storage")
        provider_client.pages = [
            ([
                {"id": "d1", "name": "Roadmap", "mimeType": "doc", "modifiedTime": "2025-03-09T12:00:00Z"},
                {"id": "d2", "name": "Notes", "mimeType": "doc", "modifiedTime": "2025-03-09T13:00:00Z"},
            ], None),
            ([{"id": "d2", "trashed": True}], None),
        ]
        await runner.run_sync("u1", "storage", "manual", "k1")
        outcome = await runner.run_sync("u1", "storage", "auto", "k2")

        assert outcome.items_deleted == 1
        with Session(engine) as s:
            assert [d.document_id for d in s.exec(select(DriveDocument)).all()] == ["d1"]

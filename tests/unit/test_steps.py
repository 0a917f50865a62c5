"""Tests for job stage transitions and the checkpointed step runner."""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from omnisync.errors import InvalidTransitionError
from omnisync.models.sync import SyncJob
from omnisync.sync.steps import (
    CheckpointedSteps,
    check_transition,
    dumps_checkpoint,
    loads_checkpoint,
    stage_order,
)


def make_job(engine, provider="calendar", status="queued") -> SyncJob:
    job = SyncJob(user_id="u1", provider=provider, trigger="manual", idempotency_key="k", status=status)
    with Session(engine) as s:
        s.add(job)
        s.commit()
        s.refresh(job)
    return job


class TestStageOrder:
    def test_calendar_includes_analyzing(self):
        assert list(stage_order("calendar")) == [
            "queued", "fetching", "securing", "persisting", "embedding", "analyzing", "complete",
        ]

    @pytest.mark.parametrize("provider", ["mail", "storage"])
    def test_others_skip_analyzing(self, provider):
        assert "analyzing" not in stage_order(provider)
        assert list(stage_order(provider))[-2:] == ["embedding", "complete"]


class TestCheckTransition:
    def test_next_stage_allowed(self):
        check_transition("mail", "queued", "fetching")
        check_transition("mail", "embedding", "complete")
        check_transition("calendar", "embedding", "analyzing")

    def test_skipping_forbidden(self):
        with pytest.raises(InvalidTransitionError):
            check_transition("mail", "queued", "securing")

    def test_calendar_cannot_skip_analyzing(self):
        with pytest.raises(InvalidTransitionError):
            check_transition("calendar", "embedding", "complete")

    def test_mail_cannot_analyze(self):
        with pytest.raises(InvalidTransitionError):
            check_transition("mail", "embedding", "analyzing")

    def test_backwards_forbidden(self):
        with pytest.raises(InvalidTransitionError):
            check_transition("mail", "persisting", "fetching")

    def test_reenter_current_stage_allowed(self):
        check_transition("mail", "securing", "securing")

    def test_reenter_queued_forbidden(self):
        with pytest.raises(InvalidTransitionError):
            check_transition("mail", "queued", "queued")

    @pytest.mark.parametrize("status", ["queued", "fetching", "persisting", "analyzing"])
    def test_error_from_any_non_terminal(self, status):
        check_transition("calendar", status, "error")

    @pytest.mark.parametrize("terminal", ["complete", "error"])
    @pytest.mark.parametrize("target", ["fetching", "error", "complete"])
    def test_terminal_is_immutable(self, terminal, target):
        with pytest.raises(InvalidTransitionError):
            check_transition("mail", terminal, target)


class TestCheckpointCodec:
    def test_datetimes_and_dates_roundtrip(self):
        payload = {"at": datetime(2025, 3, 10, 9, 30, 0, 5000), "day": date(2025, 3, 10), "n": [1, "x"]}
        assert loads_checkpoint(dumps_checkpoint(payload)) == payload

    def test_empty(self):
        assert loads_checkpoint(None) == {}
        assert loads_checkpoint("") == {}


class TestCheckpointedSteps:
    @pytest.mark.asyncio
    async def test_transition_committed_before_body(self, engine):
        job = make_job(engine)
        steps = CheckpointedSteps(engine)
        seen = {}

        async def body():
            with Session(engine) as s:
                seen["status"] = s.get(SyncJob, job.id).status
            return {"fetched": 3}

        output = await steps.run(job, "fetching", body)
        assert seen["status"] == "fetching"
        assert output == {"fetched": 3}
        assert steps.checkpoint(job) == {"fetching": {"fetched": 3}}

    @pytest.mark.asyncio
    async def test_memoized_stage_not_rerun(self, engine):
        job = make_job(engine)
        steps = CheckpointedSteps(engine)
        calls = []

        async def body():
            calls.append(1)
            return {"n": len(calls)}

        await steps.run(job, "fetching", body)
        again = await steps.run(job, "fetching", body)
        assert calls == [1]
        assert again == {"n": 1}

    @pytest.mark.asyncio
    async def test_failing_body_leaves_stage_visible(self, engine):
        job = make_job(engine)
        steps = CheckpointedSteps(engine)

        async def body():
            raise RuntimeError("crash")

        with pytest.raises(RuntimeError):
            await steps.run(job, "fetching", body)
        with Session(engine) as s:
            stored = s.get(SyncJob, job.id)
        assert stored.status == "fetching"
        assert loads_checkpoint(stored.checkpoint_json) == {}

    def test_terminal_transition_sets_completed_at(self, engine):
        job = make_job(engine, provider="mail", status="embedding")
        CheckpointedSteps(engine).transition(job, "complete", items_inserted=4)
        assert job.status == "complete"
        assert job.items_inserted == 4
        assert job.completed_at is not None

    def test_invalid_transition_not_committed(self, engine):
        job = make_job(engine)
        with pytest.raises(InvalidTransitionError):
            CheckpointedSteps(engine).transition(job, "persisting")
        with Session(engine) as s:
            assert s.get(SyncJob, job.id).status == "queued"

    def test_stage_transition_renews_lease(self, engine):
        job = make_job(engine)
        now = datetime(2025, 3, 10, 9, 0)
        steps = CheckpointedSteps(engine, lease=timedelta(minutes=15), clock=lambda: now)
        steps.transition(job, "fetching")
        assert job.lease_expires_at == now + timedelta(minutes=15)

    def test_terminal_transition_clears_lease(self, engine):
        job = make_job(engine, provider="mail", status="embedding")
        with Session(engine) as s:
            stored = s.get(SyncJob, job.id)
            stored.lease_owner = "worker-a"
            stored.lease_expires_at = datetime(2025, 3, 10, 9, 15)
            s.add(stored)
            s.commit()
        CheckpointedSteps(engine, lease=timedelta(minutes=15)).transition(job, "complete")
        assert job.lease_owner is None
        assert job.lease_expires_at is None


class TestActiveJobIndex:
    def test_second_unfinished_job_for_pair_rejected(self, engine):
        make_job(engine, status="fetching")
        with pytest.raises(IntegrityError):
            make_job(engine, status="queued")

    def test_finished_jobs_do_not_count(self, engine):
        make_job(engine, status="complete")
        make_job(engine, status="error")
        make_job(engine, status="fetching")
        make_job(engine, provider="mail", status="fetching")

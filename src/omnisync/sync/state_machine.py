"""
SyncJobRunner: one parameterized state machine for every provider.

Flow for run_sync(user_id, provider, trigger, idempotency_key):
  1. Idempotency: a completed job with the key returns its cached outcome;
     an unfinished one is resumed from its checkpoint
  2. queued -> fetching      strategy plan + paginated fetch
  3. -> securing             DLP gate over text fields, token maps to vault
  4. -> persisting           count / delete removals / upsert / count
  5. -> embedding            enqueue embedding work (skipped on a no-op auto run)
  6. -> analyzing            calendar only: conflicts + time-based changes
  7. -> complete             Connection checkpoint (last_sync_at, sync_token)

Runs for one (user, provider) never overlap. Inside a process they queue on
an asyncio.Lock; across processes the job row carries a lease, and a run
that finds a live lease held elsewhere raises JobInProgressError.

On any exception: job -> error (message + retryability) and re-raise. Auth
failures additionally flip the Connection to error so the user reconnects.
Rows persisted by earlier stages are left untouched.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from omnisync.analysis.changes import classify_time_change, should_regenerate
from omnisync.analysis.conflicts import Interval, detect_conflicts
from omnisync.config import Settings, get_settings
from omnisync.db.store import RecordStore
from omnisync.dlp.gate import DlpGate, DlpPolicy
from omnisync.errors import (
    ConnectionNotFoundError,
    JobInProgressError,
    classify_error,
    format_error_message,
)
from omnisync.models import connection as conn_status
from omnisync.models.connection import CALENDAR, Connection
from omnisync.models.sync import (
    ANALYZING,
    COMPLETE,
    EMBEDDING,
    ERROR,
    FETCHING,
    PERSISTING,
    SECURING,
    TERMINAL_STATES,
    TRIGGERS,
    SyncJob,
)
from omnisync.providers.client import NangoClient
from omnisync.sync.embeddings import EmbeddingQueue, enqueue_record_embeddings
from omnisync.sync.steps import CheckpointedSteps, loads_checkpoint
from omnisync.sync.strategy import FetchResult, SyncStrategy, get_strategy
from omnisync.timeutil import utcnow

logger = logging.getLogger(__name__)

AUTH_ERROR_REASON = "Token expired or revoked"
ABANDONED_JOB_MESSAGE = "Abandoned: lease expired before the job finished"


@dataclass
class SyncOutcome:
    job_id: int
    user_id: str
    provider: str
    trigger: str
    status: str
    items_fetched: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    items_deleted: int = 0
    data_changed: bool = False
    time_changed: bool = False
    should_regenerate: bool = False
    reason: str = ""
    sync_mode: str = ""
    already_complete: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncJobRunner:
    """Runs sync jobs through the stage sequence with persisted checkpoints."""

    def __init__(
        self,
        engine,
        client: NangoClient,
        gate: DlpGate,
        embeddings: EmbeddingQueue,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        dlp_policy: Optional[DlpPolicy] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            client: Provider proxy client (or a fake in tests).
            gate: DLP gate for the securing stage.
            embeddings: Destination for embedding tasks.
            settings: Tuning values; defaults to get_settings().
            clock: Returns the current naive-UTC time.
            dlp_policy: Failure policy of the securing stage; defaults to
                settings.dlp_sync_policy.
        """
        self.engine = engine
        self.client = client
        self.gate = gate
        self.embeddings = embeddings
        self.settings = settings or get_settings()
        self.clock = clock
        self.dlp_policy = dlp_policy or DlpPolicy(self.settings.dlp_sync_policy)
        self.store = RecordStore(engine)
        self.lease = timedelta(minutes=self.settings.job_lease_minutes)
        self.steps = CheckpointedSteps(engine, lease=self.lease, clock=clock)
        self.worker_id = uuid.uuid4().hex
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    async def run_sync(
        self,
        user_id: str,
        provider: str,
        trigger: str,
        idempotency_key: str,
        scheduled_at: Optional[datetime] = None,
    ) -> SyncOutcome:
        """
        Run (or resume, or short-circuit) one sync job.

        Args:
            scheduled_at: Wall-clock slot the run belongs to (auto and
                date_boundary ticks). Used as the run's reference time, so
                a delayed tick evaluates the same time windows as an
                on-time one. Defaults to the clock.

        Returns:
            SyncOutcome of the completed job.

        Raises:
            ConnectionNotFoundError: no connection for (user_id, provider).
            JobInProgressError: another process holds a live lease on an
                unfinished job for (user_id, provider).
            ValueError: unknown provider or trigger.
            Any stage exception, after the job was recorded as error.
        """
        if trigger not in TRIGGERS:
            raise ValueError(f"Unknown trigger: {trigger}")
        strategy = get_strategy(provider, self.settings)

        lock = self._locks.setdefault((user_id, provider), asyncio.Lock())
        async with lock:
            existing = self._find_job(idempotency_key)
            if existing is not None and existing.status == COMPLETE:
                logger.info("Job %s already complete for key %s", existing.id, idempotency_key)
                return self._outcome(existing, already_complete=True)

            connection = self._get_connection(user_id, provider)

            if existing is not None and existing.status not in TERMINAL_STATES:
                job = self._claim(existing)
                logger.info("Resuming job %s at %s", job.id, job.status)
            else:
                job = self._create_job(user_id, provider, trigger, idempotency_key)

            try:
                return await self._run_stages(job, connection, strategy, scheduled_at)
            except Exception as exc:
                self._record_failure(job, connection, exc)
                raise
            finally:
                self._release(job)

    # ─── Stages ──────────────────────────────────────────────────────────────

    async def _run_stages(
        self,
        job: SyncJob,
        connection: Connection,
        strategy: SyncStrategy,
        scheduled_at: Optional[datetime] = None,
    ) -> SyncOutcome:
        now = scheduled_at or self.clock()
        provider = strategy.provider
        fetched: Dict[str, FetchResult] = {}

        async def fetch() -> Dict[str, Any]:
            result = await strategy.fetch(self.client, connection, now)
            fetched["result"] = result
            # Raw text stays in memory; only the summary is checkpointed
            return {
                "fetched": result.fetched,
                "mode": result.mode,
                "removed": len(result.removed_ids),
            }

        async def secure() -> Dict[str, Any]:
            result = fetched.get("result")
            if result is None:
                logger.info("Job %s: re-fetching after resume", job.id)
                result = await strategy.fetch(self.client, connection, now)
            records, verified = await self.gate.redact_records(
                job.user_id,
                provider,
                strategy.key_field,
                result.records,
                strategy.text_fields,
                self.dlp_policy,
            )
            return {
                "records": records,
                "removed_ids": result.removed_ids,
                "sync_token": result.sync_token,
                "mode": result.mode,
                "fetched": result.fetched,
                "verified": verified,
            }

        fetch_summary = await self.steps.run(job, FETCHING, fetch)
        secured = await self.steps.run(job, SECURING, secure)

        async def persist() -> Dict[str, Any]:
            return self.store.apply_changes(
                job.user_id, provider, secured["records"], secured["removed_ids"]
            ).to_dict()

        persisted = await self.steps.run(job, PERSISTING, persist)
        data_changed = (persisted["inserted"] + persisted["updated"] + persisted["deleted"]) > 0

        async def embed() -> Dict[str, Any]:
            if job.trigger == "auto" and not data_changed:
                logger.info("Job %s: no data change on auto sync, skipping embeddings", job.id)
                return {"enqueued": 0, "removed": 0, "skipped": True}
            result = await enqueue_record_embeddings(
                self.embeddings,
                job.user_id,
                provider,
                strategy.key_field,
                secured["records"],
                secured["removed_ids"],
            )
            result["skipped"] = False
            return result

        await self.steps.run(job, EMBEDDING, embed)

        analysis = {"time_changed": False, "reason": "", "conflicts": 0}
        if provider == CALENDAR:

            async def analyze() -> Dict[str, Any]:
                return self._analyze_calendar(job.user_id, connection.last_sync_at, now)

            analysis = await self.steps.run(job, ANALYZING, analyze)

        self._complete(job, connection, now, fetch_summary, secured, persisted, analysis)
        return self._outcome(job)

    def _analyze_calendar(
        self, user_id: str, last_sync_at: Optional[datetime], now: datetime
    ) -> Dict[str, Any]:
        events = self.store.list_events(user_id)
        conflicts = detect_conflicts(
            Interval(e.event_id, e.start_time, e.end_time) for e in events
        )
        flagged = self.store.save_conflicts(
            user_id, {k: sorted(v) for k, v in conflicts.items()}
        )
        time_changed, reason = classify_time_change(
            [(e.start_time, e.end_time) for e in events],
            last_sync_at,
            now,
            urgency_window=timedelta(hours=self.settings.urgency_window_hours),
            imminent_start=timedelta(minutes=self.settings.imminent_window_start_minutes),
            imminent_end=timedelta(minutes=self.settings.imminent_window_end_minutes),
        )
        return {"time_changed": time_changed, "reason": reason, "conflicts": flagged}

    # ─── Persistence helpers ─────────────────────────────────────────────────

    def _find_job(self, idempotency_key: str) -> Optional[SyncJob]:
        """Completed job for the key if any, else the newest job with the key."""
        with Session(self.engine) as s:
            jobs = s.exec(
                select(SyncJob)
                .where(SyncJob.idempotency_key == idempotency_key)
                .order_by(SyncJob.id.desc())
            ).all()
        for job in jobs:
            if job.status == COMPLETE:
                return job
        return jobs[0] if jobs else None

    def _get_connection(self, user_id: str, provider: str) -> Connection:
        with Session(self.engine) as s:
            connection = s.exec(
                select(Connection).where(
                    Connection.user_id == user_id, Connection.provider == provider
                )
            ).first()
        if connection is None:
            raise ConnectionNotFoundError(f"No {provider} connection for user {user_id}")
        return connection

    def _create_job(
        self, user_id: str, provider: str, trigger: str, idempotency_key: str
    ) -> SyncJob:
        now = self.clock()
        self._abandon_expired(user_id, provider, now)
        job = SyncJob(
            user_id=user_id,
            provider=provider,
            trigger=trigger,
            idempotency_key=idempotency_key,
            started_at=now,
            lease_owner=self.worker_id,
            lease_expires_at=now + self.lease,
        )
        with Session(self.engine) as s:
            s.add(job)
            try:
                s.commit()
            except IntegrityError as exc:
                # Lost the race to another process creating a job for the pair
                raise JobInProgressError(
                    f"A {provider} sync is already running for user {user_id}"
                ) from exc
            s.refresh(job)
        logger.info("Created job %s for %s/%s (%s)", job.id, user_id, provider, trigger)
        return job

    def _abandon_expired(self, user_id: str, provider: str, now: datetime) -> None:
        """
        Close out an unfinished job for the pair whose lease has lapsed.

        Raises:
            JobInProgressError: the unfinished job's lease is still live.
        """
        with Session(self.engine) as s:
            active = s.exec(
                select(SyncJob).where(
                    SyncJob.user_id == user_id,
                    SyncJob.provider == provider,
                    col(SyncJob.status).not_in(TERMINAL_STATES),
                )
            ).all()
        for other in active:
            if other.lease_expires_at is not None and other.lease_expires_at > now:
                raise JobInProgressError(
                    f"Job {other.id} ({provider} for user {user_id}) is still running"
                )
            logger.warning("Abandoning job %s at %s: lease expired", other.id, other.status)
            self.steps.transition(
                other,
                ERROR,
                error_message=ABANDONED_JOB_MESSAGE,
                error_retryable=True,
                completed_at=now,
            )

    def _claim(self, job: SyncJob) -> SyncJob:
        """
        Take the lease on an unfinished job before resuming it.

        Raises:
            JobInProgressError: a live lease is held by another worker.
        """
        now = self.clock()
        expires = now + self.lease
        stmt = (
            update(SyncJob)
            .where(
                col(SyncJob.id) == job.id,
                col(SyncJob.status).not_in(TERMINAL_STATES),
                or_(
                    col(SyncJob.lease_owner).is_(None),
                    col(SyncJob.lease_owner) == self.worker_id,
                    col(SyncJob.lease_expires_at).is_(None),
                    col(SyncJob.lease_expires_at) <= now,
                ),
            )
            .values(lease_owner=self.worker_id, lease_expires_at=expires)
        )
        with self.engine.begin() as conn:
            claimed = conn.execute(stmt).rowcount
        if claimed != 1:
            raise JobInProgressError(f"Job {job.id} is being run by another worker")
        job.lease_owner = self.worker_id
        job.lease_expires_at = expires
        return job

    def _release(self, job: SyncJob) -> None:
        """Drop this worker's lease; a no-op once the job reached a terminal state."""
        stmt = (
            update(SyncJob)
            .where(col(SyncJob.id) == job.id, col(SyncJob.lease_owner) == self.worker_id)
            .values(lease_owner=None, lease_expires_at=None)
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def _complete(
        self,
        job: SyncJob,
        connection: Connection,
        now: datetime,
        fetch_summary: Dict[str, Any],
        secured: Dict[str, Any],
        persisted: Dict[str, Any],
        analysis: Dict[str, Any],
    ) -> None:
        with Session(self.engine) as s:
            db_conn = s.get(Connection, connection.id)
            db_conn.last_sync_at = now
            if secured.get("sync_token"):
                db_conn.sync_token = secured["sync_token"]
            db_conn.status = conn_status.CONNECTED
            metadata = json.loads(db_conn.metadata_json or "{}")
            metadata.pop("error_reason", None)
            db_conn.metadata_json = json.dumps(metadata)
            db_conn.updated_at = self.clock()
            s.add(db_conn)
            s.commit()

        self.steps.transition(
            job,
            COMPLETE,
            items_fetched=secured.get("fetched", fetch_summary.get("fetched", 0)),
            items_inserted=persisted["inserted"],
            items_updated=persisted["updated"],
            items_deleted=persisted["deleted"],
            time_changed=bool(analysis.get("time_changed")),
            completed_at=self.clock(),
        )
        logger.info(
            "Job %s complete: %d fetched, %d inserted, %d updated, %d deleted",
            job.id, job.items_fetched, job.items_inserted, job.items_updated, job.items_deleted,
        )

    def _record_failure(self, job: SyncJob, connection: Connection, exc: Exception) -> None:
        classified = classify_error(exc)
        logger.error(
            "Job %s (%s/%s) failed [%s]: %s",
            job.id, job.user_id, job.provider, classified.category, exc,
        )
        if classified.action == "reconnect":
            with Session(self.engine) as s:
                db_conn = s.get(Connection, connection.id)
                if db_conn is not None:
                    metadata = json.loads(db_conn.metadata_json or "{}")
                    metadata["error_reason"] = AUTH_ERROR_REASON
                    db_conn.metadata_json = json.dumps(metadata)
                    db_conn.status = conn_status.ERROR
                    db_conn.updated_at = self.clock()
                    s.add(db_conn)
                    s.commit()

        with Session(self.engine) as s:
            current = s.get(SyncJob, job.id).status
        if current in TERMINAL_STATES:
            return
        self.steps.transition(
            job,
            ERROR,
            error_message=format_error_message(exc),
            error_retryable=classified.retryable,
            completed_at=self.clock(),
        )

    def _outcome(self, job: SyncJob, already_complete: bool = False) -> SyncOutcome:
        checkpoint = loads_checkpoint(job.checkpoint_json)
        persisted = checkpoint.get(PERSISTING) or {}
        analysis = checkpoint.get(ANALYZING) or {}
        secured = checkpoint.get(SECURING) or {}
        data_changed = (job.items_inserted + job.items_updated + job.items_deleted) > 0
        return SyncOutcome(
            job_id=job.id,
            user_id=job.user_id,
            provider=job.provider,
            trigger=job.trigger,
            status=job.status,
            items_fetched=job.items_fetched,
            items_inserted=job.items_inserted,
            items_updated=job.items_updated,
            items_deleted=job.items_deleted,
            data_changed=data_changed,
            time_changed=job.time_changed,
            should_regenerate=should_regenerate(job.trigger, data_changed, job.time_changed),
            reason=analysis.get("reason") or (
                "%d inserted, %d updated, %d deleted"
                % (persisted.get("inserted", 0), persisted.get("updated", 0), persisted.get("deleted", 0))
            ),
            sync_mode=secured.get("mode", ""),
            already_complete=already_complete,
        )

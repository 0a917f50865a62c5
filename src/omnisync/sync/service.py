"""
SyncService: connection lifecycle around the job runner.

  connect()       upsert the Connection, then run a "connect" sync
  disconnect()    delete the Connection and everything derived from it,
                  then regenerate today's briefing
  run_with_retries()
                  re-run retryable failures (429, 5xx, network, unknown)
                  under the same idempotency key, so a job that already
                  completed is never executed twice
"""
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import Session, select

from omnisync.config import Settings, get_settings
from omnisync.db.store import RECORD_MODELS, RecordStore
from omnisync.errors import ConnectionNotFoundError, InvalidTransitionError, is_retryable
from omnisync.models import connection as conn_status
from omnisync.models.briefing import Briefing
from omnisync.models.connection import PROVIDERS, Connection
from omnisync.retry import build_retrying
from omnisync.sync.embeddings import SOURCE_TYPES
from omnisync.sync.state_machine import SyncJobRunner, SyncOutcome
from omnisync.timeutil import utcnow

logger = logging.getLogger(__name__)


def _should_retry_job(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionNotFoundError, InvalidTransitionError, ValueError)):
        return False
    return is_retryable(exc)


def connect_idempotency_key(user_id: str, provider: str, connection_id: str) -> str:
    return f"connect:{user_id}:{provider}:{connection_id}"


class SyncService:
    def __init__(
        self,
        runner: SyncJobRunner,
        briefings=None,
        settings: Optional[Settings] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        backoff_multiplier: float = 1.0,
    ):
        """
        Args:
            runner: SyncJobRunner executing individual jobs.
            briefings: BriefingGenerator used after disconnect (optional).
            settings: Tuning values; defaults to get_settings().
            sleep: Async sleep between job retries (asyncio.sleep by default).
            backoff_multiplier: Base of the exponential backoff in seconds.
        """
        self.runner = runner
        self.engine = runner.engine
        self.briefings = briefings
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._backoff_multiplier = backoff_multiplier
        self.store = RecordStore(self.engine)

    async def run_with_retries(
        self,
        user_id: str,
        provider: str,
        trigger: str,
        idempotency_key: str,
        scheduled_at: Optional[datetime] = None,
    ) -> SyncOutcome:
        """
        Run a job, retrying retryable failures up to sync_job_max_attempts.

        JobInProgressError counts as retryable, so a run that collides with
        another worker backs off and tries again once that run has finished.
        """
        retrying = build_retrying(
            _should_retry_job,
            self.settings.sync_job_max_attempts,
            logger,
            multiplier=self._backoff_multiplier,
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                return await self.runner.run_sync(
                    user_id, provider, trigger, idempotency_key, scheduled_at=scheduled_at
                )

    async def connect(
        self,
        user_id: str,
        provider: str,
        connection_id: str,
        idempotency_key: Optional[str] = None,
    ) -> SyncOutcome:
        """
        Record a completed OAuth connection and run its first sync.

        Args:
            idempotency_key: Caller key for this connect event (e.g. the OAuth
                webhook delivery id). Defaults to one derived from the
                connection id, so duplicate deliveries collapse.
        """
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}")

        with Session(self.engine) as s:
            existing = s.exec(
                select(Connection).where(
                    Connection.user_id == user_id, Connection.provider == provider
                )
            ).first()
            if existing:
                if existing.connection_id != connection_id:
                    # New OAuth grant: the previous delta checkpoint is meaningless
                    existing.last_sync_at = None
                    existing.sync_token = None
                existing.connection_id = connection_id
                existing.status = conn_status.CONNECTED
                existing.metadata_json = "{}"
                existing.updated_at = utcnow()
                s.add(existing)
            else:
                s.add(Connection(user_id=user_id, provider=provider, connection_id=connection_id))
            s.commit()

        logger.info("Connected %s for user %s", provider, user_id)
        return await self.run_with_retries(
            user_id,
            provider,
            "connect",
            idempotency_key or connect_idempotency_key(user_id, provider, connection_id),
        )

    async def disconnect(self, user_id: str, provider: str) -> Dict[str, int]:
        """
        Remove a provider connection and cascade to its data.

        Deletes the Connection, the provider's records, their embeddings and
        today's briefing, then regenerates the briefing if a generator is set.

        Raises:
            ConnectionNotFoundError: nothing to disconnect.
        """
        with Session(self.engine) as s:
            connection = s.exec(
                select(Connection).where(
                    Connection.user_id == user_id, Connection.provider == provider
                )
            ).first()
            if connection is None:
                raise ConnectionNotFoundError(f"No {provider} connection for user {user_id}")
            s.delete(connection)
            s.commit()

        native_ids = self._native_ids(user_id, provider)
        deleted = self.store.delete_all(user_id, provider)
        removed_embeddings = 0
        if native_ids:
            removed_embeddings = await self.runner.embeddings.remove(
                user_id, SOURCE_TYPES[provider], native_ids
            )

        today = utcnow().date()
        with Session(self.engine) as s:
            briefing = s.exec(
                select(Briefing).where(
                    Briefing.user_id == user_id, Briefing.briefing_date == today
                )
            ).first()
            briefing_deleted = 0
            if briefing:
                s.delete(briefing)
                briefing_deleted = 1
            s.commit()

        logger.info(
            "Disconnected %s for user %s: %d records, %d embeddings removed",
            provider, user_id, deleted, removed_embeddings,
        )

        if self.briefings is not None and self.list_connected(user_id):
            await self.briefings.generate(user_id, trigger="disconnect")

        return {
            "records_deleted": deleted,
            "embeddings_removed": removed_embeddings,
            "briefing_deleted": briefing_deleted,
        }

    def list_connections(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        with Session(self.engine) as s:
            rows = s.exec(select(Connection).where(Connection.user_id == user_id)).all()
        return {
            row.provider: {
                "status": row.status,
                "last_sync_at": row.last_sync_at,
                "metadata": json.loads(row.metadata_json or "{}"),
            }
            for row in rows
        }

    def list_connected(self, user_id: str) -> List[str]:
        return [
            provider
            for provider, info in self.list_connections(user_id).items()
            if info["status"] == conn_status.CONNECTED
        ]

    def _native_ids(self, user_id: str, provider: str) -> List[str]:
        model, key = RECORD_MODELS[provider]
        with Session(self.engine) as s:
            rows = s.exec(select(model).where(model.user_id == user_id)).all()
        return [getattr(row, key) for row in rows]

"""
Durable, memoized steps backed by the SyncJob row.

CheckpointedSteps.run(job, stage, body):
  1. if ``stage`` already has an output in the job's checkpoint, return it
     without running ``body`` (resume after restart)
  2. otherwise validate and commit the status transition to ``stage``
  3. await ``body()`` and commit its JSON output into the checkpoint

The transition is committed before the body starts, so a crash always leaves
the job showing the stage that was in flight.
Non-terminal transitions also renew the job lease when one is configured.
"""
import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from sqlmodel import Session

from omnisync.errors import InvalidTransitionError
from omnisync.models.connection import CALENDAR
from omnisync.models.sync import (
    ANALYZING,
    COMPLETE,
    EMBEDDING,
    ERROR,
    FETCHING,
    PERSISTING,
    QUEUED,
    SECURING,
    TERMINAL_STATES,
    SyncJob,
)
from omnisync.timeutil import utcnow

logger = logging.getLogger(__name__)

_DATETIME_TAG = "$dt"
_DATE_TAG = "$date"


def stage_order(provider: str) -> Sequence[str]:
    """Full status sequence for a provider; only calendar runs ``analyzing``."""
    stages = [QUEUED, FETCHING, SECURING, PERSISTING, EMBEDDING]
    if provider == CALENDAR:
        stages.append(ANALYZING)
    stages.append(COMPLETE)
    return stages


def check_transition(provider: str, current: str, target: str) -> None:
    """
    Allowed moves: the next status in order, re-entering the current stage
    (resume), or ``error`` from any non-terminal status.

    Raises:
        InvalidTransitionError: for anything else.
    """
    if current in TERMINAL_STATES:
        raise InvalidTransitionError(f"Job is already {current}; cannot move to {target}")
    if target == ERROR:
        return
    order = list(stage_order(provider))
    if target not in order:
        raise InvalidTransitionError(f"Unknown stage {target} for {provider}")
    if target == current and target != QUEUED:
        return
    if order.index(target) != order.index(current) + 1:
        raise InvalidTransitionError(f"Cannot move {provider} job from {current} to {target}")


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_DATETIME_TAG: value.isoformat()}
    if isinstance(value, date):
        return {_DATE_TAG: value.isoformat()}
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def _decode(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and _DATETIME_TAG in obj:
        return datetime.fromisoformat(obj[_DATETIME_TAG])
    if len(obj) == 1 and _DATE_TAG in obj:
        return date.fromisoformat(obj[_DATE_TAG])
    return obj


def dumps_checkpoint(checkpoint: Dict[str, Any]) -> str:
    return json.dumps(checkpoint, default=_encode, sort_keys=True)


def loads_checkpoint(raw: Optional[str]) -> Dict[str, Any]:
    return json.loads(raw or "{}", object_hook=_decode)


class CheckpointedSteps:
    def __init__(
        self,
        engine,
        lease: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.lease = lease
        self.clock = clock

    async def run(self, job: SyncJob, stage: str, body: Callable[[], Awaitable[Any]]) -> Any:
        checkpoint = self.checkpoint(job)
        if stage in checkpoint:
            logger.info("Job %s: %s already done, reusing checkpoint", job.id, stage)
            return checkpoint[stage]

        self.transition(job, stage)
        output = await body()
        self._save_output(job, stage, output)
        return output

    def checkpoint(self, job: SyncJob) -> Dict[str, Any]:
        with Session(self.engine) as s:
            db_job = s.get(SyncJob, job.id)
            return loads_checkpoint(db_job.checkpoint_json)

    def transition(self, job: SyncJob, target: str, **fields: Any) -> None:
        """Validate and commit a status change plus any extra column values."""
        with Session(self.engine) as s:
            db_job = s.get(SyncJob, job.id)
            check_transition(db_job.provider, db_job.status, target)
            db_job.status = target
            for k, v in fields.items():
                setattr(db_job, k, v)
            if target in TERMINAL_STATES:
                db_job.completed_at = fields.get("completed_at") or utcnow()
                db_job.lease_owner = None
                db_job.lease_expires_at = None
            elif self.lease is not None:
                db_job.lease_expires_at = self.clock() + self.lease
            s.add(db_job)
            s.commit()
            s.refresh(db_job)
            job.status = db_job.status
            for k in list(fields) + ["completed_at", "lease_owner", "lease_expires_at"]:
                setattr(job, k, getattr(db_job, k))
        logger.info("Job %s (%s/%s) -> %s", job.id, job.user_id, job.provider, target)

    def _save_output(self, job: SyncJob, stage: str, output: Any) -> None:
        with Session(self.engine) as s:
            db_job = s.get(SyncJob, job.id)
            checkpoint = loads_checkpoint(db_job.checkpoint_json)
            checkpoint[stage] = output
            db_job.checkpoint_json = dumps_checkpoint(checkpoint)
            s.add(db_job)
            s.commit()
            job.checkpoint_json = db_job.checkpoint_json

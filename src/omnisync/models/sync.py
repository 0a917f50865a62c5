"""Sync job model: one row per sync attempt."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel

from omnisync.timeutil import utcnow

QUEUED = "queued"
FETCHING = "fetching"
SECURING = "securing"
PERSISTING = "persisting"
EMBEDDING = "embedding"
ANALYZING = "analyzing"
COMPLETE = "complete"
ERROR = "error"

TERMINAL_STATES = (COMPLETE, ERROR)

TRIGGERS = ("connect", "manual", "auto", "date_boundary")

_ACTIVE = text("status NOT IN ('complete', 'error')")


class SyncJob(SQLModel, table=True):
    """
    Records each sync attempt and doubles as the run's durable checkpoint.

    ``checkpoint_json`` maps stage name -> JSON output of that stage once it
    finished, so a restarted run skips stages that already completed.

    At most one unfinished job exists per (user_id, provider). The worker
    running it holds a lease (``lease_owner`` until ``lease_expires_at``),
    renewed on every stage transition and cleared when the job finishes.
    """

    __table_args__ = (
        Index(
            "uq_syncjob_active_user_provider",
            "user_id",
            "provider",
            unique=True,
            sqlite_where=_ACTIVE,
            postgresql_where=_ACTIVE,
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    provider: str
    trigger: str  # "connect", "manual", "auto", "date_boundary"
    idempotency_key: str = Field(index=True)
    status: str = QUEUED

    items_fetched: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    items_deleted: int = 0
    time_changed: bool = False  # calendar only

    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_retryable: bool = True

    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    checkpoint_json: str = "{}"

"""Provider connection model: one row per (user, provider)."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from omnisync.timeutil import utcnow

MAIL = "mail"
CALENDAR = "calendar"
STORAGE = "storage"
PROVIDERS = (MAIL, CALENDAR, STORAGE)

CONNECTED = "connected"
ERROR = "error"
DISCONNECTED = "disconnected"


class Connection(SQLModel, table=True):
    """OAuth-backed link between a user and one external provider."""

    __table_args__ = (UniqueConstraint("user_id", "provider"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    provider: str  # "mail", "calendar", "storage"
    connection_id: str  # opaque Nango connection id
    status: str = CONNECTED  # "connected", "error", "disconnected"
    last_sync_at: Optional[datetime] = None
    sync_token: Optional[str] = None

    # Free-form JSON blob (error_reason, account email, ...)
    metadata_json: str = "{}"

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

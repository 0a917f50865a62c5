"""Daily briefing model."""
from datetime import date, datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from omnisync.timeutil import utcnow


class Briefing(SQLModel, table=True):
    """One generated briefing per user per UTC day."""

    __table_args__ = (UniqueConstraint("user_id", "briefing_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    briefing_date: date
    summary: str = ""
    content_json: str  # validated BriefingContent as JSON
    dlp_verified: bool = True
    generated_at: datetime = Field(default_factory=utcnow)

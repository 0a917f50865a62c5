"""Synced provider records: emails, calendar events and storage documents.

Every text column holds DLP-redacted content. The provider-native id is the
upsert key together with user_id.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from omnisync.timeutil import utcnow


class Email(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "message_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    message_id: str
    thread_id: Optional[str] = None
    sender: str
    subject: str
    snippet: Optional[str] = None
    received_at: datetime = Field(index=True)
    is_read: bool = True
    has_attachments: bool = False
    labels_json: str = "[]"
    security_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CalendarEvent(SQLModel, table=True):
    """
    One calendar event. All-day events store an inclusive end of
    23:59:59.999 on their last day.

    has_conflict / conflict_with are computed by the conflict detector,
    never taken from the provider.
    """

    __table_args__ = (UniqueConstraint("user_id", "event_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    event_id: str
    title: str
    description: Optional[str] = None
    start_time: datetime = Field(index=True)
    end_time: datetime = Field(index=True)
    is_all_day: bool = False
    location: Optional[str] = None
    attendees_json: str = "[]"
    organizer: Optional[str] = None
    status: str = "confirmed"
    has_conflict: bool = False
    conflict_with_json: str = "[]"  # JSON list of event_id
    security_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DriveDocument(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "document_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    document_id: str
    name: str
    mime_type: str
    folder_path: Optional[str] = None
    modified_at: Optional[datetime] = Field(default=None, index=True)
    web_view_link: Optional[str] = None
    md5_checksum: Optional[str] = None
    content_preview: Optional[str] = None
    security_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

"""Encrypted PII vault entries."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from omnisync.timeutil import utcnow


class PiiVaultEntry(SQLModel, table=True):
    """
    Original value behind a redaction token, AES-256-GCM encrypted.

    Tokens are numbered per text, so ``source_ref`` (e.g.
    "calendar:evt_1:description") scopes a token to the field it came from.
    """

    __table_args__ = (UniqueConstraint("user_id", "source_ref", "token"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    source_ref: str = ""
    token: str  # e.g. "[EMAIL_001]"
    entity_type: str  # "email", "person", ...
    encrypted_value: str  # base64(nonce || ciphertext || tag)
    created_at: datetime = Field(default_factory=utcnow)

"""
PII vault: AES-256-GCM encrypted storage of values removed by the DLP gate.

Stored format is base64(nonce (12 bytes) || ciphertext || tag (16 bytes)),
with a fresh random nonce per entry. Nothing in the sync pipeline decrypts;
callers that must show an original value call ``reveal()`` explicitly.
"""
import base64
import binascii
import os
from datetime import datetime
from typing import Dict, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlmodel import Session, select

from omnisync.config import Settings, get_settings
from omnisync.dlp.scanner import TokenEntry
from omnisync.errors import VaultKeyError
from omnisync.models.vault import PiiVaultEntry

NONCE_SIZE = 12
KEY_SIZE = 32


def load_key(key_base64: str) -> bytes:
    """Decode a base64 vault key and check it is 256 bits."""
    if not key_base64:
        raise VaultKeyError("PII_VAULT_KEY_BASE64 is not configured")
    try:
        key = base64.b64decode(key_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise VaultKeyError("PII vault key is not valid base64") from exc
    if len(key) != KEY_SIZE:
        raise VaultKeyError(f"PII vault key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def encrypt_value(plaintext: str, key: bytes) -> str:
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_value(encrypted: str, key: bytes) -> str:
    """
    Raises:
        cryptography.exceptions.InvalidTag: wrong key or tampered ciphertext.
    """
    raw = base64.b64decode(encrypted)
    nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    return AESGCM(key).decrypt(nonce, ciphertext, None).decode("utf-8")


class PiiVault:
    """Token -> encrypted original value, scoped by user and source field."""

    def __init__(self, engine, key: bytes):
        if len(key) != KEY_SIZE:
            raise VaultKeyError(f"PII vault key must be {KEY_SIZE} bytes")
        self.engine = engine
        self._key = key

    @classmethod
    def from_settings(cls, engine, settings: Optional[Settings] = None) -> "PiiVault":
        settings = settings or get_settings()
        return cls(engine, load_key(settings.pii_vault_key_base64))

    def store(self, user_id: str, source_ref: str, token_map: Dict[str, TokenEntry]) -> int:
        """Upsert every token of one scanned field. Returns entries written."""
        if not token_map:
            return 0
        with Session(self.engine) as s:
            for token, entry in token_map.items():
                existing = s.exec(
                    select(PiiVaultEntry).where(
                        PiiVaultEntry.user_id == user_id,
                        PiiVaultEntry.source_ref == source_ref,
                        PiiVaultEntry.token == token,
                    )
                ).first()
                encrypted = encrypt_value(entry.original, self._key)
                if existing:
                    existing.encrypted_value = encrypted
                    existing.entity_type = entry.entity_type
                    s.add(existing)
                else:
                    s.add(
                        PiiVaultEntry(
                            user_id=user_id,
                            source_ref=source_ref,
                            token=token,
                            entity_type=entry.entity_type,
                            encrypted_value=encrypted,
                        )
                    )
            s.commit()
        return len(token_map)

    def reveal(self, user_id: str, source_ref: str, token: str) -> Optional[str]:
        """
        Decrypt one token's original value, or None if the token is unknown.

        Raises:
            cryptography.exceptions.InvalidTag: entry was encrypted with another key.
        """
        with Session(self.engine) as s:
            entry = s.exec(
                select(PiiVaultEntry).where(
                    PiiVaultEntry.user_id == user_id,
                    PiiVaultEntry.source_ref == source_ref,
                    PiiVaultEntry.token == token,
                )
            ).first()
        if entry is None:
            return None
        return decrypt_value(entry.encrypted_value, self._key)

    def delete_older_than(self, cutoff: datetime) -> int:
        with Session(self.engine) as s:
            rows = s.exec(select(PiiVaultEntry).where(PiiVaultEntry.created_at < cutoff)).all()
            for row in rows:
                s.delete(row)
            s.commit()
        return len(rows)


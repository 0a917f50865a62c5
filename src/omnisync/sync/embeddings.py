"""
Embedding queue interface.

The sync engine only hands off work: after persisting, it enqueues one
EmbeddingTask per upserted record (built from the redacted text) and one
removal per deleted record. Generating vectors and search live elsewhere.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from omnisync.models.connection import CALENDAR, MAIL, STORAGE

logger = logging.getLogger(__name__)

SOURCE_TYPES = {MAIL: "email", CALENDAR: "calendar", STORAGE: "drive"}

MAX_CONTENT_LENGTH = 8000


@dataclass(frozen=True)
class EmbeddingTask:
    user_id: str
    source_type: str  # "email", "calendar", "drive"
    source_id: str
    content: str


def build_content(provider: str, record: Dict[str, Any]) -> str:
    """Text to embed for one redacted record."""
    if provider == MAIL:
        parts = [
            f"From: {record.get('sender', '')}",
            f"Subject: {record.get('subject', '')}",
            record.get("snippet") or "",
        ]
    elif provider == CALENDAR:
        parts = [
            f"Event: {record.get('title', '')}",
            f"When: {record.get('start_time')} - {record.get('end_time')}",
            f"Where: {record.get('location') or ''}",
            record.get("description") or "",
        ]
    else:
        parts = [f"Document: {record.get('name', '')}", f"Type: {record.get('mime_type', '')}"]
    return "\n".join(p for p in parts if p.strip())[:MAX_CONTENT_LENGTH]


class EmbeddingQueue:
    """Destination for embedding work. Subclass to hand off to a real worker."""

    async def enqueue(self, tasks: List[EmbeddingTask]) -> int:
        raise NotImplementedError

    async def remove(self, user_id: str, source_type: str, source_ids: List[str]) -> int:
        raise NotImplementedError


class LoggingEmbeddingQueue(EmbeddingQueue):
    """
    Default sink when no embedding worker is configured.

    Logs what would have been handed off and keeps nothing, so a
    long-running worker process does not accumulate tasks.
    """

    async def enqueue(self, tasks: List[EmbeddingTask]) -> int:
        logger.debug("No embedding worker configured; discarding %d task(s)", len(tasks))
        return len(tasks)

    async def remove(self, user_id: str, source_type: str, source_ids: List[str]) -> int:
        logger.debug(
            "No embedding worker configured; discarding %d %s removal(s) for %s",
            len(source_ids), source_type, user_id,
        )
        return len(source_ids)


async def enqueue_record_embeddings(
    queue: EmbeddingQueue,
    user_id: str,
    provider: str,
    key_field: str,
    records: List[Dict[str, Any]],
    removed_ids: List[str],
) -> Dict[str, int]:
    source_type = SOURCE_TYPES[provider]
    tasks = [
        EmbeddingTask(
            user_id=user_id,
            source_type=source_type,
            source_id=record[key_field],
            content=build_content(provider, record),
        )
        for record in records
    ]
    enqueued = await queue.enqueue(tasks) if tasks else 0
    removed = await queue.remove(user_id, source_type, removed_ids) if removed_ids else 0
    logger.info(
        "Embeddings for %s/%s: %d enqueued, %d removed", user_id, provider, enqueued, removed
    )
    return {"enqueued": enqueued, "removed": removed}

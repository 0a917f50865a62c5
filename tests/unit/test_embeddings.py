"""Tests for the embedding hand-off."""
import logging
from datetime import datetime

import pytest

from omnisync.sync.embeddings import (
    MAX_CONTENT_LENGTH,
    EmbeddingTask,
    LoggingEmbeddingQueue,
    build_content,
    enqueue_record_embeddings,
)

from fakes import InMemoryEmbeddingQueue


class TestBuildContent:
    def test_mail(self):
        content = build_content("mail", {"sender": "[PERSON_001]", "subject": "Budget", "snippet": "See attached"})
        assert content == "From: [PERSON_001]\nSubject: Budget\nSee attached"

    def test_calendar(self):
        content = build_content("calendar", {
            "title": "Standup",
            "start_time": datetime(2025, 3, 10, 10, 0),
            "end_time": datetime(2025, 3, 10, 10, 15),
            "location": None,
            "description": None,
        })
        assert content.startswith("Event: Standup\nWhen: 2025-03-10 10:00:00 - 2025-03-10 10:15:00")
        assert "Where" in content

    def test_storage(self):
        assert build_content("storage", {"name": "Roadmap", "mime_type": "doc"}) == "Document: Roadmap\nType: doc"

    def test_truncated(self):
        content = build_content("mail", {"sender": "a", "subject": "b", "snippet": "x" * 20000})
        assert len(content) == MAX_CONTENT_LENGTH


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_tasks_and_removals(self):
        queue = InMemoryEmbeddingQueue()
        result = await enqueue_record_embeddings(
            queue, "u1", "storage", "document_id",
            [{"document_id": "d1", "name": "A", "mime_type": "doc"}],
            ["d9"],
        )
        assert result == {"enqueued": 1, "removed": 1}
        assert queue.tasks[0].source_type == "drive"
        assert queue.tasks[0].source_id == "d1"
        assert queue.removed == [("u1", "drive", "d9")]

    @pytest.mark.asyncio
    async def test_nothing_to_do(self):
        queue = InMemoryEmbeddingQueue()
        assert await enqueue_record_embeddings(queue, "u1", "mail", "message_id", [], []) == {
            "enqueued": 0, "removed": 0,
        }


class TestLoggingEmbeddingQueue:
    @pytest.mark.asyncio
    async def test_counts_reported(self):
        queue = LoggingEmbeddingQueue()
        tasks = [EmbeddingTask("u1", "email", f"m{i}", "body") for i in range(3)]
        assert await queue.enqueue(tasks) == 3
        assert await queue.remove("u1", "email", ["m1", "m2"]) == 2

    @pytest.mark.asyncio
    async def test_keeps_nothing_between_calls(self):
        queue = LoggingEmbeddingQueue()
        for batch in range(50):
            await queue.enqueue([EmbeddingTask("u1", "email", f"m{batch}", "body")])
            await queue.remove("u1", "email", [f"m{batch}"])
        assert vars(queue) == {}

    @pytest.mark.asyncio
    async def test_discard_logged(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="omnisync.sync.embeddings"):
            await LoggingEmbeddingQueue().enqueue([EmbeddingTask("u1", "drive", "d1", "Roadmap")])
        assert "discarding 1 task(s)" in caplog.text

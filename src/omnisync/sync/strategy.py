"""
Sync strategy selection: initial vs delta fetch plans per provider.

Each provider has a strategy object that knows its endpoints, time windows
and how to turn raw items into record dicts. The state machine itself stays
provider-agnostic and only calls ``fetch()``.

Plan selection:
  - initial when no checkpoint exists (time-windowed, paginated)
  - delta from ``last_sync_at`` (mail, storage) or ``sync_token`` (calendar)
  - a delta token rejected with 410 falls back to the initial plan, which
    also yields a fresh token
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from omnisync.config import Settings, get_settings
from omnisync.errors import ProviderError, SyncTokenExpiredError
from omnisync.models.connection import CALENDAR, MAIL, STORAGE, Connection
from omnisync.providers.client import FetchPlan, NangoClient
from omnisync.providers.normalizer import (
    is_cancelled_event,
    is_removed_file,
    parse_calendar_event,
    parse_drive_file,
    parse_gmail_message,
)
from omnisync.timeutil import days_ago, days_from_now, to_iso_z, to_unix_seconds

logger = logging.getLogger(__name__)

INITIAL = "initial"
DELTA = "delta"


@dataclass
class FetchResult:
    """Normalized output of the fetching stage."""

    records: List[Dict[str, Any]]
    removed_ids: List[str] = field(default_factory=list)
    sync_token: Optional[str] = None
    mode: str = INITIAL
    fetched: int = 0


class SyncStrategy:
    """Provider-specific half of a sync run."""

    provider: str = ""
    key_field: str = ""
    # Record fields routed through the DLP gate before persistence
    text_fields: Tuple[str, ...] = ()

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def config_key(self) -> str:
        return getattr(self.settings, f"nango_{self.provider}_config_key")

    # ─── Plans ────────────────────────────────────────────────────────────────

    def initial_plan(self, now: datetime) -> FetchPlan:
        raise NotImplementedError

    def delta_plan(self, connection: Connection, now: datetime) -> Optional[FetchPlan]:
        raise NotImplementedError

    def select_plan(self, connection: Connection, now: datetime) -> FetchPlan:
        return self.delta_plan(connection, now) or self.initial_plan(now)

    # ─── Fetch ────────────────────────────────────────────────────────────────

    async def fetch(
        self, client: NangoClient, connection: Connection, now: datetime
    ) -> FetchResult:
        """
        Run the selected plan to exhaustion and normalize the items.

        A delta plan rejected with HTTP 410 is retried once as an initial plan.
        """
        plan = self.select_plan(connection, now)
        try:
            items, token = await client.paginate(
                connection.connection_id, self.config_key, plan
            )
        except SyncTokenExpiredError:
            if plan.mode != DELTA:
                raise
            logger.warning(
                "Delta token expired for %s/%s; falling back to initial fetch",
                connection.user_id, self.provider,
            )
            plan = self.initial_plan(now)
            items, token = await client.paginate(
                connection.connection_id, self.config_key, plan
            )

        result = await self.normalize(client, connection, items)
        result.sync_token = token
        result.mode = plan.mode
        return result

    async def normalize(
        self, client: NangoClient, connection: Connection, items: List[Dict[str, Any]]
    ) -> FetchResult:
        raise NotImplementedError


class MailStrategy(SyncStrategy):
    """Gmail: list message ids by date, then fetch details concurrently."""

    provider = MAIL
    key_field = "message_id"
    text_fields = ("sender", "subject", "snippet")

    list_endpoint = "/gmail/v1/users/me/messages"

    def _plan(self, after: datetime, mode: str) -> FetchPlan:
        return FetchPlan(
            endpoint=self.list_endpoint,
            params={"q": f"in:inbox after:{to_unix_seconds(after)}"},
            items_field="messages",
            page_size_param="maxResults",
            page_size=self.settings.mail_page_size,
            mode=mode,
        )

    def initial_plan(self, now: datetime) -> FetchPlan:
        return self._plan(days_ago(self.settings.mail_initial_days, now), INITIAL)

    def delta_plan(self, connection: Connection, now: datetime) -> Optional[FetchPlan]:
        if connection.last_sync_at is None:
            return None
        return self._plan(connection.last_sync_at, DELTA)

    async def normalize(
        self, client: NangoClient, connection: Connection, items: List[Dict[str, Any]]
    ) -> FetchResult:
        ids = list(dict.fromkeys(item["id"] for item in items if item.get("id")))
        semaphore = asyncio.Semaphore(self.settings.fetch_concurrency)

        async def fetch_one(message_id: str) -> Optional[Dict[str, Any]]:
            async with semaphore:
                try:
                    response = await client.proxy(
                        connection.connection_id,
                        "GET",
                        f"{self.list_endpoint}/{message_id}",
                        {"format": "full"},
                        self.config_key,
                    )
                except ProviderError as exc:
                    if exc.status_code != 404:
                        raise
                    logger.warning("Message %s vanished before detail fetch", message_id)
                    return None
            return parse_gmail_message(response.data)

        parsed = await asyncio.gather(*(fetch_one(mid) for mid in ids))
        records = [r for r in parsed if r is not None]
        return FetchResult(records=records, fetched=len(ids))


class CalendarStrategy(SyncStrategy):
    """Google Calendar: time-windowed initial fetch, syncToken delta."""

    provider = CALENDAR
    key_field = "event_id"
    # Organizer and attendee addresses are PII too; attendees are scanned as JSON text
    text_fields = ("title", "description", "location", "organizer", "attendees_json")

    endpoint = "/calendar/v3/calendars/primary/events"

    def initial_plan(self, now: datetime) -> FetchPlan:
        return FetchPlan(
            endpoint=self.endpoint,
            params={
                "timeMin": to_iso_z(days_ago(self.settings.calendar_past_days, now)),
                "timeMax": to_iso_z(days_from_now(self.settings.calendar_future_days, now)),
                "singleEvents": "true",
            },
            items_field="items",
            page_size=self.settings.calendar_page_size,
            mode=INITIAL,
        )

    def delta_plan(self, connection: Connection, now: datetime) -> Optional[FetchPlan]:
        if not connection.sync_token:
            return None
        return FetchPlan(
            endpoint=self.endpoint,
            params={
                "syncToken": connection.sync_token,
                "singleEvents": "true",
                "showDeleted": "true",
            },
            items_field="items",
            page_size=self.settings.calendar_page_size,
            mode=DELTA,
        )

    async def normalize(
        self, client: NangoClient, connection: Connection, items: List[Dict[str, Any]]
    ) -> FetchResult:
        records, removed = [], []
        for event in items:
            if is_cancelled_event(event):
                removed.append(event["id"])
            else:
                records.append(parse_calendar_event(event))
        return FetchResult(records=records, removed_ids=removed, fetched=len(items))


class StorageStrategy(SyncStrategy):
    """Google Drive: modifiedTime window; delta includes trashed files as removals."""

    provider = STORAGE
    key_field = "document_id"
    text_fields = ("name",)

    endpoint = "/drive/v3/files"
    fields = (
        "nextPageToken,"
        "files(id,name,mimeType,modifiedTime,webViewLink,md5Checksum,parents,trashed)"
    )

    def _plan(self, since: datetime, mode: str) -> FetchPlan:
        query = f"modifiedTime > '{to_iso_z(since)}'"
        if mode == INITIAL:
            query += " and trashed = false"
        return FetchPlan(
            endpoint=self.endpoint,
            params={"q": query, "fields": self.fields},
            items_field="files",
            page_size_param="pageSize",
            page_size=self.settings.storage_page_size,
            mode=mode,
        )

    def initial_plan(self, now: datetime) -> FetchPlan:
        return self._plan(days_ago(self.settings.storage_initial_days, now), INITIAL)

    def delta_plan(self, connection: Connection, now: datetime) -> Optional[FetchPlan]:
        if connection.last_sync_at is None:
            return None
        return self._plan(connection.last_sync_at, DELTA)

    async def normalize(
        self, client: NangoClient, connection: Connection, items: List[Dict[str, Any]]
    ) -> FetchResult:
        records, removed = [], []
        for file in items:
            if is_removed_file(file):
                removed.append(file["id"])
            else:
                records.append(parse_drive_file(file))
        return FetchResult(records=records, removed_ids=removed, fetched=len(items))


STRATEGIES = {
    MAIL: MailStrategy,
    CALENDAR: CalendarStrategy,
    STORAGE: StorageStrategy,
}


def get_strategy(provider: str, settings: Optional[Settings] = None) -> SyncStrategy:
    try:
        return STRATEGIES[provider](settings)
    except KeyError:
        raise ValueError(f"Unknown provider: {provider}") from None

"""
SyncOrchestrator: per-user FIFO scheduler in front of the job runner.

One SessionContext per user holds the provider map and the request queue.
The orchestrator never reads module-level state, so tests build a fresh
context per case.

Queue rules:
  - a request names a set of providers, a trigger and a timestamp
  - the queue holds at most ``max_queue_length`` requests; extra requests
    are dropped with a warning
  - when the head is dequeued and a later queued request names the same
    provider set within ``dedup_window_ms``, the head is dropped and the
    later request runs in its place, carrying the stronger of the two
    triggers (manual > date_boundary > auto)
  - requests run one at a time; providers inside one request run in
    parallel. Connect syncs take the same per-session lock
  - provider state is updated only from the run's own results
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional

from omnisync.config import Settings, get_settings
from omnisync.errors import format_error_message, requires_reconnect
from omnisync.models import connection as conn_status
from omnisync.models.connection import PROVIDERS
from omnisync.sync.service import SyncService
from omnisync.sync.state_machine import SyncOutcome
from omnisync.timeutil import next_aligned_time, to_iso_z, utcnow

logger = logging.getLogger(__name__)

AUTO = "auto"
MANUAL = "manual"
CONNECT = "connect"
DATE_BOUNDARY = "date_boundary"

# Coalescing keeps the highest-ranked trigger of the merged requests
TRIGGER_RANK = {AUTO: 0, DATE_BOUNDARY: 1, MANUAL: 2, CONNECT: 3}


@dataclass
class ProviderState:
    status: str = conn_status.DISCONNECTED
    syncing: bool = False
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.status == conn_status.CONNECTED


@dataclass(frozen=True)
class SyncRequest:
    providers: FrozenSet[str]
    trigger: str
    timestamp: datetime


@dataclass
class RunResult:
    request: SyncRequest
    outcomes: Dict[str, SyncOutcome] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    briefing_regenerated: bool = False


@dataclass
class SessionContext:
    user_id: str
    providers: Dict[str, ProviderState] = field(
        default_factory=lambda: {p: ProviderState() for p in PROVIDERS}
    )
    queue: Deque[SyncRequest] = field(default_factory=deque)
    processing: bool = False
    last_auto_sync_at: Optional[datetime] = None
    run_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SyncOrchestrator:
    def __init__(
        self,
        session: SessionContext,
        service: SyncService,
        briefings=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            session: Injected per-user state (provider map + queue).
            service: SyncService running provider jobs with retries.
            briefings: BriefingGenerator; regeneration is skipped when None.
            settings: Tuning values; defaults to get_settings().
            clock: Returns the current naive-UTC time.
        """
        self.session = session
        self.service = service
        self.briefings = briefings
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def user_id(self) -> str:
        return self.session.user_id

    def refresh_connections(self) -> None:
        """Reload provider status from the store (e.g. at session start)."""
        stored = self.service.list_connections(self.user_id)
        for provider in PROVIDERS:
            state = self.session.providers[provider]
            info = stored.get(provider)
            if info is None:
                state.status = conn_status.DISCONNECTED
                state.last_sync_at = None
                continue
            state.status = info["status"]
            state.last_sync_at = info["last_sync_at"]
            state.last_error = info["metadata"].get("error_reason")

    # ─── Queue ────────────────────────────────────────────────────────────────

    def request_sync(self, providers: Iterable[str], trigger: str) -> Optional[SyncRequest]:
        """
        Enqueue a sync of the connected subset of ``providers``.

        Returns:
            The queued request, or None if nothing was queued (no connected
            provider in the set, or the queue is full).
        """
        wanted = frozenset(p for p in providers if self.session.providers[p].connected)
        if not wanted:
            logger.info("No connected providers to sync for %s (%s)", self.user_id, trigger)
            return None
        if len(self.session.queue) >= self.settings.max_queue_length:
            logger.warning(
                "Sync queue full for %s; dropping %s request for %s",
                self.user_id, trigger, sorted(wanted),
            )
            return None

        request = SyncRequest(providers=wanted, trigger=trigger, timestamp=self.clock())
        self.session.queue.append(request)
        return request

    async def process_queue(self) -> List[RunResult]:
        """
        Drain the queue, one request at a time.

        Returns an empty list if another call is already draining it.
        """
        if self.session.processing:
            return []
        self.session.processing = True
        results: List[RunResult] = []
        try:
            while self.session.queue:
                request = self.session.queue.popleft()
                if self._coalesce(request):
                    logger.info(
                        "Coalesced duplicate %s request for %s", request.trigger, sorted(request.providers)
                    )
                    continue
                async with self.session.run_lock:
                    result = await self._run(request)
                if result is not None:
                    results.append(result)
        finally:
            self.session.processing = False
        return results

    async def sync(self, providers: Iterable[str], trigger: str = MANUAL) -> List[RunResult]:
        """Enqueue and drain in one call (UI 'sync now' button)."""
        self.request_sync(providers, trigger)
        return await self.process_queue()

    def _coalesce(self, request: SyncRequest) -> bool:
        """
        Fold ``request`` into a later queued duplicate, if there is one.

        The surviving request is upgraded in place to the stronger trigger,
        so a manual click merged with an auto tick still runs as manual.
        """
        window = timedelta(milliseconds=self.settings.dedup_window_ms)
        for i, later in enumerate(self.session.queue):
            if later.providers == request.providers and later.timestamp - request.timestamp < window:
                if TRIGGER_RANK.get(request.trigger, 0) > TRIGGER_RANK.get(later.trigger, 0):
                    self.session.queue[i] = replace(later, trigger=request.trigger)
                return True
        return False

    # ─── Auto-sync ────────────────────────────────────────────────────────────

    def next_auto_sync_at(self, now: Optional[datetime] = None) -> datetime:
        return next_aligned_time(now or self.clock(), self.settings.auto_sync_interval_minutes)

    async def auto_sync(self) -> List[RunResult]:
        """
        Wall-clock tick: enqueue every connected provider.

        The first tick of a new UTC day runs as ``date_boundary`` so the
        briefing is always rebuilt for the new day.
        """
        now = self.clock()
        last = self.session.last_auto_sync_at
        trigger = DATE_BOUNDARY if last is not None and last.date() != now.date() else AUTO
        self.session.last_auto_sync_at = now
        self.request_sync(PROVIDERS, trigger)
        return await self.process_queue()

    # ─── Connection hooks ─────────────────────────────────────────────────────

    async def on_connected(
        self, provider: str, connection_id: str, idempotency_key: Optional[str] = None
    ) -> RunResult:
        """
        Mark the provider connected and run its first sync immediately.

        Skips the queue but waits for any request already running.
        """
        state = self.session.providers[provider]
        state.status = conn_status.CONNECTED
        state.last_error = None
        state.syncing = True
        request = SyncRequest(frozenset([provider]), CONNECT, self.clock())
        result = RunResult(request=request)
        try:
            async with self.session.run_lock:
                outcome = await self.service.connect(
                    self.user_id, provider, connection_id, idempotency_key
                )
        except Exception as exc:
            self._apply_failure(provider, exc, result)
            raise
        finally:
            state.syncing = False
        self._apply_success(provider, outcome, result)
        await self._maybe_regenerate(result, force=True)
        return result

    async def on_disconnected(self, provider: str) -> Dict[str, int]:
        counts = await self.service.disconnect(self.user_id, provider)
        state = self.session.providers[provider]
        state.status = conn_status.DISCONNECTED
        state.syncing = False
        state.last_sync_at = None
        state.last_error = None
        self.session.queue = deque(
            r for r in self.session.queue if r.providers != frozenset([provider])
        )
        return counts

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _run(self, request: SyncRequest) -> Optional[RunResult]:
        providers = [p for p in PROVIDERS if p in request.providers and self.session.providers[p].connected]
        if not providers:
            return None

        for p in providers:
            self.session.providers[p].syncing = True
        logger.info("Sync %s for %s: %s", request.trigger, self.user_id, providers)

        raw = await asyncio.gather(
            *(
                self.service.run_with_retries(
                    self.user_id,
                    p,
                    request.trigger,
                    self._idempotency_key(request, p),
                    scheduled_at=self._slot(request),
                )
                for p in providers
            ),
            return_exceptions=True,
        )

        result = RunResult(request=request)
        for provider, item in zip(providers, raw):
            self.session.providers[provider].syncing = False
            if isinstance(item, BaseException):
                self._apply_failure(provider, item, result)
            else:
                self._apply_success(provider, item, result)

        await self._maybe_regenerate(result)
        return result

    def _slot(self, request: SyncRequest) -> Optional[datetime]:
        """Auto-sync slot a tick belongs to; None for user-driven triggers."""
        if request.trigger not in (AUTO, DATE_BOUNDARY):
            return None
        ts = request.timestamp
        interval = self.settings.auto_sync_interval_minutes
        return ts.replace(minute=ts.minute - ts.minute % interval, second=0, microsecond=0)

    def _idempotency_key(self, request: SyncRequest, provider: str) -> str:
        # Slot-aligned for ticks so duplicate ticks collapse server-side
        ts = self._slot(request) or request.timestamp
        return f"{request.trigger}:{self.user_id}:{provider}:{to_iso_z(ts)}"

    def _apply_success(self, provider: str, outcome: SyncOutcome, result: RunResult) -> None:
        state = self.session.providers[provider]
        state.last_sync_at = self.clock()
        state.last_error = None
        result.outcomes[provider] = outcome

    def _apply_failure(self, provider: str, exc: BaseException, result: RunResult) -> None:
        state = self.session.providers[provider]
        message = format_error_message(exc)
        state.last_error = message
        if requires_reconnect(exc):
            state.status = conn_status.ERROR
        result.errors[provider] = message
        logger.warning("Sync of %s for %s failed: %s", provider, self.user_id, message)

    async def _maybe_regenerate(self, result: RunResult, force: bool = False) -> None:
        wanted = force or any(o.should_regenerate for o in result.outcomes.values())
        if self.briefings is None or not wanted or not result.outcomes:
            return
        try:
            await self.briefings.generate(self.user_id, trigger=result.request.trigger)
            result.briefing_regenerated = True
        except Exception as exc:
            # Sync results stand; the UI shows the previous briefing
            logger.error("Briefing regeneration for %s failed: %s", self.user_id, exc)

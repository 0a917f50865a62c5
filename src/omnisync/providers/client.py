"""
Async client for the Nango OAuth proxy.

Every provider API call (Gmail, Google Calendar, Google Drive) goes through
Nango's proxy endpoint, which injects the user's OAuth token. The sync engine
depends only on the pagination contract exposed here:

    proxy(connection_id, method, endpoint, params)
        -> ProxyResponse(data, next_page_token, next_sync_token)

Retryable failures (429, 5xx, transport errors) are retried locally with
exponential backoff; a Retry-After header overrides the computed delay.
Auth (401/403), 410 and other 4xx responses are raised immediately.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from omnisync.config import get_settings
from omnisync.errors import ProviderError, SyncTokenExpiredError, classify_error
from omnisync.retry import build_retrying, parse_retry_after

logger = logging.getLogger(__name__)


@dataclass
class ProxyResponse:
    data: Dict[str, Any]
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


@dataclass
class FetchPlan:
    """Request parameters for one paginated listing, built by a sync strategy."""

    endpoint: str
    params: Dict[str, Any]
    items_field: str  # key of the item list in each page, e.g. "items"
    page_size_param: str = "maxResults"
    page_size: int = 100
    cursor_param: str = "pageToken"
    mode: str = "initial"  # "initial" or "delta"


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, SyncTokenExpiredError):
        return False
    if not isinstance(exc, (ProviderError, httpx.TransportError)):
        return False
    return classify_error(exc).retryable


class NangoClient:
    """Thin async wrapper over the Nango proxy API."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        backoff_multiplier: float = 1.0,
        max_backoff: float = 30.0,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        """
        Args:
            secret_key: Nango secret key. Defaults to settings.
            base_url: Nango API base URL. Defaults to settings.
            http_client: Shared httpx.AsyncClient (a MockTransport client in tests).
            max_attempts: Total attempts per call, including the first.
            backoff_multiplier: Base of the exponential backoff in seconds.
            max_backoff: Upper bound for any single wait.
            sleep: Async sleep used between retries (asyncio.sleep by default).
        """
        settings = get_settings()
        self._secret = secret_key if secret_key is not None else settings.nango_secret_key
        self._base_url = (base_url or settings.nango_base_url).rstrip("/")
        self._http = http_client or httpx.AsyncClient(
            timeout=settings.provider_timeout_seconds
        )
        self._max_attempts = max_attempts or settings.provider_max_attempts
        self._backoff_multiplier = backoff_multiplier
        self._max_backoff = max_backoff
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._http.aclose()

    async def proxy(
        self,
        connection_id: str,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        provider_config_key: str = "",
    ) -> ProxyResponse:
        """
        Issue one proxied request, retrying retryable failures.

        Raises:
            SyncTokenExpiredError: provider answered 410 Gone.
            ProviderError: any other non-2xx answer after retries.
            httpx.TransportError: network failure after retries.
        """
        retrying = build_retrying(
            _should_retry,
            self._max_attempts,
            logger,
            multiplier=self._backoff_multiplier,
            max_wait=self._max_backoff,
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                return await self._request_once(
                    connection_id, method, endpoint, params or {}, provider_config_key
                )

    async def _request_once(
        self,
        connection_id: str,
        method: str,
        endpoint: str,
        params: Dict[str, Any],
        provider_config_key: str,
    ) -> ProxyResponse:
        url = f"{self._base_url}/proxy{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._secret}",
            "Connection-Id": connection_id,
            "Provider-Config-Key": provider_config_key,
        }
        response = await self._http.request(method, url, params=params, headers=headers)

        if response.status_code == 410:
            raise SyncTokenExpiredError(410, response.text[:200])
        if response.status_code >= 400:
            raise ProviderError(
                response.status_code,
                response.text[:200],
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        data = response.json() if response.content else {}
        return ProxyResponse(
            data=data,
            next_page_token=data.get("nextPageToken"),
            next_sync_token=data.get("nextSyncToken"),
        )

    async def paginate(
        self,
        connection_id: str,
        provider_config_key: str,
        plan: FetchPlan,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        Follow continuation cursors until the provider returns none.

        Returns:
            (all items, sync token from the last page)
        """
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        sync_token: Optional[str] = None
        pages = 0

        while True:
            params = dict(plan.params)
            params[plan.page_size_param] = plan.page_size
            if cursor:
                params[plan.cursor_param] = cursor

            page = await self.proxy(
                connection_id, "GET", plan.endpoint, params, provider_config_key
            )
            pages += 1
            items.extend(page.data.get(plan.items_field) or [])
            sync_token = page.next_sync_token or sync_token
            cursor = page.next_page_token
            if not cursor:
                break

        logger.info(
            "Fetched %d items from %s in %d page(s) (%s)",
            len(items), plan.endpoint, pages, plan.mode,
        )
        return items, sync_token

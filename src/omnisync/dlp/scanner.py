"""
Nightfall DLP scanner.

scan(texts) sends texts in batches of ``batch_size`` to the Nightfall v3 scan
API (one payload entry per text) and turns the findings into redacted text
plus a token map:

    "Call jane@corp.com or jane@corp.com"
        -> "Call [EMAIL_001] or [EMAIL_001]"
           {"[EMAIL_001]": TokenEntry("jane@corp.com", "email")}

Tokens are numbered per entity type in order of first occurrence in the
text, and a value that repeats reuses its token, so scanning the same text
twice yields the same output.

Rate-limited batches (429) are retried with exponential backoff; a
Retry-After header (seconds) overrides the computed wait.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from omnisync.config import get_settings
from omnisync.retry import build_retrying, parse_retry_after

logger = logging.getLogger(__name__)

DETECTORS = ("PERSON_NAME", "EMAIL_ADDRESS", "PHONE_NUMBER", "CREDIT_CARD_NUMBER")

SCAN_POLICY = {
    "detectionRules": [
        {
            "name": "omnisync default DLP",
            "logicalOp": "ANY",
            "detectors": [
                {
                    "detectorType": "NIGHTFALL_DETECTOR",
                    "nightfallDetector": detector,
                    "minConfidence": "LIKELY",
                    "minNumFindings": 1,
                }
                for detector in DETECTORS
            ],
        }
    ]
}


class DlpServiceError(RuntimeError):
    """Non-2xx response from the DLP service."""

    def __init__(self, status_code: int, message: str = "", retry_after: Optional[float] = None):
        super().__init__(f"DLP scan failed ({status_code}): {message}")
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass(frozen=True)
class TokenEntry:
    original: str
    entity_type: str  # lowercase token prefix: "email", "person", ...


@dataclass
class ScanResult:
    redacted: str
    token_map: Dict[str, TokenEntry] = field(default_factory=dict)
    verified: bool = True


def detector_to_prefix(detector: str) -> str:
    d = detector.upper()
    if "PERSON" in d:
        return "PERSON"
    if "EMAIL" in d:
        return "EMAIL"
    if "PHONE" in d:
        return "PHONE"
    if "CREDIT" in d:
        return "CREDIT_CARD"
    return "SENSITIVE"


def _detector_name(finding: Dict[str, Any]) -> str:
    detector = finding.get("detector") or {}
    return detector.get("nightfallDetector") or detector.get("name") or "SENSITIVE"


def tokenize(text: str, findings: List[Dict[str, Any]]) -> ScanResult:
    """
    Replace every finding in ``text`` with a stable token.

    Args:
        text: Original text.
        findings: Nightfall findings for this text ({"finding", "detector"}).

    Returns:
        ScanResult with the redacted text and its token map.
    """
    located = []
    for f in findings:
        original = f.get("finding")
        if not original:
            continue
        position = text.find(original)
        located.append((position if position >= 0 else len(text), original, _detector_name(f)))
    # Order by first occurrence so numbering is independent of finding order
    located.sort(key=lambda item: (item[0], -len(item[1]), item[1]))

    counters: Dict[str, int] = {}
    value_tokens: Dict[str, str] = {}
    token_map: Dict[str, TokenEntry] = {}
    for _, original, detector in located:
        if original in value_tokens:
            continue
        prefix = detector_to_prefix(detector)
        counters[prefix] = counters.get(prefix, 0) + 1
        token = "[%s_%03d]" % (prefix, counters[prefix])
        value_tokens[original] = token
        token_map[token] = TokenEntry(original=original, entity_type=prefix.lower())

    redacted = text
    # Longest values first so a value never clobbers a longer one containing it
    for original in sorted(value_tokens, key=len, reverse=True):
        redacted = redacted.replace(original, value_tokens[original])
    return ScanResult(redacted=redacted, token_map=token_map)


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, DlpServiceError) and exc.status_code == 429


class NightfallScanner:
    """Async client for the Nightfall v3 scan API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        scan_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        concurrency: Optional[int] = None,
        backoff_multiplier: float = 1.0,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.nightfall_api_key
        self._scan_url = scan_url or settings.nightfall_scan_url
        self._http = http_client or httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        self.batch_size = batch_size or settings.dlp_batch_size
        self._max_retries = settings.dlp_max_retries if max_retries is None else max_retries
        self._concurrency = concurrency or settings.fetch_concurrency
        self._backoff_multiplier = backoff_multiplier
        self._max_backoff = settings.dlp_max_backoff_seconds
        self._sleep = sleep

    async def scan(self, texts: List[str]) -> List[ScanResult]:
        """
        Scan texts in batches; results are returned in input order.

        Raises:
            DlpServiceError: non-2xx response (429 only after retries ran out).
            httpx.HTTPError: transport failure.
        """
        if not texts:
            return []
        if not self._api_key:
            raise DlpServiceError(0, "NIGHTFALL_API_KEY is not configured")

        batches = [
            texts[i:i + self.batch_size] for i in range(0, len(texts), self.batch_size)
        ]
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run(batch: List[str]) -> List[ScanResult]:
            async with semaphore:
                return await self._scan_batch(batch)

        scanned = await asyncio.gather(*(run(b) for b in batches))
        logger.info("DLP scanned %d text(s) in %d batch(es)", len(texts), len(batches))
        return [result for batch in scanned for result in batch]

    async def _scan_batch(self, batch: List[str]) -> List[ScanResult]:
        retrying = build_retrying(
            _is_rate_limited,
            self._max_retries + 1,
            logger,
            multiplier=self._backoff_multiplier,
            max_wait=self._max_backoff,
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                payload_findings = await self._post(batch)

        results = []
        for index, text in enumerate(batch):
            entry = payload_findings[index] if index < len(payload_findings) else {}
            results.append(tokenize(text, (entry or {}).get("findings") or []))
        return results

    async def _post(self, batch: List[str]) -> List[Dict[str, Any]]:
        response = await self._http.post(
            self._scan_url,
            json={"policy": SCAN_POLICY, "payload": batch},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if response.status_code >= 400:
            raise DlpServiceError(
                response.status_code,
                response.text[:200],
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        return response.json().get("findings") or []

"""
DLP gate: the scan-and-redact step between raw provider data and anything
persisted or sent to the LLM.

Every call names its policy explicitly:

  MANDATORY    scan failure raises DlpUnavailableError; nothing downstream
               sees unredacted text
  BEST_EFFORT  scan failure is logged and the text passes through
               unredacted, flagged verified=False

Token maps produced by a successful scan are written to the PII vault keyed
by the field they came from.
"""
import enum
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from omnisync.dlp.scanner import DlpServiceError, NightfallScanner, ScanResult
from omnisync.dlp.vault import PiiVault
from omnisync.errors import DlpUnavailableError

logger = logging.getLogger(__name__)


class DlpPolicy(str, enum.Enum):
    MANDATORY = "mandatory"
    BEST_EFFORT = "best_effort"


class DlpGate:
    def __init__(self, scanner: NightfallScanner, vault: PiiVault):
        self.scanner = scanner
        self.vault = vault

    async def scan_texts(self, texts: List[str], policy: DlpPolicy) -> List[ScanResult]:
        """
        Scan texts under ``policy``.

        Raises:
            DlpUnavailableError: the scan failed and policy is MANDATORY.
        """
        try:
            return await self.scanner.scan(texts)
        except (DlpServiceError, httpx.HTTPError) as exc:
            if policy == DlpPolicy.MANDATORY:
                raise DlpUnavailableError(f"DLP scan unavailable: {exc}") from exc
            logger.warning(
                "DLP scan unavailable (%s); continuing unredacted under best-effort policy",
                exc,
            )
            return [ScanResult(redacted=t, token_map={}, verified=False) for t in texts]

    async def redact_records(
        self,
        user_id: str,
        provider: str,
        key_field: str,
        records: List[Dict[str, Any]],
        text_fields: Sequence[str],
        policy: DlpPolicy,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        """
        Redact the text fields of normalized records.

        Args:
            user_id: Owner, used to scope vault entries.
            provider: Provider name, part of each vault source_ref.
            key_field: Natural key column of the records.
            records: Normalized record dicts (not mutated).
            text_fields: Columns to scan.
            policy: Failure policy for this call site.

        Returns:
            (redacted records with security_verified set, verified flag)
        """
        slots: List[Tuple[int, str]] = []
        texts: List[str] = []
        for index, record in enumerate(records):
            for name in text_fields:
                value = record.get(name)
                if value:
                    slots.append((index, name))
                    texts.append(value)

        results = await self.scan_texts(texts, policy)
        verified = all(r.verified for r in results)

        redacted = [dict(r) for r in records]
        for (index, name), result in zip(slots, results):
            record = redacted[index]
            record[name] = result.redacted
            if result.token_map:
                ref = source_ref(provider, record[key_field], name)
                self.vault.store(user_id, ref, result.token_map)
        for record in redacted:
            record["security_verified"] = verified

        logger.info(
            "DLP gate: %d record(s), %d field(s) scanned for %s/%s (verified=%s)",
            len(records), len(texts), user_id, provider, verified,
        )
        return redacted, verified

    async def redact_text(
        self,
        user_id: str,
        text: str,
        policy: DlpPolicy,
        ref: Optional[str] = None,
    ) -> ScanResult:
        """Redact a single free-form text (e.g. an LLM prompt)."""
        results = await self.scan_texts([text], policy)
        result = results[0]
        if ref and result.token_map:
            self.vault.store(user_id, ref, result.token_map)
        return result


def source_ref(provider: str, native_id: str, field_name: str) -> str:
    return f"{provider}:{native_id}:{field_name}"

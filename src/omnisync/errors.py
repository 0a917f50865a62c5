"""
Error taxonomy shared by the provider client, the sync state machine and
the DLP gate.

classify_error() maps any exception raised by an external call onto one of
six categories. The category decides whether the failure is retried locally,
surfaced as retryable to the job runner, or treated as terminal (auth:
the user must reconnect the provider).
"""
from dataclasses import dataclass
from typing import Optional

import httpx

# ── Exceptions ────────────────────────────────────────────────────────────────


class ProviderError(RuntimeError):
    """Non-2xx response from the provider proxy."""

    def __init__(
        self,
        status_code: int,
        message: str = "",
        retry_after: Optional[float] = None,
    ):
        super().__init__(f"Provider request failed ({status_code}): {message}")
        self.status_code = status_code
        self.retry_after = retry_after


class SyncTokenExpiredError(ProviderError):
    """Provider rejected a delta sync token (HTTP 410 Gone)."""


class DlpUnavailableError(RuntimeError):
    """DLP scan could not be completed at a mandatory gate."""


class BriefingParseError(RuntimeError):
    """LLM returned a payload that does not match the briefing schema."""


class InvalidTransitionError(RuntimeError):
    """Attempted a sync job state transition the state machine forbids."""


class ConnectionNotFoundError(RuntimeError):
    """No connection exists for the requested (user, provider)."""


class JobInProgressError(RuntimeError):
    """Another live run holds the sync lease for this (user, provider)."""


class VaultKeyError(RuntimeError):
    """PII vault key is missing or is not a base64-encoded 256-bit key."""


# ── Classification ────────────────────────────────────────────────────────────

AUTH = "auth"
RATE_LIMIT = "rate_limit"
NETWORK = "network"
SERVER = "server"
CLIENT = "client"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    category: str
    retryable: bool
    action: str  # "retry", "backoff", "reconnect", "fail"


def _status_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, ProviderError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def classify_error(exc: BaseException) -> ClassifiedError:
    """
    Classify an exception from an external call.

    Args:
        exc: The raised exception.

    Returns:
        ClassifiedError with category, retryability and the suggested action.
    """
    status = _status_of(exc)

    if status in (401, 403):
        return ClassifiedError(AUTH, retryable=False, action="reconnect")
    if status == 429:
        return ClassifiedError(RATE_LIMIT, retryable=True, action="backoff")
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ClassifiedError(NETWORK, retryable=True, action="retry")
    if status is not None and 500 <= status < 600:
        return ClassifiedError(SERVER, retryable=True, action="retry")
    if status is not None and 400 <= status < 500:
        return ClassifiedError(CLIENT, retryable=False, action="fail")
    return ClassifiedError(UNKNOWN, retryable=True, action="retry")


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc).retryable


def requires_reconnect(exc: BaseException) -> bool:
    return classify_error(exc).action == "reconnect"


def format_error_message(exc: BaseException) -> str:
    """Message stored on the sync job row."""
    return str(exc) or exc.__class__.__name__

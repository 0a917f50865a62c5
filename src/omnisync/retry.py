"""
Shared tenacity policy for outbound HTTP calls (provider proxy, DLP scan).

Waits grow exponentially (1s, 2s, 4s, ... capped at ``max_wait``) unless the
failed response carried a Retry-After hint, which then wins.
"""
import asyncio
import logging
from typing import Any, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class RetryAfterWait:
    """tenacity wait strategy honoring an exception's ``retry_after`` attribute."""

    def __init__(self, multiplier: float = 1.0, max_wait: float = 30.0):
        self._fallback = wait_exponential(multiplier=multiplier, max=max_wait)
        self._max_wait = max_wait

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(exc, "retry_after", None)
        if hint is not None:
            return min(float(hint), self._max_wait)
        return self._fallback(retry_state)


def build_retrying(
    should_retry: Callable[[BaseException], bool],
    attempts: int,
    logger: logging.Logger,
    multiplier: float = 1.0,
    max_wait: float = 30.0,
    sleep: Optional[Callable[[float], Any]] = None,
) -> AsyncRetrying:
    """AsyncRetrying that re-raises the last exception once attempts run out."""
    return AsyncRetrying(
        retry=retry_if_exception(should_retry),
        stop=stop_after_attempt(attempts),
        wait=RetryAfterWait(multiplier, max_wait),
        sleep=sleep or asyncio.sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

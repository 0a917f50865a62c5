"""Tests for the error taxonomy."""
import httpx
import pytest

from omnisync.errors import (
    ProviderError,
    SyncTokenExpiredError,
    classify_error,
    format_error_message,
    is_retryable,
    requires_reconnect,
)
from omnisync.retry import parse_retry_after


class TestClassifyError:
    @pytest.mark.parametrize("status", [401, 403])
    def test_auth(self, status):
        c = classify_error(ProviderError(status, "denied"))
        assert (c.category, c.retryable, c.action) == ("auth", False, "reconnect")

    def test_rate_limit(self):
        c = classify_error(ProviderError(429, "slow down"))
        assert (c.category, c.retryable, c.action) == ("rate_limit", True, "backoff")

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server(self, status):
        assert classify_error(ProviderError(status)).category == "server"
        assert is_retryable(ProviderError(status))

    @pytest.mark.parametrize("status", [400, 404, 422])
    def test_client(self, status):
        c = classify_error(ProviderError(status))
        assert (c.category, c.retryable, c.action) == ("client", False, "fail")

    def test_token_expired_is_client(self):
        assert classify_error(SyncTokenExpiredError(410, "gone")).category == "client"

    @pytest.mark.parametrize(
        "exc",
        [httpx.ConnectError("reset"), httpx.ReadTimeout("slow"), ConnectionResetError(), TimeoutError()],
    )
    def test_network(self, exc):
        c = classify_error(exc)
        assert c.category == "network"
        assert c.retryable is True

    def test_http_status_error(self):
        request = httpx.Request("GET", "https://x.test")
        response = httpx.Response(403, request=request)
        exc = httpx.HTTPStatusError("forbidden", request=request, response=response)
        assert requires_reconnect(exc)

    def test_unknown_defaults_to_retryable(self):
        c = classify_error(ValueError("weird"))
        assert (c.category, c.retryable) == ("unknown", True)


class TestHelpers:
    def test_requires_reconnect_only_for_auth(self):
        assert requires_reconnect(ProviderError(401))
        assert not requires_reconnect(ProviderError(500))

    def test_format_message(self):
        assert format_error_message(ProviderError(500, "boom")) == "Provider request failed (500): boom"
        assert format_error_message(RuntimeError()) == "RuntimeError"

    @pytest.mark.parametrize(
        "value, expected",
        [("5", 5.0), ("0.5", 0.5), ("-3", 0.0), (None, None), ("", None),
         ("Wed, 21 Oct 2015 07:28:00 GMT", None)],
    )
    def test_parse_retry_after(self, value, expected):
        assert parse_retry_after(value) == expected

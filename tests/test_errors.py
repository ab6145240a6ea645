"""Tests for classify_error()."""

import asyncio

import httpx
import pytest

from chatwire.errors import GenerationCancelled, ReplyFormatError, classify_error
from chatwire.llm.provider import (
    EmptyReplyError,
    TransportAuthError,
    TransportBadRequestError,
    TransportRateLimitError,
)


# ── Local outcomes ───────────────────────────────────────────

class TestLocalOutcomes:
    def test_cancelled(self):
        assert "cancelled" in classify_error(GenerationCancelled())

    def test_asyncio_cancelled(self):
        assert "cancelled" in classify_error(asyncio.CancelledError())

    def test_format_error(self):
        msg = classify_error(ReplyFormatError("no role tag", "hello"))
        assert "not in chat format" in msg

    def test_format_error_keeps_reply(self):
        err = ReplyFormatError("no role tag", "hello")
        assert err.reply == "hello"


# ── Typed transport exceptions ───────────────────────────────

class TestTransportExceptions:
    def test_rate_limit(self):
        assert "Rate limited" in classify_error(TransportRateLimitError("429"))

    def test_auth_error(self):
        assert "Authentication" in classify_error(TransportAuthError("invalid key"))

    def test_bad_request(self):
        assert "rejected the request" in classify_error(TransportBadRequestError("too large"))

    def test_empty_reply(self):
        assert "empty reply" in classify_error(EmptyReplyError())


# ── httpx.HTTPStatusError ────────────────────────────────────

def _make_http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/v1/chat")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(
        f"{status_code} error", request=request, response=response
    )


class TestHTTPStatusError:
    def test_429(self):
        assert "Rate limited" in classify_error(_make_http_error(429))

    def test_401(self):
        assert "Authentication" in classify_error(_make_http_error(401))

    def test_403(self):
        assert "Authentication" in classify_error(_make_http_error(403))

    def test_400(self):
        assert "rejected the request" in classify_error(_make_http_error(400))

    @pytest.mark.parametrize("code", [500, 502, 503])
    def test_5xx(self, code):
        assert "server issues" in classify_error(_make_http_error(code))

    def test_unknown_status(self):
        assert "HTTP 418" in classify_error(_make_http_error(418))


# ── Network / timeouts / fallback ────────────────────────────

class TestNetwork:
    def test_connect_error(self):
        assert "Cannot connect" in classify_error(httpx.ConnectError("refused"))

    def test_read_timeout(self):
        assert "timed out" in classify_error(httpx.ReadTimeout("slow"))

    def test_asyncio_timeout(self):
        assert "timed out" in classify_error(asyncio.TimeoutError())

    def test_key_error(self):
        assert "Unexpected response format" in classify_error(KeyError("candidates"))

    def test_fallback_includes_type(self):
        assert "(ZeroDivisionError)" in classify_error(ZeroDivisionError())

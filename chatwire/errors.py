"""Error types for a send round, and classification for user-facing messages."""

import asyncio
import httpx

from .llm.provider import (
    EmptyReplyError,
    TransportAuthError,
    TransportBadRequestError,
    TransportRateLimitError,
)


class ReplyFormatError(Exception):
    """The reply is missing the mandatory role/payload markers. Nothing was parsed."""

    def __init__(self, message: str, reply: str = ""):
        super().__init__(message)
        self.reply = reply


class GenerationCancelled(Exception):
    """The send was aborted. No message was persisted and no queue was cleared."""
    pass


def classify_error(e: BaseException) -> str:
    """Classify any exception into a user-friendly message.

    Keeps "retry the request" apart from "the reply was malformed" and
    "you cancelled". Returns a short string suitable for showing directly.
    """
    # 1-2: Local outcomes
    if isinstance(e, (GenerationCancelled, asyncio.CancelledError)):
        return "Generation cancelled."
    if isinstance(e, ReplyFormatError):
        return "The model reply was not in chat format. Please regenerate."

    # 3-6: Typed transport exceptions
    if isinstance(e, TransportRateLimitError):
        return "Rate limited. Please wait a moment and try again."
    if isinstance(e, TransportAuthError):
        return "Authentication error. Check the configured API key."
    if isinstance(e, TransportBadRequestError):
        return "Model rejected the request. The prompt or an image may be too large."
    if isinstance(e, EmptyReplyError):
        return "Model returned an empty reply. Please try again."

    # 7: httpx HTTP status errors
    if isinstance(e, httpx.HTTPStatusError):
        code = e.response.status_code
        if code == 429:
            return "Rate limited. Please wait a moment and try again."
        if code in (401, 403):
            return "Authentication error. Check the configured API key."
        if code == 400:
            return "Model rejected the request. The prompt or an image may be too large."
        if 500 <= code < 600:
            return "Model provider is having server issues. Please try again later."
        return f"Model provider returned HTTP {code}. Please try again later."

    # 8-9: Network / timeout errors
    if isinstance(e, httpx.ConnectError):
        return "Cannot connect to the model provider. Please check connectivity and try again."
    if isinstance(e, (httpx.ReadTimeout, httpx.WriteTimeout, httpx.PoolTimeout, httpx.ConnectTimeout)):
        return "Request timed out. Please try again."
    if isinstance(e, asyncio.TimeoutError):
        return "Request timed out. Please try again."

    # 10: Unexpected response shape
    if isinstance(e, (KeyError, IndexError)):
        return "Unexpected response format from the model provider. Please try again."

    # 11: Fallback, include type name for debugging
    type_name = type(e).__name__
    return f"Something went wrong ({type_name}). Check logs for details."

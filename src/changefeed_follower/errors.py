"""Error taxonomy for the change-feed follower.

``translate_error`` is the one place where exceptions raised by the HTTP stack
(or by a custom transport) are turned into :class:`FeedError` subclasses.  The
follower applies it, followed by ``BackoffPolicy.classify``, at a single point
in its control loop.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class FeedError(RuntimeError):
    """Base class for failures surfaced while following a changes feed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class TransportError(FeedError):
    """Connection-level failure (refused, reset, truncated stream...)."""


class StallTimeoutError(TransportError):
    """No data and no heartbeat arrived within the stall timeout."""


class ProtocolError(FeedError):
    """The server sent something that could not be decoded."""


class AuthError(FeedError):
    """Credentials were rejected."""


class ClientRequestError(FeedError):
    """The server rejected the request parameters (4xx)."""


class ServerError(FeedError):
    """The server failed to handle the request (5xx)."""


class RateLimitError(FeedError):
    """The server asked the client to slow down (429)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = 429,
        reason: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, reason=reason)
        self.retry_after = retry_after


class FeedCancelledError(FeedError):
    """The request was cancelled by something other than ``stop()``."""


class FollowerStateError(RuntimeError):
    """Raised when a follower is started twice or after it has finished."""


class InvalidArgumentValueError(ValueError):
    """Raised by the request validation hook for rejected path values."""

    code = "ERR_INVALID_ARG_VALUE"


def translate_error(error: BaseException) -> FeedError:
    """Map ``error`` onto the follower's error taxonomy."""
    if isinstance(error, FeedError):
        return error
    if isinstance(error, httpx.HTTPStatusError):
        return _from_status(error)
    if isinstance(error, httpx.ReadTimeout):
        return StallTimeoutError(f"feed read timed out: {error}")
    if isinstance(error, (httpx.TimeoutException, httpx.RequestError, OSError)):
        return TransportError(f"feed transport failed: {error}")
    if isinstance(error, json.JSONDecodeError):
        return ProtocolError(f"feed payload is not valid JSON: {error}")
    failure = FeedError(f"unexpected feed failure: {error!r}")
    failure.__cause__ = error
    return failure


def _from_status(error: httpx.HTTPStatusError) -> FeedError:
    response = error.response
    status = response.status_code
    reason = _extract_reason(response)
    message = f"changes request failed with HTTP {status}"
    if reason:
        message = f"{message}: {reason}"
    if status in {401, 403}:
        return AuthError(message, status_code=status, reason=reason)
    if status == 408:
        return TransportError(message, status_code=status, reason=reason)
    if status == 429:
        return RateLimitError(
            message,
            status_code=status,
            reason=reason,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        return ServerError(message, status_code=status, reason=reason)
    return ClientRequestError(message, status_code=status, reason=reason)


def _extract_reason(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except Exception:  # noqa: BLE001 - body may be empty, streamed or not JSON
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        reason = data.get("reason")
        if error and reason:
            return f"{error} ({reason})"
        value = error or reason or data.get("message")
        return str(value) if value else None
    try:
        text = response.text
    except httpx.ResponseNotRead:
        return None
    return text.strip() or None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        logger.debug("ignoring non-numeric Retry-After header %r", value)
        return None


__all__ = [
    "AuthError",
    "ClientRequestError",
    "FeedCancelledError",
    "FeedError",
    "FollowerStateError",
    "InvalidArgumentValueError",
    "ProtocolError",
    "RateLimitError",
    "ServerError",
    "StallTimeoutError",
    "TransportError",
    "translate_error",
]

"""Retry classification and exponential backoff for feed requests."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import (
    AuthError,
    ClientRequestError,
    FeedCancelledError,
    FeedError,
    ProtocolError,
    RateLimitError,
    ServerError,
    TransportError,
)
from .models import FailureClass

_RETRYABLE = (TransportError, ServerError, RateLimitError, ProtocolError)
_TERMINAL = (AuthError, ClientRequestError, FeedCancelledError)


@dataclass
class RetryBudget:
    """Failure streak bookkeeping owned by the follower's control loop."""

    attempt: int = 0
    next_delay: float = 0.0
    last_failure_class: Optional[FailureClass] = None
    failing_since: Optional[float] = None

    def record(self, failure_class: FailureClass, delay: float, now: float) -> None:
        self.attempt += 1
        self.next_delay = delay
        self.last_failure_class = failure_class
        if self.failing_since is None:
            self.failing_since = now

    def reset(self) -> None:
        self.attempt = 0
        self.next_delay = 0.0
        self.last_failure_class = None
        self.failing_since = None


class BackoffPolicy:
    """Exponential backoff with proportional jitter.

    ``next_delay(attempt)`` returns ``min_delay * multiplier ** attempt`` capped
    at ``max_delay`` and scaled by a factor drawn uniformly from
    ``[1 - jitter, 1 + jitter]``; the result never exceeds ``max_delay``.
    """

    def __init__(
        self,
        *,
        min_delay: float = 0.1,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter: float = 0.5,
        error_tolerance_seconds: Optional[float] = None,
        random_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        if min_delay <= 0:
            raise ValueError("min_delay must be positive")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1.0")
        if max_delay < min_delay:
            raise ValueError("max_delay must be >= min_delay")
        if not 0 <= jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")
        if error_tolerance_seconds is not None and error_tolerance_seconds < 0:
            raise ValueError("error_tolerance_seconds must be >= 0")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.error_tolerance_seconds = error_tolerance_seconds
        self.random_fn = random_fn or random.random

    def classify(self, error: BaseException) -> FailureClass:
        if isinstance(error, _TERMINAL):
            return FailureClass.TERMINAL
        if isinstance(error, _RETRYABLE):
            return FailureClass.RETRYABLE
        return FailureClass.TERMINAL

    def next_delay(self, attempt: int) -> float:
        """Return the delay in seconds before retry number ``attempt`` (0-based)."""
        exponent = max(0, attempt)
        try:
            raw = self.min_delay * (self.multiplier**exponent)
        except OverflowError:
            raw = self.max_delay
        raw = min(raw, self.max_delay)
        factor = 1.0 - self.jitter + 2.0 * self.jitter * self.random_fn()
        return min(max(0.0, raw * factor), self.max_delay)

    def delay_for(self, error: FeedError, attempt: int) -> float:
        delay = self.next_delay(attempt)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, min(error.retry_after, self.max_delay))
        return delay

    def tolerance_exceeded(self, failing_for: float) -> bool:
        """Return True when a failure streak of ``failing_for`` seconds is too long.

        A tolerance of zero fails on the first retryable error.
        """
        if self.error_tolerance_seconds is None:
            return False
        if self.error_tolerance_seconds == 0:
            return True
        return failing_for > self.error_tolerance_seconds


__all__ = ["BackoffPolicy", "RetryBudget"]

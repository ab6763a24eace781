"""Resume position and delivery accounting."""

from __future__ import annotations

from typing import Optional, Sequence

from .models import ChangeRecord


class CursorTracker:
    """Tracks the last delivered sequence token and the remaining budget.

    ``limit`` is the caller's overall cap; ``set_target`` records how many
    changes a bounded run found pending when it started.
    """

    def __init__(self, since: Optional[str] = None, limit: Optional[int] = None) -> None:
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        self._token = since
        self._limit = limit
        self._target: Optional[int] = None
        self._delivered = 0

    @property
    def delivered(self) -> int:
        return self._delivered

    @property
    def target(self) -> Optional[int]:
        return self._target

    def current(self) -> Optional[str]:
        return self._token

    def advance(
        self, records: Sequence[ChangeRecord], new_token: Optional[str] = None
    ) -> None:
        self._delivered += len(records)
        if new_token is not None:
            self._token = new_token
        elif records:
            self._token = records[-1].seq

    def set_target(self, count: int) -> None:
        if self._target is not None:
            return
        self._target = max(0, count)

    def remaining_budget(self) -> Optional[int]:
        remaining: Optional[int] = None
        if self._limit is not None:
            remaining = self._limit - self._delivered
        if self._target is not None:
            target_left = self._target - self._delivered
            remaining = target_left if remaining is None else min(remaining, target_left)
        if remaining is None:
            return None
        return max(0, remaining)

    def exhausted(self) -> bool:
        return self.remaining_budget() == 0


__all__ = ["CursorTracker"]

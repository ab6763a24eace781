"""Construction of per-attempt changes feed parameters."""

from __future__ import annotations

from typing import Iterable, Mapping, Optional, Tuple

from .models import FeedMode, FeedParameters

DEFAULT_BATCH_SIZE = 500
DEFAULT_HEARTBEAT_INTERVAL_MS = 30_000
DEFAULT_REQUEST_TIMEOUT_SECONDS = 150.0

# Options the follower sets itself on every request.
RESERVED_OPTIONS = frozenset(
    {"descending", "feed", "heartbeat", "last_event_id", "timeout"}
)
SUPPORTED_OPTIONS = frozenset(
    {
        "since",
        "limit",
        "batch_size",
        "heartbeat_interval_ms",
        "include_docs",
        "selector",
        "doc_ids",
    }
)


def validate_feed_options(options: Mapping[str, object]) -> None:
    """Reject options the follower cannot honour."""
    reserved = sorted(key for key in options if key in RESERVED_OPTIONS)
    if reserved:
        raise ValueError(
            "the changes follower manages these options itself: "
            + ", ".join(reserved)
        )
    unknown = sorted(key for key in options if key not in SUPPORTED_OPTIONS)
    if unknown:
        raise ValueError("unsupported changes feed options: " + ", ".join(unknown))
    limit = options.get("limit")
    if limit is not None and (not isinstance(limit, int) or limit < 0):
        raise ValueError("limit must be a non-negative integer")
    if options.get("selector") is not None and options.get("doc_ids"):
        raise ValueError("selector and doc_ids filters are mutually exclusive")


class FeedRequestBuilder:
    """Pure factory for :class:`FeedParameters`."""

    def __init__(
        self,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS,
        include_docs: bool = False,
        filter_selector: Optional[Mapping[str, object]] = None,
        filter_doc_ids: Iterable[str] = (),
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if heartbeat_interval_ms <= 0:
            raise ValueError("heartbeat_interval_ms must be positive")
        doc_ids: Tuple[str, ...] = tuple(filter_doc_ids)
        if filter_selector is not None and doc_ids:
            raise ValueError("selector and doc_ids filters are mutually exclusive")
        self.batch_size = batch_size
        self.heartbeat_interval_ms = heartbeat_interval_ms
        self.include_docs = include_docs
        self.filter_selector = filter_selector
        self.filter_doc_ids = doc_ids

    def build(
        self,
        mode: FeedMode,
        since_token: Optional[str],
        limit_remaining: Optional[int] = None,
        last_known_update_seq: Optional[str] = None,
    ) -> FeedParameters:
        if mode is FeedMode.BOUNDED:
            since = since_token or last_known_update_seq or "0"
            limit = self.batch_size
            if limit_remaining is not None:
                limit = min(limit, limit_remaining)
        else:
            since = since_token or "0"
            limit = limit_remaining
        return FeedParameters(
            since=since,
            mode=mode,
            batch_size=self.batch_size,
            heartbeat_interval_ms=self.heartbeat_interval_ms,
            limit=limit,
            include_docs=self.include_docs,
            filter_selector=self.filter_selector,
            filter_doc_ids=self.filter_doc_ids,
        )


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_HEARTBEAT_INTERVAL_MS",
    "DEFAULT_REQUEST_TIMEOUT_SECONDS",
    "FeedRequestBuilder",
    "RESERVED_OPTIONS",
    "SUPPORTED_OPTIONS",
    "validate_feed_options",
]

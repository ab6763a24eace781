"""Resilient follower for CouchDB-style database changes feeds."""

from .backoff import BackoffPolicy, RetryBudget
from .cursor import CursorTracker
from .decoder import RecordDecoder
from .errors import (
    AuthError,
    ClientRequestError,
    FeedCancelledError,
    FeedError,
    FollowerStateError,
    ProtocolError,
    RateLimitError,
    ServerError,
    StallTimeoutError,
    TransportError,
)
from .follower import ChangesFollower, FeedTransport, FollowerMetrics
from .models import (
    ChangeRecord,
    FailureClass,
    FeedMode,
    FeedParameters,
    FollowerState,
    Revision,
)
from .request import FeedRequestBuilder


def main() -> None:
    """Entrypoint proxy that defers importing the runtime until needed."""

    import sys

    from .service import main as _service_main

    sys.exit(_service_main())


__all__ = [
    "AuthError",
    "BackoffPolicy",
    "ChangeRecord",
    "ChangesFollower",
    "ClientRequestError",
    "CursorTracker",
    "FailureClass",
    "FeedCancelledError",
    "FeedError",
    "FeedMode",
    "FeedParameters",
    "FeedRequestBuilder",
    "FeedTransport",
    "FollowerMetrics",
    "FollowerState",
    "FollowerStateError",
    "ProtocolError",
    "RateLimitError",
    "RecordDecoder",
    "RetryBudget",
    "Revision",
    "ServerError",
    "StallTimeoutError",
    "TransportError",
    "main",
]

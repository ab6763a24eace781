"""Value types shared by the change-feed follower components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class FeedMode(str, Enum):
    """How the follower consumes the feed."""

    CONTINUOUS = "continuous"
    BOUNDED = "bounded"


class FollowerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_RETRY = "awaiting_retry"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (FollowerState.STOPPED, FollowerState.FAILED)


class FailureClass(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class Revision:
    """A leaf revision reported for a changed document."""

    revision_id: str


@dataclass(frozen=True)
class ChangeRecord:
    """Structured representation of one row of the changes feed."""

    id: str
    seq: str
    revisions: Tuple[Revision, ...] = ()
    deleted: bool = False
    doc: Optional[Mapping[str, object]] = None

    def to_dict(self) -> Dict[str, object]:
        """Return the record in the server's wire format."""
        payload: Dict[str, object] = {
            "seq": self.seq,
            "id": self.id,
            "changes": [{"rev": revision.revision_id} for revision in self.revisions],
        }
        if self.deleted:
            payload["deleted"] = True
        if self.doc is not None:
            payload["doc"] = dict(self.doc)
        return payload


@dataclass(frozen=True)
class FeedParameters:
    """Logical parameters for a single feed request attempt."""

    since: str
    mode: FeedMode
    batch_size: int
    heartbeat_interval_ms: int
    limit: Optional[int] = None
    include_docs: bool = False
    filter_selector: Optional[Mapping[str, object]] = None
    filter_doc_ids: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Heartbeat:
    """Keep-alive marker seen on a continuous feed."""


@dataclass(frozen=True)
class FeedEnd:
    """Trailer line closing a continuous feed response."""

    last_seq: str
    pending: Optional[int] = None


@dataclass(frozen=True)
class FeedBatch:
    """Decoded bounded response."""

    records: Tuple[ChangeRecord, ...]
    last_seq: Optional[str]
    pending: Optional[int] = None


__all__ = [
    "ChangeRecord",
    "FailureClass",
    "FeedBatch",
    "FeedEnd",
    "FeedMode",
    "FeedParameters",
    "FollowerState",
    "Heartbeat",
    "Revision",
]

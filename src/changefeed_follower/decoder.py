"""Decoding of changes feed responses into :class:`ChangeRecord` values.

Continuous responses are newline-delimited JSON: one change per line, empty
lines as heartbeats and a final ``{"last_seq": ..., "pending": ...}`` trailer.
Chunks arrive at arbitrary byte boundaries, so partial lines are buffered until
their newline shows up.  Bounded responses are a single JSON document with a
``results`` array.
"""

from __future__ import annotations

import json
import logging
from typing import Iterator, List, Mapping, Optional, Union

from .errors import ProtocolError
from .models import ChangeRecord, FeedBatch, FeedEnd, Heartbeat, Revision

logger = logging.getLogger(__name__)

FeedEvent = Union[ChangeRecord, Heartbeat, FeedEnd]

_HEARTBEAT = Heartbeat()


class RecordDecoder:
    """Incremental decoder; use a fresh instance per request attempt."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Number of bytes held back waiting for a newline."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> Iterator[FeedEvent]:
        """Yield an event for every complete line contained so far."""
        self._buffer.extend(chunk)
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                return
            line = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            yield self.decode_line(line)

    def finish(self) -> Iterator[FeedEvent]:
        """Flush a trailing line that was not newline-terminated."""
        if not self._buffer.strip():
            self._buffer.clear()
            return
        line = bytes(self._buffer)
        self._buffer.clear()
        yield self.decode_line(line)

    def decode_line(self, line: bytes) -> FeedEvent:
        try:
            text = line.decode(self._encoding).strip()
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"change line is not valid {self._encoding}") from exc
        if not text:
            return _HEARTBEAT
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"malformed change line: {text[:200]!r}") from exc
        if not isinstance(data, dict):
            raise ProtocolError(f"change line is not a JSON object: {text[:200]!r}")
        if "last_seq" in data:
            return FeedEnd(
                last_seq=_as_token(data["last_seq"]),
                pending=_as_pending(data.get("pending")),
            )
        return parse_record(data)

    def decode_payload(self, payload: Mapping[str, object]) -> FeedBatch:
        """Decode a bounded (``feed=normal``) response body."""
        results = payload.get("results")
        if not isinstance(results, list):
            raise ProtocolError("changes response is missing a results array")
        records: List[ChangeRecord] = []
        for item in results:
            if not isinstance(item, dict):
                raise ProtocolError(f"change result is not a JSON object: {item!r}")
            records.append(parse_record(item))
        last_seq = payload.get("last_seq")
        return FeedBatch(
            records=tuple(records),
            last_seq=_as_token(last_seq) if last_seq is not None else None,
            pending=_as_pending(payload.get("pending")),
        )


def parse_record(data: Mapping[str, object]) -> ChangeRecord:
    """Validate one change row and build the immutable record."""
    doc_id = data.get("id")
    seq = data.get("seq")
    if not isinstance(doc_id, str) or not doc_id:
        raise ProtocolError(f"change row without a document id: {data!r}")
    if seq is None or seq == "":
        raise ProtocolError(f"change row for {doc_id} without a sequence token")
    raw_changes = data.get("changes") or []
    if not isinstance(raw_changes, list):
        raise ProtocolError(f"change row for {doc_id} has malformed changes")
    revisions = []
    for entry in raw_changes:
        if not isinstance(entry, dict) or not isinstance(entry.get("rev"), str):
            raise ProtocolError(f"change row for {doc_id} has a malformed revision")
        revisions.append(Revision(revision_id=entry["rev"]))
    doc = data.get("doc")
    return ChangeRecord(
        id=doc_id,
        seq=_as_token(seq),
        revisions=tuple(revisions),
        deleted=bool(data.get("deleted", False)),
        doc=doc if isinstance(doc, dict) else None,
    )


def _as_token(value: object) -> str:
    # Older servers emit integer sequences; the client only ever echoes them.
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _as_pending(value: object) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.debug("ignoring malformed pending count %r", value)
        return None


__all__ = ["FeedEvent", "RecordDecoder", "parse_record"]

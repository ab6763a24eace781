"""Resume-token stores used by the command-line runtime.

The follower itself never persists its cursor; these stores belong to the
caller that wants to resume across restarts.  Sequence tokens are opaque, so
``save`` always overwrites and ``reset`` compares tokens only for equality.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Persistence backend for the last delivered sequence token per feed."""

    def load(self, feed_name: str) -> Optional[str]: ...

    def save(self, feed_name: str, token: str) -> None: ...

    def reset(
        self,
        feed_name: str,
        *,
        expected_token: Optional[str] = None,
        new_token: Optional[str] = None,
        force: bool = False,
    ) -> None: ...


def _check_reset(
    current: Optional[str], expected_token: Optional[str], force: bool
) -> None:
    if force:
        return
    if current is None:
        if expected_token is not None:
            raise ValueError("resume token missing; supply force=True to reset")
        return
    if expected_token != current:
        raise ValueError("unexpected resume token value")


class InMemoryCheckpointStore:
    """Volatile store keeping tokens in-memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._tokens: Dict[str, str] = {}

    def load(self, feed_name: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(feed_name)

    def save(self, feed_name: str, token: str) -> None:
        with self._lock:
            self._tokens[feed_name] = token

    def reset(
        self,
        feed_name: str,
        *,
        expected_token: Optional[str] = None,
        new_token: Optional[str] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            _check_reset(self._tokens.get(feed_name), expected_token, force)
            if new_token is None:
                self._tokens.pop(feed_name, None)
            else:
                self._tokens[feed_name] = new_token


class PersistentCheckpointStore:
    """Durable store writing tokens to a JSON file atomically."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        self._tokens: Dict[str, str] = {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create checkpoint directory %s: %s",
                self._path.parent,
                exc,
            )
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, feed_name: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(feed_name)

    def save(self, feed_name: str, token: str) -> None:
        with self._lock:
            if self._tokens.get(feed_name) == token:
                return
            self._tokens[feed_name] = token
            self._write_locked()

    def reset(
        self,
        feed_name: str,
        *,
        expected_token: Optional[str] = None,
        new_token: Optional[str] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._tokens.get(feed_name)
            _check_reset(current, expected_token, force)
            if new_token is None:
                if current is None:
                    return
                self._tokens.pop(feed_name, None)
            else:
                self._tokens[feed_name] = new_token
            self._write_locked()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("failed to load checkpoint file %s: %s", self._path, exc)
            return
        if not isinstance(data, dict):
            logger.warning("checkpoint file %s has invalid format; ignoring", self._path)
            return
        with self._lock:
            self._tokens = {
                key: value
                for key, value in data.items()
                if isinstance(key, str) and isinstance(value, str)
            }

    def _write_locked(self) -> None:
        temp_fd: Optional[int] = None
        temp_path: Optional[str] = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as tmp:
                temp_fd = None  # ownership transferred to file object
                json.dump(self._tokens, tmp, sort_keys=True)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(temp_path, self._path)
            temp_path = None
            if self._fsync:
                self._fsync_directory()
        except OSError as exc:
            logger.error("failed to persist checkpoint file %s: %s", self._path, exc)
            raise
        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass

    def _fsync_directory(self) -> None:
        try:
            dir_fd = os.open(self._path.parent, os.O_RDONLY)
        except OSError:  # pragma: no cover - platform dependent
            return
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)


__all__ = ["CheckpointStore", "InMemoryCheckpointStore", "PersistentCheckpointStore"]

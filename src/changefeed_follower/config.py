"""Runtime configuration helpers for the changes follower."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from .models import FeedMode
from .request import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_HEARTBEAT_INTERVAL_MS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
)


@dataclass(frozen=True)
class Settings:
    """Immutable container for runtime configuration."""

    couch_url: str
    database: str
    username: str = ""
    password: str = ""
    mode: FeedMode = FeedMode.CONTINUOUS
    since: Optional[str] = None
    limit: Optional[int] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    tolerance_factor: float = 2.0
    include_docs: bool = False
    selector: Optional[Dict[str, object]] = None
    doc_ids: Tuple[str, ...] = ()
    retry_min_delay_seconds: float = 0.1
    retry_max_delay_seconds: float = 60.0
    error_tolerance_seconds: Optional[float] = None
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    resume_backend: str = "file"
    resume_path: Path = Path("changes_resume_tokens.json")
    resume_fsync: bool = False
    output: str = "-"
    log_level: str = "INFO"


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _as_optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value)


def _as_optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    return float(value)


def _coerce_mode(value: Optional[str]) -> FeedMode:
    if value is None:
        return FeedMode.CONTINUOUS
    normalized = value.strip().lower()
    if normalized in {"bounded", "one-off", "oneoff", "one_off"}:
        return FeedMode.BOUNDED
    return FeedMode.CONTINUOUS


def _coerce_resume_backend(value: Optional[str]) -> str:
    if value is None:
        return "file"
    normalized = value.strip().lower()
    if normalized in {"memory", "file"}:
        return normalized
    return "file"


def _parse_selector(value: Optional[str]) -> Optional[Dict[str, object]]:
    if not value or not value.strip():
        return None
    try:
        selector = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValueError("FOLLOWER_SELECTOR must be a JSON object") from exc
    if not isinstance(selector, dict):
        raise ValueError("FOLLOWER_SELECTOR must be a JSON object")
    return selector


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    couch_url = os.getenv("COUCH_URL", "http://localhost:5984").strip()
    if couch_url.endswith("/"):
        couch_url = couch_url.rstrip("/")

    since = os.getenv("FOLLOWER_SINCE", "").strip() or None

    return Settings(
        couch_url=couch_url,
        database=os.getenv("COUCH_DB", "").strip(),
        username=os.getenv("COUCH_USERNAME", ""),
        password=os.getenv("COUCH_PASSWORD", ""),
        mode=_coerce_mode(os.getenv("FOLLOWER_MODE")),
        since=since,
        limit=_as_optional_int(os.getenv("FOLLOWER_LIMIT")),
        batch_size=int(os.getenv("FOLLOWER_BATCH_SIZE", str(DEFAULT_BATCH_SIZE))),
        heartbeat_interval_ms=int(
            os.getenv("FOLLOWER_HEARTBEAT_MS", str(DEFAULT_HEARTBEAT_INTERVAL_MS))
        ),
        tolerance_factor=float(os.getenv("FOLLOWER_TOLERANCE_FACTOR", "2.0")),
        include_docs=_as_bool(os.getenv("FOLLOWER_INCLUDE_DOCS"), False),
        selector=_parse_selector(os.getenv("FOLLOWER_SELECTOR")),
        doc_ids=_split_csv(os.getenv("FOLLOWER_DOC_IDS")),
        retry_min_delay_seconds=float(
            os.getenv("FOLLOWER_RETRY_MIN_DELAY_SECONDS", "0.1")
        ),
        retry_max_delay_seconds=float(
            os.getenv("FOLLOWER_RETRY_MAX_DELAY_SECONDS", "60.0")
        ),
        error_tolerance_seconds=_as_optional_float(
            os.getenv("FOLLOWER_ERROR_TOLERANCE_SECONDS")
        ),
        request_timeout_seconds=float(
            os.getenv(
                "FOLLOWER_REQUEST_TIMEOUT_SECONDS",
                str(DEFAULT_REQUEST_TIMEOUT_SECONDS),
            )
        ),
        resume_backend=_coerce_resume_backend(os.getenv("FOLLOWER_RESUME_BACKEND")),
        resume_path=Path(
            os.getenv("FOLLOWER_RESUME_PATH", "changes_resume_tokens.json")
        ),
        resume_fsync=_as_bool(os.getenv("FOLLOWER_RESUME_FSYNC"), False),
        output=os.getenv("FOLLOWER_OUTPUT", "-").strip() or "-",
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


__all__ = ["Settings", "load_settings"]

"""Command-line runtime that follows a database and writes changes as JSON lines."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, TextIO

from .backoff import BackoffPolicy
from .checkpoint import (
    CheckpointStore,
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
)
from .config import Settings, load_settings
from .errors import FeedError
from .follower import ChangesFollower, FeedTransport, FollowerMetrics
from .models import ChangeRecord, FeedMode
from .session import CouchSessionAuth
from .transport import HttpFeedTransport
from .validation import RequestValidator

logger = logging.getLogger(__name__)


def build_transport(settings: Settings) -> HttpFeedTransport:
    """Create the httpx transport, with session auth when credentials are set."""
    auth = None
    if settings.username:
        auth = CouchSessionAuth(
            base_url=settings.couch_url,
            username=settings.username,
            password=settings.password,
        )
    return HttpFeedTransport(
        settings.couch_url,
        settings.database,
        auth=auth,
        request_timeout_seconds=settings.request_timeout_seconds,
        tolerance_factor=settings.tolerance_factor,
        validator=RequestValidator(),
    )


def build_checkpoint_store(settings: Settings) -> CheckpointStore:
    if settings.resume_backend == "memory":
        return InMemoryCheckpointStore()
    return PersistentCheckpointStore(settings.resume_path, fsync=settings.resume_fsync)


class FollowerRuntime:
    """Wires settings, transport, follower and resume store together."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[FeedTransport] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        output: Optional[TextIO] = None,
        metrics: Optional[FollowerMetrics] = None,
        since_override: Optional[str] = None,
    ) -> None:
        if not settings.database:
            raise ValueError("database is not configured; set COUCH_DB or --db")
        self.settings = settings
        self._owned_transport: Optional[HttpFeedTransport] = None
        if transport is None:
            self._owned_transport = build_transport(settings)
            transport = self._owned_transport
        self._transport = transport
        self._store = checkpoint_store or build_checkpoint_store(settings)
        self._output = output
        self._metrics = metrics
        self._since_override = since_override
        self._follower: Optional[ChangesFollower] = None

    @property
    def follower(self) -> Optional[ChangesFollower]:
        return self._follower

    def build_follower(self) -> ChangesFollower:
        settings = self.settings
        since = self._resolve_since()
        self._follower = ChangesFollower(
            self._transport,
            since=since,
            limit=settings.limit,
            batch_size=settings.batch_size,
            heartbeat_interval_ms=settings.heartbeat_interval_ms,
            tolerance_factor=settings.tolerance_factor,
            include_docs=settings.include_docs,
            filter_selector=settings.selector,
            filter_doc_ids=settings.doc_ids,
            backoff=BackoffPolicy(
                min_delay=settings.retry_min_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
                error_tolerance_seconds=settings.error_tolerance_seconds,
            ),
            metrics=self._metrics,
            request_timeout_seconds=settings.request_timeout_seconds,
        )
        return self._follower

    def _resolve_since(self) -> Optional[str]:
        """Pick the start token: explicit override, then persisted seq, then config."""
        database = self.settings.database
        persisted = self._store.load(database)
        if self._since_override is not None:
            if persisted is not None and persisted != self._since_override:
                logger.warning(
                    "ignoring persisted seq %s for %s; starting from --since %s",
                    persisted,
                    database,
                    self._since_override,
                )
            return self._since_override
        if persisted is None:
            return self.settings.since
        if self.settings.since is not None and self.settings.since != persisted:
            logger.warning(
                "persisted seq %s for %s takes precedence over FOLLOWER_SINCE=%s",
                persisted,
                database,
                self.settings.since,
            )
        else:
            logger.info("resuming %s from persisted seq %s", database, persisted)
        return persisted

    def run(self) -> int:
        """Follow the feed; return 0 on clean completion and 1 on failure."""
        follower = self._follower or self.build_follower()
        if self.settings.mode is FeedMode.BOUNDED:
            changes = follower.start_one_off()
        else:
            changes = follower.start()
        output, close_output = self._open_output()
        try:
            for change in changes:
                self._handle_change(output, change)
        except FeedError as exc:
            logger.error("changes follower for %s failed: %s", self.settings.database, exc)
            return 1
        except KeyboardInterrupt:
            logger.info("shutdown requested (KeyboardInterrupt)")
            follower.stop()
        finally:
            if close_output:
                output.close()
            self.close()
        logger.info(
            "changes follower for %s finished after %d change(s)",
            self.settings.database,
            follower.cursor.delivered,
        )
        return 0

    def stop(self) -> None:
        if self._follower is not None:
            self._follower.stop()

    def close(self) -> None:
        if self._owned_transport is not None:
            self._owned_transport.close()
            self._owned_transport = None

    def _handle_change(self, output: TextIO, change: ChangeRecord) -> None:
        output.write(json.dumps(change.to_dict(), ensure_ascii=False) + "\n")
        output.flush()
        self._store.save(self.settings.database, change.seq)

    def _open_output(self) -> tuple[TextIO, bool]:
        if self._output is not None:
            return self._output, False
        if self.settings.output == "-":
            return sys.stdout, False
        path = Path(self.settings.output)
        return path.open("a", encoding="utf-8"), True


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Follow a database changes feed and print changes as JSON lines"
    )
    parser.add_argument("--db", help="Database to follow (COUCH_DB)", default=None)
    parser.add_argument(
        "--one-off",
        action="store_true",
        help="Stop once the changes pending at start have been delivered",
    )
    parser.add_argument("--since", help="Sequence token to start after", default=None)
    parser.add_argument(
        "--limit", type=int, help="Stop after this many changes", default=None
    )
    parser.add_argument(
        "--include-docs",
        action="store_true",
        help="Include document bodies in the output",
    )
    parser.add_argument(
        "--selector", help="JSON selector used to filter changes", default=None
    )
    parser.add_argument(
        "--output", help="Output file for JSON lines ('-' for stdout)", default=None
    )
    parser.add_argument(
        "--resume-path", help="JSON file storing the last delivered seq", default=None
    )
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {}
    if args.db:
        overrides["database"] = args.db
    if args.one_off:
        overrides["mode"] = FeedMode.BOUNDED
    if args.since:
        overrides["since"] = args.since
    if args.limit is not None:
        overrides["limit"] = args.limit
    if args.include_docs:
        overrides["include_docs"] = True
    if args.selector:
        selector = json.loads(args.selector)
        if not isinstance(selector, dict):
            raise ValueError("--selector must be a JSON object")
        overrides["selector"] = selector
    if args.output:
        overrides["output"] = args.output
    if args.resume_path:
        overrides["resume_backend"] = "file"
        overrides["resume_path"] = Path(args.resume_path)
    return dataclasses.replace(settings, **overrides)


def main(argv: Optional[list[str]] = None) -> int:
    """Entrypoint used by both python -m and the console script hook."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
            stream=sys.stderr,
        )
    runtime: Optional[FollowerRuntime] = None
    try:
        settings = apply_overrides(settings, args)
        runtime = FollowerRuntime(settings, since_override=args.since)
        runtime.build_follower()
    except ValueError as exc:
        if runtime is not None:
            runtime.close()
        parser.error(str(exc))
        return 2
    signal.signal(signal.SIGTERM, lambda *_: runtime.stop())
    return runtime.run()


__all__ = [
    "FollowerRuntime",
    "apply_overrides",
    "build_checkpoint_store",
    "build_transport",
    "main",
]

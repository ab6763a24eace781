#!/usr/bin/env python
"""Follow a handful of changes from a live database and report follower metrics."""

from __future__ import annotations

import argparse
import sys
import threading
from dataclasses import replace
from typing import Optional

from changefeed_follower import ChangesFollower, FeedError, FollowerMetrics
from changefeed_follower.backoff import BackoffPolicy
from changefeed_follower.config import load_settings
from changefeed_follower.service import build_transport


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Read a few changes from COUCH_DB and print the follower metrics",
    )
    parser.add_argument("--db", help="Database to follow (defaults to COUCH_DB)")
    parser.add_argument(
        "--count",
        type=int,
        default=10,
        help="Maximum number of changes to read (default 10)",
    )
    parser.add_argument("--since", help="Sequence token to start after", default=None)
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="Listen on the continuous feed instead of a one-off read",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Stop the follower after this many seconds (default 30)",
    )
    args = parser.parse_args()

    settings = load_settings()
    database = args.db or settings.database
    if not database:
        print("Error: COUCH_DB is not configured", file=sys.stderr)
        return 2
    if args.count <= 0:
        print("Error: --count must be positive", file=sys.stderr)
        return 2

    if database != settings.database:
        settings = replace(settings, database=database)

    metrics = FollowerMetrics()
    transport = build_transport(settings)
    follower = ChangesFollower(
        transport,
        since=args.since or settings.since,
        limit=args.count,
        batch_size=min(settings.batch_size, args.count),
        heartbeat_interval_ms=settings.heartbeat_interval_ms,
        tolerance_factor=settings.tolerance_factor,
        request_timeout_seconds=settings.request_timeout_seconds,
        include_docs=settings.include_docs,
        backoff=BackoffPolicy(
            min_delay=settings.retry_min_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            error_tolerance_seconds=settings.error_tolerance_seconds,
        ),
        metrics=metrics,
    )
    timer = threading.Timer(max(0.1, args.timeout), follower.stop)
    timer.daemon = True

    failure: Optional[FeedError] = None
    try:
        timer.start()
        changes = follower.start() if args.continuous else follower.start_one_off()
        for change in changes:
            marker = " (deleted)" if change.deleted else ""
            print(f"{change.seq}  {change.id}{marker}")
    except FeedError as exc:
        failure = exc
    finally:
        timer.cancel()
        follower.stop()
        transport.close()

    snapshot = metrics.snapshot()
    print("Changes feed smoke test completed.")
    print(
        f"Records={snapshot['records_total']} Requests={snapshot['requests_total']}"
        f" Retries={snapshot['retries_total']} Heartbeats={snapshot['heartbeats_total']}"
        f" Stalls={snapshot['stalls_total']} LastSeq={follower.cursor.current()}"
    )
    if failure is not None:
        print(f"Follower failed: {failure}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

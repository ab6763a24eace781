"""Changes follower coordinating requests, decoding, cursor tracking and retries."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import abc, defaultdict
from typing import (
    Callable,
    Dict,
    Generator,
    Iterable,
    Iterator,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from prometheus_client import CollectorRegistry, Counter
from prometheus_client import Enum as EnumMetric

from .backoff import BackoffPolicy, RetryBudget
from .cursor import CursorTracker
from .decoder import RecordDecoder
from .errors import (
    FeedError,
    FollowerStateError,
    StallTimeoutError,
    TransportError,
    translate_error,
)
from .models import (
    ChangeRecord,
    FailureClass,
    FeedEnd,
    FeedMode,
    FeedParameters,
    FollowerState,
    Heartbeat,
)
from .request import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_HEARTBEAT_INTERVAL_MS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    FeedRequestBuilder,
    validate_feed_options,
)

logger = logging.getLogger(__name__)

FeedResponse = Union[Mapping[str, object], Iterable[bytes]]
RetryListener = Callable[[FeedError, float], None]

DEFAULT_TOLERANCE_FACTOR = 2.0
DEFAULT_QUEUE_SIZE = 16


class FeedTransport(Protocol):
    """HTTP collaborator issuing one changes request.

    Bounded requests return the decoded JSON body; continuous requests return
    an iterable of raw byte chunks, optionally with a ``close()`` method.
    """

    def issue(self, params: FeedParameters) -> FeedResponse: ...


# ---------------------------------------------------------------------------
# Metrics


class FollowerMetrics:
    """Prometheus counters for one follower plus an in-process snapshot."""

    def __init__(
        self,
        namespace: str = "changefeed_follower",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._records = self._counter(namespace, "records_total", "Change records delivered")
        self._requests = self._counter(namespace, "requests_total", "Feed requests issued")
        self._retries = self._counter(namespace, "retries_total", "Feed requests retried")
        self._heartbeats = self._counter(
            namespace, "heartbeats_total", "Heartbeats received on continuous feeds"
        )
        self._stalls = self._counter(
            namespace, "stalls_total", "Requests abandoned after the stall timeout"
        )
        self._failures = self._counter(
            namespace, "failures_total", "Terminal follower failures"
        )
        self._state = EnumMetric(
            f"{namespace}_state",
            "Current follower state",
            states=[state.value for state in FollowerState],
            registry=self.registry,
        )
        self._snapshot: Dict[str, object] = defaultdict(int)
        self._snapshot["state"] = FollowerState.IDLE.value

    def _counter(self, namespace: str, name: str, documentation: str) -> Counter:
        return Counter(f"{namespace}_{name}", documentation, registry=self.registry)

    def inc_records(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._records.inc(amount)
        self._snapshot["records_total"] += amount

    def inc_requests(self) -> None:
        self._requests.inc()
        self._snapshot["requests_total"] += 1

    def inc_retries(self) -> None:
        self._retries.inc()
        self._snapshot["retries_total"] += 1

    def inc_heartbeats(self) -> None:
        self._heartbeats.inc()
        self._snapshot["heartbeats_total"] += 1

    def inc_stalls(self) -> None:
        self._stalls.inc()
        self._snapshot["stalls_total"] += 1

    def inc_failures(self) -> None:
        self._failures.inc()
        self._snapshot["failures_total"] += 1

    def set_state(self, state: FollowerState) -> None:
        self._state.state(state.value)
        self._snapshot["state"] = state.value

    def snapshot(self) -> Dict[str, object]:
        return dict(self._snapshot)


# ---------------------------------------------------------------------------
# In-flight request


_Item = Tuple[str, object]


class _InflightRequest:
    """A single feed request pumped into a bounded queue by a reader thread."""

    def __init__(
        self, transport: FeedTransport, params: FeedParameters, queue_size: int
    ) -> None:
        self.params = params
        self.inbox: "queue.Queue[_Item]" = queue.Queue(maxsize=max(1, queue_size))
        self.abandoned = threading.Event()
        self._transport = transport
        self._handle: Optional[object] = None
        self._thread = threading.Thread(
            target=self._pump,
            name="changes-feed-reader",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def next_item(self, timeout: float) -> _Item:
        try:
            return self.inbox.get(timeout=timeout)
        except queue.Empty:
            raise StallTimeoutError(
                f"no data or heartbeat received for {timeout:.1f}s"
            ) from None

    def wake(self) -> None:
        try:
            self.inbox.put_nowait(("wake", None))
        except queue.Full:
            pass

    def abandon(self) -> None:
        if self.abandoned.is_set():
            return
        self.abandoned.set()
        self._close_handle()

    def _pump(self) -> None:
        try:
            response = self._transport.issue(self.params)
            if isinstance(response, abc.Mapping):
                self._offer(("payload", response))
                return
            self._handle = response
            if self.abandoned.is_set():
                return
            for chunk in response:
                if self.abandoned.is_set():
                    return
                if chunk:
                    if not self._offer(("chunk", bytes(chunk))):
                        return
            self._offer(("eof", None))
        except Exception as exc:  # noqa: BLE001 - handed to the control loop
            if self.abandoned.is_set():
                logger.debug("abandoned feed request ended with %r", exc)
                return
            self._offer(("error", exc))
        finally:
            self._close_handle()

    def _offer(self, item: _Item) -> bool:
        while not self.abandoned.is_set():
            try:
                self.inbox.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _close_handle(self) -> None:
        handle = self._handle
        close = getattr(handle, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception:  # noqa: BLE001 - best effort
            logger.debug("failed to close feed response", exc_info=True)


# ---------------------------------------------------------------------------
# Follower


class ChangesFollower:
    """Follows a changes feed and yields its records as a Python iterator.

    ``start()`` listens forever; ``start_one_off()`` stops once the changes
    pending when it started have been delivered.  Retryable failures are
    retried from the last delivered sequence token; terminal failures are
    raised from the iterator.  A follower runs once: resume with a new
    instance seeded with the last persisted ``seq``.
    """

    def __init__(
        self,
        transport: FeedTransport,
        *,
        since: Optional[str] = None,
        limit: Optional[int] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS,
        tolerance_factor: float = DEFAULT_TOLERANCE_FACTOR,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        include_docs: bool = False,
        filter_selector: Optional[Mapping[str, object]] = None,
        filter_doc_ids: Iterable[str] = (),
        backoff: Optional[BackoffPolicy] = None,
        error_tolerance_seconds: Optional[float] = None,
        retry_listener: Optional[RetryListener] = None,
        metrics: Optional[FollowerMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        if tolerance_factor < 1:
            raise ValueError("tolerance_factor must be at least 1.0")
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        self._transport = transport
        self._builder = FeedRequestBuilder(
            batch_size=batch_size,
            heartbeat_interval_ms=heartbeat_interval_ms,
            include_docs=include_docs,
            filter_selector=filter_selector,
            filter_doc_ids=filter_doc_ids,
        )
        self._cursor = CursorTracker(since=since, limit=limit)
        if backoff is not None and error_tolerance_seconds is not None:
            raise ValueError(
                "pass error_tolerance_seconds to the BackoffPolicy when supplying one"
            )
        self._backoff = backoff or BackoffPolicy(
            error_tolerance_seconds=error_tolerance_seconds
        )
        self._budget = RetryBudget()
        self._stall_timeout = heartbeat_interval_ms * tolerance_factor / 1000.0
        # Bounded responses carry no heartbeats; only the request timeout applies.
        self._bounded_timeout = max(self._stall_timeout, request_timeout_seconds)
        self._target_captured = False
        self._retry_listener = retry_listener
        self._metrics = metrics or FollowerMetrics()
        self._clock = clock
        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._queue_size = queue_size
        self._state_lock = threading.Lock()
        self._state = FollowerState.IDLE
        self._failure: Optional[FeedError] = None
        self._inflight: Optional[_InflightRequest] = None

    @classmethod
    def from_options(
        cls,
        transport: FeedTransport,
        options: Mapping[str, object],
        **kwargs: object,
    ) -> "ChangesFollower":
        """Build a follower from changes-request style options."""
        validate_feed_options(options)
        mapped = {
            "since": options.get("since"),
            "limit": options.get("limit"),
            "include_docs": bool(options.get("include_docs", False)),
            "filter_selector": options.get("selector"),
            "filter_doc_ids": tuple(options.get("doc_ids") or ()),
        }
        if "batch_size" in options:
            mapped["batch_size"] = options["batch_size"]
        if "heartbeat_interval_ms" in options:
            mapped["heartbeat_interval_ms"] = options["heartbeat_interval_ms"]
        mapped.update(kwargs)
        return cls(transport, **mapped)  # type: ignore[arg-type]

    # ------------------------------------------------------------------ Properties
    @property
    def state(self) -> FollowerState:
        return self._state

    @property
    def failure(self) -> Optional[FeedError]:
        return self._failure

    @property
    def cursor(self) -> CursorTracker:
        return self._cursor

    @property
    def retry_budget(self) -> RetryBudget:
        return self._budget

    @property
    def metrics(self) -> FollowerMetrics:
        return self._metrics

    @property
    def stall_timeout(self) -> float:
        return self._stall_timeout

    @property
    def bounded_timeout(self) -> float:
        return self._bounded_timeout

    # ------------------------------------------------------------------ Lifecycle
    def start(self) -> Iterator[ChangeRecord]:
        """Listen to the feed until stopped or failed."""
        self._begin(FeedMode.CONTINUOUS)
        return self._run(FeedMode.CONTINUOUS)

    def start_one_off(self) -> Iterator[ChangeRecord]:
        """Deliver the changes pending now, then finish."""
        self._begin(FeedMode.BOUNDED)
        return self._run(FeedMode.BOUNDED)

    def stop(self) -> None:
        """Stop following; safe to call repeatedly and from any thread."""
        with self._state_lock:
            if not self._state.terminal:
                self._set_state_locked(FollowerState.STOPPED)
                logger.info("changes follower stopped at seq %s", self._cursor.current())
            self._stop_event.set()
            inflight = self._inflight
        if inflight is not None:
            inflight.wake()

    def __enter__(self) -> "ChangesFollower":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _begin(self, mode: FeedMode) -> None:
        with self._state_lock:
            if self._state is not FollowerState.IDLE:
                raise FollowerStateError(
                    f"follower is {self._state.value}; create a new instance to resume"
                )
            self._set_state_locked(FollowerState.RUNNING)
        logger.info(
            "changes follower started (mode=%s since=%s)",
            mode.value,
            self._cursor.current() or "0",
        )

    def _transition(self, state: FollowerState) -> bool:
        with self._state_lock:
            if self._state.terminal:
                return False
            self._set_state_locked(state)
            return True

    def _set_state_locked(self, state: FollowerState) -> None:
        self._state = state
        self._metrics.set_state(state)

    def _fail(self, error: FeedError) -> bool:
        with self._state_lock:
            if self._state.terminal:
                return False
            self._failure = error
            self._set_state_locked(FollowerState.FAILED)
        self._metrics.inc_failures()
        logger.error(
            "changes follower failed at seq %s: %s", self._cursor.current(), error
        )
        return True

    # ------------------------------------------------------------------ Control loop
    def _run(self, mode: FeedMode) -> Generator[ChangeRecord, None, None]:
        try:
            while not self._stop_event.is_set():
                if self._cursor.exhausted():
                    self._complete()
                    return
                params = self._builder.build(
                    mode,
                    self._cursor.current(),
                    limit_remaining=self._cursor.remaining_budget(),
                )
                try:
                    if mode is FeedMode.BOUNDED:
                        done = yield from self._consume_payload(params)
                    else:
                        done = yield from self._consume_stream(params)
                except Exception as exc:  # noqa: BLE001 - classified below
                    if self._stop_event.is_set():
                        return
                    if not self._handle_failure(translate_error(exc)):
                        return
                    continue
                if done:
                    self._complete()
                    return
        finally:
            self._abandon_inflight()
            if self._transition(FollowerState.STOPPED):
                logger.info(
                    "changes follower closed at seq %s", self._cursor.current()
                )

    def _complete(self) -> None:
        if self._transition(FollowerState.STOPPED):
            logger.info(
                "changes follower completed: %d change(s) delivered, seq %s",
                self._cursor.delivered,
                self._cursor.current(),
            )

    def _handle_failure(self, error: FeedError) -> bool:
        """Return True when the request should be re-issued."""
        verdict = self._backoff.classify(error)
        if verdict is FailureClass.TERMINAL:
            if self._fail(error):
                raise error
            return False

        now = self._clock()
        failing_since = self._budget.failing_since
        failing_for = now - failing_since if failing_since is not None else 0.0
        if self._backoff.tolerance_exceeded(failing_for):
            if self._fail(error):
                raise error
            return False

        if isinstance(error, StallTimeoutError):
            self._metrics.inc_stalls()
        delay = self._backoff.delay_for(error, self._budget.attempt)
        self._budget.record(verdict, delay, now)
        if not self._transition(FollowerState.AWAITING_RETRY):
            return False
        self._metrics.inc_retries()
        logger.warning(
            "changes request failed (%s); retry %d from seq %s in %.2fs",
            error,
            self._budget.attempt,
            self._cursor.current() or "0",
            delay,
        )
        self._notify_retry(error, delay)
        if delay > 0:
            self._sleep(delay)
        if self._stop_event.is_set():
            return False
        return self._transition(FollowerState.RUNNING)

    def _notify_retry(self, error: FeedError, delay: float) -> None:
        if self._retry_listener is None:
            return
        try:
            self._retry_listener(error, delay)
        except Exception:  # noqa: BLE001 - listeners must not break the feed
            logger.exception("retry listener raised an error")

    def _record_progress(self) -> None:
        if self._budget.attempt or self._budget.failing_since is not None:
            self._budget.reset()

    # ------------------------------------------------------------------ Requests
    def _issue(self, params: FeedParameters) -> _InflightRequest:
        inflight = _InflightRequest(self._transport, params, self._queue_size)
        with self._state_lock:
            if self._stop_event.is_set():
                raise TransportError("follower stopped before issuing request")
            self._inflight = inflight
        self._metrics.inc_requests()
        logger.debug(
            "issuing %s changes request since=%s limit=%s",
            params.mode.value,
            params.since,
            params.limit,
        )
        inflight.start()
        return inflight

    def _abandon_inflight(self) -> None:
        with self._state_lock:
            inflight = self._inflight
            self._inflight = None
        if inflight is not None:
            inflight.abandon()

    def _next_item(self, inflight: _InflightRequest) -> _Item:
        timeout = self._stall_timeout
        if inflight.params.mode is FeedMode.BOUNDED:
            timeout = self._bounded_timeout
        kind, value = inflight.next_item(timeout)
        if kind == "error":
            assert isinstance(value, BaseException)
            raise value
        return kind, value

    def _consume_payload(
        self, params: FeedParameters
    ) -> Generator[ChangeRecord, None, bool]:
        inflight = self._issue(params)
        try:
            while True:
                kind, value = self._next_item(inflight)
                if kind == "wake":
                    if self._stop_event.is_set():
                        return True
                    continue
                if kind != "payload" or not isinstance(value, abc.Mapping):
                    raise TransportError(
                        "bounded changes request returned a stream instead of a document"
                    )
                break
        finally:
            self._abandon_inflight()

        batch = RecordDecoder().decode_payload(value)
        self._record_progress()
        if not self._target_captured:
            # Only the first successful response of the run fixes the target.
            self._target_captured = True
            if batch.pending is not None:
                self._cursor.set_target(len(batch.records) + batch.pending)
        if batch.pending is not None:
            more = batch.pending > 0
        else:
            more = params.limit is not None and len(batch.records) >= params.limit

        delivered_all = True
        for record in batch.records:
            if self._cursor.exhausted():
                delivered_all = False
                break
            if self._stop_event.is_set():
                return True
            self._cursor.advance([record])
            self._metrics.inc_records()
            yield record
        if delivered_all and batch.last_seq is not None:
            self._cursor.advance([], batch.last_seq)
        return self._cursor.exhausted() or not more

    def _consume_stream(
        self, params: FeedParameters
    ) -> Generator[ChangeRecord, None, bool]:
        decoder = RecordDecoder()
        inflight = self._issue(params)
        ended = False
        try:
            while True:
                kind, value = self._next_item(inflight)
                if kind == "wake":
                    if self._stop_event.is_set():
                        return True
                    continue
                if kind == "payload":
                    raise TransportError(
                        "continuous changes request returned a document instead of a stream"
                    )
                if kind == "eof":
                    events = decoder.finish()
                else:
                    assert isinstance(value, bytes)
                    events = decoder.feed(value)
                for event in events:
                    if isinstance(event, Heartbeat):
                        self._metrics.inc_heartbeats()
                        self._record_progress()
                        logger.debug("heartbeat received")
                        continue
                    if isinstance(event, FeedEnd):
                        self._cursor.advance([], event.last_seq)
                        self._record_progress()
                        ended = True
                        continue
                    if self._stop_event.is_set():
                        return True
                    self._cursor.advance([event])
                    self._metrics.inc_records()
                    self._record_progress()
                    yield event
                    if self._cursor.exhausted():
                        return True
                if kind == "eof":
                    break
        finally:
            self._abandon_inflight()
        if not ended:
            raise TransportError("continuous changes feed closed without last_seq")
        return False


__all__ = ["ChangesFollower", "FeedResponse", "FeedTransport", "FollowerMetrics"]

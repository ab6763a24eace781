import pytest

from changefeed_follower.backoff import BackoffPolicy, RetryBudget
from changefeed_follower.errors import (
    AuthError,
    ClientRequestError,
    FeedCancelledError,
    FeedError,
    ProtocolError,
    RateLimitError,
    ServerError,
    StallTimeoutError,
    TransportError,
)
from changefeed_follower.models import FailureClass


@pytest.mark.unit
@pytest.mark.parametrize(
    "error, expected",
    [
        (TransportError("reset"), FailureClass.RETRYABLE),
        (StallTimeoutError("stalled"), FailureClass.RETRYABLE),
        (ServerError("boom", status_code=503), FailureClass.RETRYABLE),
        (RateLimitError("slow down"), FailureClass.RETRYABLE),
        (ProtocolError("garbled"), FailureClass.RETRYABLE),
        (AuthError("nope", status_code=401), FailureClass.TERMINAL),
        (ClientRequestError("bad", status_code=400), FailureClass.TERMINAL),
        (FeedCancelledError("cancelled"), FailureClass.TERMINAL),
        (FeedError("unknown"), FailureClass.TERMINAL),
        (KeyError("x"), FailureClass.TERMINAL),
    ],
)
def test_classification(error, expected):
    assert BackoffPolicy().classify(error) is expected


@pytest.mark.unit
def test_delays_grow_exponentially_and_are_capped():
    policy = BackoffPolicy(min_delay=0.5, max_delay=5.0, jitter=0.0)
    delays = [policy.next_delay(attempt) for attempt in range(6)]
    assert delays == [0.5, 1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.unit
def test_jitter_stays_within_bounds_and_cap():
    low = BackoffPolicy(min_delay=1.0, max_delay=10.0, jitter=0.5, random_fn=lambda: 0.0)
    high = BackoffPolicy(min_delay=1.0, max_delay=10.0, jitter=0.5, random_fn=lambda: 1.0)

    assert low.next_delay(1) == pytest.approx(1.0)
    assert high.next_delay(1) == pytest.approx(3.0)
    assert high.next_delay(10) == pytest.approx(10.0)


@pytest.mark.unit
def test_huge_attempt_counts_do_not_overflow():
    policy = BackoffPolicy(min_delay=0.1, max_delay=30.0, jitter=0.0)
    assert policy.next_delay(5000) == 30.0


@pytest.mark.unit
def test_rate_limit_retry_after_is_honoured_up_to_the_cap():
    policy = BackoffPolicy(min_delay=0.1, max_delay=20.0, jitter=0.0)
    assert policy.delay_for(RateLimitError("slow", retry_after=3.0), 0) == 3.0
    assert policy.delay_for(RateLimitError("slow", retry_after=90.0), 0) == 20.0
    assert policy.delay_for(ServerError("boom"), 0) == pytest.approx(0.1)


@pytest.mark.unit
def test_error_tolerance_window():
    assert BackoffPolicy().tolerance_exceeded(1e9) is False

    zero = BackoffPolicy(error_tolerance_seconds=0)
    assert zero.tolerance_exceeded(0.0) is True

    windowed = BackoffPolicy(error_tolerance_seconds=5)
    assert windowed.tolerance_exceeded(5.0) is False
    assert windowed.tolerance_exceeded(5.1) is True


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs",
    [
        {"min_delay": 0},
        {"min_delay": 2.0, "max_delay": 1.0},
        {"multiplier": 0.5},
        {"jitter": 1.5},
        {"error_tolerance_seconds": -1},
    ],
)
def test_invalid_policy_arguments(kwargs):
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)


@pytest.mark.unit
def test_retry_budget_tracks_streak_and_resets():
    budget = RetryBudget()
    budget.record(FailureClass.RETRYABLE, 0.2, now=10.0)
    budget.record(FailureClass.RETRYABLE, 0.4, now=12.0)

    assert budget.attempt == 2
    assert budget.next_delay == 0.4
    assert budget.failing_since == 10.0
    assert budget.last_failure_class is FailureClass.RETRYABLE

    budget.reset()
    assert budget == RetryBudget()

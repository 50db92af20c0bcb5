import threading
import time

import pytest

from paper_advisor.errors import CircuitOpenError, StageBusyError
from paper_advisor.resilience import CircuitBreaker, KeyedLocks, SingleFlight, retry_with_backoff


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class MaxRng:
    """Always picks the upper end of the jitter window."""

    def uniform(self, low: float, high: float) -> float:
        return high


def _boom():
    raise ConnectionError("down")


def test_breaker_opens_after_consecutive_failures():
    clock = FakeClock()
    opened = []
    breaker = CircuitBreaker("feed", failure_threshold=3, cooldown_seconds=60, success_threshold=2, clock=clock, on_open=opened.append)

    for _ in range(3):
        with pytest.raises(ConnectionError):
            breaker.call(_boom)

    assert breaker.state == "open"
    assert opened == ["feed"]
    with pytest.raises(CircuitOpenError) as info:
        breaker.call(lambda: "never")
    assert info.value.retry_in_seconds == 60


def test_success_resets_the_failure_streak():
    breaker = CircuitBreaker("feed", failure_threshold=2, cooldown_seconds=60, clock=FakeClock())

    with pytest.raises(ConnectionError):
        breaker.call(_boom)
    breaker.call(lambda: "ok")
    with pytest.raises(ConnectionError):
        breaker.call(_boom)

    assert breaker.state == "closed"


def test_half_open_closes_after_enough_trial_calls():
    clock = FakeClock()
    breaker = CircuitBreaker("feed", failure_threshold=1, cooldown_seconds=30, success_threshold=2, clock=clock)
    with pytest.raises(ConnectionError):
        breaker.call(_boom)

    clock.now += 30
    assert breaker.state == "half_open"
    assert breaker.call(lambda: 1) == 1
    assert breaker.state == "half_open"
    breaker.call(lambda: 2)
    assert breaker.state == "closed"


def test_half_open_failure_reopens():
    clock = FakeClock()
    opened = []
    breaker = CircuitBreaker("feed", failure_threshold=1, cooldown_seconds=30, clock=clock, on_open=opened.append)
    with pytest.raises(ConnectionError):
        breaker.call(_boom)
    clock.now += 31

    with pytest.raises(ConnectionError):
        breaker.call(_boom)

    assert breaker.state == "open"
    assert opened == ["feed", "feed"]


def test_retry_uses_capped_exponential_backoff():
    calls = []
    delays = []

    def flaky():
        calls.append(1)
        if len(calls) < 4:
            raise ConnectionError("try again")
        return "done"

    result = retry_with_backoff(
        flaky,
        label="flaky",
        max_attempts=5,
        base_delay=1.0,
        max_delay=3.0,
        sleep=delays.append,
        rng=MaxRng(),
    )

    assert result == "done"
    assert delays == [1.0, 2.0, 3.0]


def test_retry_gives_up_after_max_attempts():
    delays = []

    with pytest.raises(ConnectionError):
        retry_with_backoff(_boom, label="boom", max_attempts=3, base_delay=0.5, max_delay=10, sleep=delays.append)

    assert len(delays) == 2
    assert all(0 <= d <= 1.0 for d in delays)


def test_retry_stops_at_the_deadline():
    calls = []

    def failing():
        calls.append(1)
        raise ConnectionError("slow upstream")

    with pytest.raises(ConnectionError):
        retry_with_backoff(
            failing,
            label="late",
            max_attempts=5,
            base_delay=1.0,
            rng=MaxRng(),
            sleep=lambda _: None,
            deadline=time.monotonic() + 0.5,
        )

    assert len(calls) == 1


def test_retry_does_not_retry_unlisted_errors():
    calls = []

    def bad():
        calls.append(1)
        raise KeyError("schema")

    with pytest.raises(KeyError):
        retry_with_backoff(bad, label="bad", max_attempts=3, retry_on=(ConnectionError,), sleep=lambda _: None)

    assert len(calls) == 1


def test_open_breaker_is_never_retried():
    calls = []
    breaker = CircuitBreaker("feed", failure_threshold=2, cooldown_seconds=60, clock=FakeClock())

    def failing():
        calls.append(1)
        raise ConnectionError("down")

    with pytest.raises(CircuitOpenError):
        retry_with_backoff(failing, label="feed", max_attempts=5, breaker=breaker, sleep=lambda _: None)

    assert len(calls) == 2


def test_single_flight_refuses_overlap_and_releases():
    flight = SingleFlight("discovery")

    with flight.hold():
        assert flight.busy
        with pytest.raises(StageBusyError) as info:
            with flight.hold():
                pass
        assert info.value.stage == "discovery"

    assert not flight.busy
    with flight.hold():
        pass


def test_single_flight_releases_after_errors():
    flight = SingleFlight("monitor")

    with pytest.raises(ValueError):
        with flight.hold():
            raise ValueError("stage failed")

    assert not flight.busy


def test_keyed_locks_share_one_lock_per_key():
    locks = KeyedLocks()
    seen = []

    def grab():
        seen.append(locks.get("default"))

    threads = [threading.Thread(target=grab) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(lock is seen[0] for lock in seen)
    assert locks.get("other") is not seen[0]

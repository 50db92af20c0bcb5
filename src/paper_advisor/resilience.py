from __future__ import annotations

import random
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from loguru import logger

from .errors import CircuitOpenError, StageBusyError
from .settings import settings


T = TypeVar("T")


class CircuitBreaker:
    """Network circuit breaker for one external dependency.

    closed -> open after ``failure_threshold`` consecutive failures; while open
    every call fails fast with CircuitOpenError until ``cooldown_seconds`` have
    passed; then half_open lets trial calls through and closes again after
    ``success_threshold`` consecutive successes. Any half-open failure reopens.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        success_threshold: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_open: Callable[[str], None] | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold or settings.breaker_failure_threshold
        self.cooldown_seconds = cooldown_seconds if cooldown_seconds is not None else settings.breaker_cooldown_seconds
        self.success_threshold = success_threshold or settings.breaker_success_threshold
        self._clock = clock
        self._on_open = on_open
        self._lock = threading.Lock()
        self._state = "closed"
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        with self._lock:
            self._refresh()
            return self._state

    def _refresh(self) -> None:
        if self._state == "open" and self._clock() - self._opened_at >= self.cooldown_seconds:
            self._state = "half_open"
            self._successes = 0
            logger.info("Circuit '{}' half-open; probing", self.name)

    def before_call(self) -> None:
        with self._lock:
            self._refresh()
            if self._state == "open":
                remaining = self.cooldown_seconds - (self._clock() - self._opened_at)
                raise CircuitOpenError(self.name, max(0.0, remaining))

    def record_success(self) -> None:
        with self._lock:
            if self._state == "half_open":
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._state = "closed"
                    self._failures = 0
                    logger.info("Circuit '{}' closed", self.name)
                return
            self._failures = 0

    def record_failure(self) -> None:
        opened = False
        with self._lock:
            if self._state == "half_open":
                self._trip()
                opened = True
            else:
                self._failures += 1
                if self._state == "closed" and self._failures >= self.failure_threshold:
                    self._trip()
                    opened = True
        if opened and self._on_open:
            self._on_open(self.name)

    def _trip(self) -> None:
        self._state = "open"
        self._opened_at = self._clock()
        self._successes = 0
        logger.warning("Circuit '{}' opened for {:.0f}s", self.name, self.cooldown_seconds)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        self.before_call()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


def retry_with_backoff(
    func: Callable[[], T],
    *,
    label: str,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    breaker: CircuitBreaker | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
    deadline: float | None = None,
) -> T:
    """Call ``func`` with bounded attempts, exponential backoff and full jitter.

    An open breaker is never retried; the CircuitOpenError propagates at once.
    With a ``deadline`` (a ``time.monotonic()`` value) no retry starts after it.
    """
    attempts = max_attempts or settings.retry_max_attempts
    base = settings.retry_base_delay_seconds if base_delay is None else base_delay
    cap = settings.retry_max_delay_seconds if max_delay is None else max_delay
    rng = rng or random.Random()
    last_exc: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            if breaker is not None:
                return breaker.call(func)
            return func()
        except CircuitOpenError:
            raise
        except retry_on as exc:
            last_exc = exc
            logger.warning("{} failed attempt {}/{}: {}", label, attempt, attempts, exc)
            if attempt >= attempts:
                break
            delay = rng.uniform(0, min(cap, base * (2 ** (attempt - 1))))
            if deadline is not None and time.monotonic() + delay >= deadline:
                logger.warning("{} out of time after attempt {}/{}", label, attempt, attempts)
                break
            sleep(delay)

    assert last_exc is not None
    raise last_exc


class SingleFlight:
    """Non-blocking guard: at most one run of a named stage at a time."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise StageBusyError(self.name)
        try:
            yield
        finally:
            self._lock.release()


class KeyedLocks:
    """One re-entrant lock per key, created lazily."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

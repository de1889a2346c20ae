"""
Resilience patterns for provider calls
======================================
- Circuit Breaker: per-provider fail-fast switch with a single half-open trial call
- Retry with Exponential Backoff: jittered, only for transient failures
"""

import time
import random
import logging
import threading
import functools
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from miimii.errors import CircuitOpenError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


# ============================================================================
# CIRCUIT BREAKER PATTERN
# ============================================================================

class CircuitState(Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, rejecting requests
    HALF_OPEN = "half_open"  # One trial call in flight


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    After ``failure_threshold`` consecutive failures the breaker opens and
    rejects calls for ``recovery_timeout`` seconds. The first call after the
    cooldown is let through as a trial; every other call keeps failing fast
    until the trial reports back.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN and self._cooled_down():
                return CircuitState.HALF_OPEN
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _cooled_down(self) -> bool:
        return self._opened_at is not None and self.clock() - self._opened_at >= self.recovery_timeout

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN and self._cooled_down():
                self._state = CircuitState.HALF_OPEN
                logger.info(f"Circuit breaker {self.name} HALF_OPEN, letting one call through")
                return True
            return False

    def record_failure(self, exception: Exception = None) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit breaker {self.name} OPEN after {self._failure_count} failures: {exception}"
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self.clock()

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit breaker {self.name} reset to CLOSED")
            self._failure_count = 0
            self._state = CircuitState.CLOSED
            self._opened_at = None

    def call(self, func: Callable, *args, is_failure: Callable[[BaseException], bool] = None, **kwargs):
        if not self.allow_request():
            logger.warning(f"Circuit breaker {self.name} OPEN, rejecting {getattr(func, '__name__', 'call')}")
            raise CircuitOpenError(f"{self.name} is temporarily unavailable")
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if is_failure is None or is_failure(e):
                self.record_failure(e)
            else:
                self.record_success()
            raise
        self.record_success()
        return result

    def __call__(self, func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    def snapshot(self) -> Dict[str, Any]:
        return {"state": self.state.value, "failures": self._failure_count}


# ============================================================================
# RETRY WITH EXPONENTIAL BACKOFF
# ============================================================================

class TransientHTTPError(Exception):
    """A response whose status code is worth retrying."""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, TransientHTTPError):
        return error.status_code in RETRYABLE_STATUS or error.status_code >= 500
    return isinstance(error, (requests.ConnectionError, requests.Timeout))


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay / 2 + random.uniform(0, delay / 2)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator for retrying functions with jittered exponential backoff.

    Args:
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry (seconds)
        max_delay: Ceiling for any single delay
        should_retry: Predicate deciding whether an exception is transient
        sleep: Injected for tests
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not should_retry(e) or attempt == max_retries:
                        if attempt:
                            logger.error(f"Giving up on {func.__name__} after {attempt + 1} attempts: {e}")
                        raise
                    delay = backoff_delay(attempt, base_delay, max_delay)
                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries + 1} failed for {func.__name__}: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    sleep(delay)
        return wrapper
    return decorator

"""
Circuit breaker for the text-generation service.

Tracks call outcomes in a rolling time window and stops calls to the service
when it is failing persistently. State is process-local; every instance of
the application keeps its own view of dependency health.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for opening and resetting the breaker."""
    failure_threshold: int = 5
    reset_timeout_ms: int = 60000
    monitoring_window_ms: int = 300000
    failure_rate_threshold: float = 0.5
    minimum_calls: int = 10

    def __post_init__(self):
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if self.reset_timeout_ms < 0:
            raise ValueError("reset_timeout_ms must be >= 0")
        if self.monitoring_window_ms <= 0:
            raise ValueError("monitoring_window_ms must be > 0")
        if not 0 < self.failure_rate_threshold <= 1:
            raise ValueError("failure_rate_threshold must be in (0, 1]")
        if self.minimum_calls <= 0:
            raise ValueError("minimum_calls must be > 0")


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    """Point-in-time view of the breaker for observability."""
    is_open: bool
    failure_count: int
    last_failure_time: Optional[float]
    next_attempt_time: Optional[float]
    window_size: int


class CircuitBreaker:
    """Closed/open breaker with a time-based reset.

    Once the reset timeout elapses, the next can_execute() call closes the
    breaker and lets exactly that call through as a probe. The window is
    re-evaluated on the call after it.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the breaker.

        Args:
            config: Breaker thresholds (defaults used if omitted)
            clock: Time source in seconds, injectable for tests
        """
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._calls: Deque[Tuple[float, bool]] = deque()
        self._is_open = False
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time: Optional[float] = None

    @property
    def is_open(self) -> bool:
        """Current open flag, without purging or resetting anything."""
        with self._lock:
            return self._is_open

    def can_execute(self) -> bool:
        """Decide whether a call to the service may proceed."""
        with self._lock:
            now = self._clock()
            self._purge(now)

            if self._is_open and now >= self._next_attempt_time:
                self._reset_locked()
                logger.info("Circuit breaker reset after cool-down; allowing probe call")
                return True

            total = len(self._calls)
            if not self._is_open and total >= self.config.minimum_calls:
                failures = sum(1 for _, success in self._calls if not success)
                if failures / total > self.config.failure_rate_threshold:
                    logger.warning(
                        "Circuit breaker opening: %d/%d calls failed in monitoring window",
                        failures, total
                    )
                    self._open_locked(now)

            return not self._is_open

    def on_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._calls.append((self._clock(), True))
            if self._failure_count > 0:
                self._failure_count -= 1

    def on_failure(self) -> None:
        """Record a failed call, opening the breaker at the hard threshold."""
        with self._lock:
            now = self._clock()
            self._calls.append((now, False))
            self._failure_count += 1
            self._last_failure_time = now
            if not self._is_open and self._failure_count >= self.config.failure_threshold:
                logger.warning(
                    "Circuit breaker opening: %d failures reached threshold",
                    self._failure_count
                )
                self._open_locked(now)

    def get_state(self) -> CircuitBreakerSnapshot:
        with self._lock:
            return CircuitBreakerSnapshot(
                is_open=self._is_open,
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
                next_attempt_time=self._next_attempt_time,
                window_size=len(self._calls)
            )

    def reset(self) -> None:
        """Manually close the breaker and forget recorded calls."""
        with self._lock:
            self._reset_locked()
            self._calls.clear()

    def _purge(self, now: float) -> None:
        window = self.config.monitoring_window_ms / 1000.0
        while self._calls and now - self._calls[0][0] >= window:
            self._calls.popleft()

    def _open_locked(self, now: float) -> None:
        self._is_open = True
        self._next_attempt_time = now + self.config.reset_timeout_ms / 1000.0

    def _reset_locked(self) -> None:
        self._is_open = False
        self._failure_count = 0
        self._last_failure_time = None
        self._next_attempt_time = None

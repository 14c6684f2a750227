"""
Retry policy with exponential backoff.

Computes backoff delays and drives the bounded retry loop around a single
call to the generation service. Retryability is decided from the normalized
ServiceFailure only.
"""

import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

from .circuit_breaker import CircuitBreaker
from .errors import CircuitOpenError, FailureKind, ServiceError, ServiceFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for calls to the generation service."""
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.1

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(self, attempt_index: int, rng: Callable[[], float] = random.random) -> int:
        """Delay in milliseconds to wait after the given attempt fails.

        Args:
            attempt_index: Zero-based index of the attempt that just failed
            rng: Uniform [0, 1) source used for jitter

        Returns:
            min(base * multiplier ** attempt, max_delay), jittered by up to
            +/- jitter_ratio when jitter is enabled
        """
        delay = min(
            self.base_delay_ms * (self.backoff_multiplier ** attempt_index),
            self.max_delay_ms
        )
        if self.jitter:
            spread = delay * self.jitter_ratio
            delay += (rng() * 2 - 1) * spread
        return max(0, int(delay))

    def is_retryable(self, failure: ServiceFailure) -> bool:
        return failure.retryable


@dataclass(frozen=True)
class RetryAttempt:
    """One call to the service and what followed it."""
    attempt: int
    delay_ms: int
    duration_ms: int
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class RetryOutcome:
    """Result of the whole retry loop."""
    success: bool
    text: Optional[str] = None
    failure: Optional[ServiceFailure] = None
    attempts: int = 0
    total_duration_ms: int = 0
    history: List[RetryAttempt] = field(default_factory=list)


def _elapsed_ms(clock: Callable[[], float], start: float) -> int:
    return int(round((clock() - start) * 1000))


def execute_with_retry(
    call: Callable[[], str],
    policy: RetryPolicy,
    breaker: Optional[CircuitBreaker] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    deadline: Optional[float] = None,
    rng: Callable[[], float] = random.random
) -> RetryOutcome:
    """Run `call` until it succeeds or retrying is no longer allowed.

    Only ServiceError is handled here; anything else is a defect and
    propagates to the caller. Each attempt's outcome is recorded on the
    breaker. Sleeps happen between attempts only, so a deadline never
    interrupts a request in flight.

    Args:
        call: Zero-argument callable performing one service request
        policy: Backoff and attempt limits
        breaker: Breaker to record outcomes on and to consult between attempts
        sleep: Blocking sleep in seconds
        clock: Time source in seconds, same base as `deadline`
        deadline: Absolute `clock()` time after which no retry is started
        rng: Jitter source

    Returns:
        RetryOutcome describing the final result and every attempt
    """
    start = clock()
    history: List[RetryAttempt] = []
    failure: Optional[ServiceFailure] = None

    for attempt in range(policy.total_attempts):
        attempt_start = clock()
        logger.debug("Generation attempt %d/%d", attempt + 1, policy.total_attempts)
        try:
            text = call()
        except ServiceError as exc:
            failure = exc.failure
            if breaker is not None:
                breaker.on_failure()
            history.append(RetryAttempt(
                attempt=attempt,
                delay_ms=0,
                duration_ms=_elapsed_ms(clock, attempt_start),
                error=failure.raw_message
            ))
            logger.warning(
                "Generation attempt %d/%d failed (%s, retryable=%s): %s",
                attempt + 1, policy.total_attempts,
                failure.kind.value, failure.retryable, failure.raw_message
            )

            if not policy.is_retryable(failure) or attempt == policy.total_attempts - 1:
                break

            delay_ms = policy.compute_delay(attempt, rng)
            if deadline is not None and clock() + delay_ms / 1000.0 >= deadline:
                failure = ServiceFailure(
                    kind=FailureKind.DEADLINE_EXCEEDED,
                    retryable=False,
                    raw_message=f"Deadline exceeded after {attempt + 1} attempts: {failure.raw_message}",
                    http_status=failure.http_status,
                    code=failure.code
                )
                break

            history[-1] = replace(history[-1], delay_ms=delay_ms)
            logger.info("Waiting %dms before retry", delay_ms)
            sleep(delay_ms / 1000.0)

            if breaker is not None and breaker.is_open:
                failure = CircuitOpenError().failure
                break
            continue

        if breaker is not None:
            breaker.on_success()
        history.append(RetryAttempt(
            attempt=attempt,
            delay_ms=0,
            duration_ms=_elapsed_ms(clock, attempt_start)
        ))
        return RetryOutcome(
            success=True,
            text=text,
            attempts=attempt + 1,
            total_duration_ms=_elapsed_ms(clock, start),
            history=history
        )

    return RetryOutcome(
        success=False,
        failure=failure,
        attempts=len(history),
        total_duration_ms=_elapsed_ms(clock, start),
        history=history
    )

"""
Letter generation orchestrator.

Sequences allowance deduction, letter status transitions, the guarded call
to the generation service, refund on failure and audit emission.

Protocol for generate_letter:
1. Validate input and the letter's current status (nothing touched yet)
2. Consult the circuit breaker (fail fast before any deduction)
3. Check and deduct one credit
4. Move the letter to generating (committed before the first attempt)
5. Call the service through the retry policy
6. Success: store content, move to pending_review, audit, count generation
7. Failure: move to failed, refund the credit, audit the reason

Every call that gets past step 3 ends either in pending_review with the
credit consumed, or in failed with the credit refunded.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from letter_guard.sdk.openai_client import DEFAULT_MODEL, GenerationRequest, TextGenerator
from letter_guard.storage.audit import AuditLog
from letter_guard.storage.ledger import AllowanceLedger
from letter_guard.storage.models import AuditEntry
from letter_guard.storage.repository import LetterRepository

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerSnapshot
from .errors import (
    AllowanceExhaustedError,
    CircuitOpenError,
    FailureKind,
    InvalidTransitionError,
    LedgerUnavailableError,
    ServiceFailure,
)
from .prompts import DEFAULT_SYSTEM_PROMPT, GenerationParams, build_prompt, ensure_valid
from .retry import RetryAttempt, RetryPolicy, execute_with_retry
from .state_machine import LetterStatus, validate_transition

logger = logging.getLogger(__name__)

HEALTH_CHECK_PROMPT = "Respond with exactly: OK"
HEALTH_CHECK_SYSTEM = "You are a health check service."


@dataclass(frozen=True)
class GenerationSettings:
    """Model parameters for letter generation."""
    model: str = DEFAULT_MODEL
    temperature: float = 0.7
    max_tokens: int = 2048
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    def __post_init__(self):
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")


@dataclass
class GenerationResult:
    """Outcome of a generate_letter call that reached the service stage."""
    letter_id: str
    status: LetterStatus
    content: Optional[str] = None
    error: Optional[ServiceFailure] = None
    attempts: int = 0
    duration_ms: int = 0
    history: Optional[List[RetryAttempt]] = None

    @property
    def success(self) -> bool:
        return self.status == LetterStatus.PENDING_REVIEW


@dataclass(frozen=True)
class HealthReport:
    """Result of the generation service health probe."""
    healthy: bool
    response_time_ms: int
    error: Optional[str] = None


class GenerationOrchestrator:
    """Owns the resilience layer and drives letter generation.

    One instance per process is expected. The circuit breaker it holds is
    this process's view of the generation service's health.
    """

    def __init__(
        self,
        ledger: AllowanceLedger,
        letters: LetterRepository,
        audit: AuditLog,
        generator: TextGenerator,
        retry_policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        settings: Optional[GenerationSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random
    ):
        self.ledger = ledger
        self.letters = letters
        self.audit = audit
        self.generator = generator
        self.retry_policy = retry_policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker(CircuitBreakerConfig(), clock=clock)
        self.settings = settings or GenerationSettings()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    def generate_letter(
        self,
        owner_id: str,
        letter_id: str,
        params: GenerationParams,
        timeout: Optional[float] = None
    ) -> GenerationResult:
        """Generate content for a letter, consuming one credit on success.

        Args:
            owner_id: Owner requesting the generation
            letter_id: Letter in draft or failed status
            params: Letter type and intake data
            timeout: Seconds after which no further retry is started

        Returns:
            GenerationResult with status pending_review, or failed with the
            normalized failure (the credit has already been refunded)

        Raises:
            ValidationError: Malformed input or unknown letter
            InvalidTransitionError: Letter cannot move to generating
            CircuitOpenError: Service is considered down; nothing was deducted
            AllowanceExhaustedError: No credits left; nothing was deducted
            LedgerUnavailableError: Allowance store unreachable. If this happens
                while recording a failure, the letter stays in generating
                with its credit reserved until the stale generation sweep
                refunds it
        """
        ensure_valid(params)
        letter = self.letters.require_letter(letter_id, owner_id)
        validate_transition(letter.status, LetterStatus.GENERATING, letter_id)

        if not self.breaker.can_execute():
            logger.warning("Rejecting generation for letter %s: circuit breaker open", letter_id)
            raise CircuitOpenError()

        eligibility = self.ledger.check_and_reserve(owner_id)
        if not eligibility.allowed or not self.ledger.deduct(owner_id):
            logger.info("Allowance exhausted for owner %s", owner_id)
            raise AllowanceExhaustedError(owner_id, eligibility.remaining)

        previous_status = letter.status
        try:
            moved = self.letters.compare_and_set_status(
                letter_id, previous_status, LetterStatus.GENERATING,
                credit_reserved=True
            )
        except Exception:
            self.ledger.refund(owner_id, 1)
            raise
        if not moved:
            self.ledger.refund(owner_id, 1)
            raise InvalidTransitionError(
                letter_id, previous_status.value, LetterStatus.GENERATING.value,
                f"Letter {letter_id} changed status concurrently; generation not started"
            )
        self._audit(
            letter_id, "generation_started", previous_status, LetterStatus.GENERATING,
            "Letter generation started"
        )

        deadline = self._clock() + timeout if timeout is not None else None
        request = GenerationRequest(
            prompt=build_prompt(params),
            system=self.settings.system_prompt,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            model=self.settings.model
        )

        try:
            outcome = execute_with_retry(
                lambda: self.generator.generate(request),
                self.retry_policy,
                breaker=self.breaker,
                sleep=self._sleep,
                clock=self._clock,
                deadline=deadline,
                rng=self._rng
            )
            if outcome.success:
                stored = self.letters.compare_and_set_status(
                    letter_id, LetterStatus.GENERATING, LetterStatus.PENDING_REVIEW,
                    ai_draft_content=outcome.text,
                    credit_reserved=False
                )
                if not stored:
                    raise InvalidTransitionError(
                        letter_id, LetterStatus.GENERATING.value, LetterStatus.PENDING_REVIEW.value,
                        f"Letter {letter_id} left generating before content was stored"
                    )
        except Exception as e:
            self._fail_generation(letter_id, f"Generation failed: {e}", {
                "error_type": type(e).__name__,
            })
            raise

        if not outcome.success:
            failure = outcome.failure
            self._fail_generation(
                letter_id,
                f"Generation failed: {failure.raw_message}",
                {**failure.to_dict(), "attempts": outcome.attempts}
            )
            return GenerationResult(
                letter_id=letter_id,
                status=LetterStatus.FAILED,
                error=failure,
                attempts=outcome.attempts,
                duration_ms=outcome.total_duration_ms,
                history=outcome.history
            )

        self._audit(
            letter_id, "created", LetterStatus.GENERATING, LetterStatus.PENDING_REVIEW,
            "Letter generated successfully by AI",
            {"attempts": outcome.attempts, "duration_ms": outcome.total_duration_ms}
        )
        try:
            self.ledger.increment_total_generated(owner_id)
        except Exception:
            logger.exception("Failed to increment lifetime generation count for %s", owner_id)

        logger.info(
            "Letter %s generated in %d attempt(s), %dms",
            letter_id, outcome.attempts, outcome.total_duration_ms
        )
        return GenerationResult(
            letter_id=letter_id,
            status=LetterStatus.PENDING_REVIEW,
            content=outcome.text,
            attempts=outcome.attempts,
            duration_ms=outcome.total_duration_ms,
            history=outcome.history
        )

    def _fail_generation(self, letter_id: str, reason: str, metadata: dict) -> None:
        """Move a generating letter to failed and return its credit.

        The status change and the refund commit together, and only while the
        letter still holds a reserved credit, so a concurrent sweep cannot
        refund the same credit twice. If the store fails here the letter is
        left in generating for the stale generation sweep.
        """
        if not self.letters.fail_and_refund(letter_id):
            logger.error("Letter %s not in generating during failure handling", letter_id)
            return
        self._audit(
            letter_id, "generation_failed", LetterStatus.GENERATING, LetterStatus.FAILED,
            reason, metadata
        )
        logger.warning("Letter %s failed: %s", letter_id, reason)

    def _audit(
        self,
        letter_id: str,
        action: str,
        old_status: LetterStatus,
        new_status: LetterStatus,
        notes: str,
        metadata: Optional[dict] = None
    ) -> None:
        self.audit.append(AuditEntry(
            letter_id=letter_id,
            action=action,
            old_status=old_status.value,
            new_status=new_status.value,
            notes=notes,
            metadata=metadata
        ))

    def sweep_stale_generations(self, max_age_seconds: float) -> List[str]:
        """Fail and refund letters stuck in generating.

        A letter left in generating longer than `max_age_seconds` belongs to
        a generation whose process died mid-flight.

        Args:
            max_age_seconds: Age of the last update after which a
                generating letter is considered abandoned

        Returns:
            Ids of the letters that were swept
        """
        cutoff = datetime.now() - timedelta(seconds=max_age_seconds)
        swept = []
        for letter in self.letters.list_letters(
            status=LetterStatus.GENERATING, updated_before=cutoff, limit=1000
        ):
            try:
                moved = self.letters.fail_and_refund(letter.id)
            except LedgerUnavailableError as e:
                logger.warning("Could not sweep letter %s, leaving it for the next sweep: %s", letter.id, e)
                continue
            if not moved:
                continue
            self._audit(
                letter.id, "generation_failed", LetterStatus.GENERATING, LetterStatus.FAILED,
                "Generation abandoned; recovered by stale generation sweep",
                {"stale_since": letter.updated_at.isoformat() if letter.updated_at else None}
            )
            swept.append(letter.id)
        if swept:
            logger.warning("Swept %d stale generation(s)", len(swept))
        return swept

    def get_circuit_breaker_state(self) -> CircuitBreakerSnapshot:
        return self.breaker.get_state()

    def health_check(self) -> HealthReport:
        """Probe the generation service with a minimal request.

        Uses a single attempt through the circuit breaker; no credits are
        involved.
        """
        start = self._clock()
        if not self.breaker.can_execute():
            return HealthReport(
                healthy=False,
                response_time_ms=0,
                error=CircuitOpenError().failure.raw_message
            )

        request = GenerationRequest(
            prompt=HEALTH_CHECK_PROMPT,
            system=HEALTH_CHECK_SYSTEM,
            temperature=0,
            max_tokens=10,
            model=self.settings.model
        )
        outcome = execute_with_retry(
            lambda: self.generator.generate(request),
            RetryPolicy(max_retries=0, jitter=False),
            breaker=self.breaker,
            sleep=self._sleep,
            clock=self._clock
        )
        response_time_ms = int(round((self._clock() - start) * 1000))
        if not outcome.success:
            return HealthReport(
                healthy=False,
                response_time_ms=response_time_ms,
                error=outcome.failure.raw_message
            )
        healthy = outcome.text == "OK"
        return HealthReport(
            healthy=healthy,
            response_time_ms=response_time_ms,
            error=None if healthy else f"Unexpected health check response: {outcome.text!r}"
        )

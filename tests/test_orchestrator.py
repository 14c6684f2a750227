"""
Tests for the generation orchestrator.

Exercises the debit/refund protocol end to end against a real SQLite store
with a scripted generation service and a fake clock.
"""

import os
import shutil
import tempfile
import threading
from datetime import datetime, timedelta

import pytest

from letter_guard.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from letter_guard.core.errors import (
    AllowanceExhaustedError,
    CircuitOpenError,
    FailureKind,
    InvalidTransitionError,
    LedgerUnavailableError,
    LetterNotFoundError,
    PermanentServiceError,
    TransientServiceError,
    ValidationError,
    classify_error,
)
from letter_guard.core.orchestrator import GenerationOrchestrator, GenerationSettings
from letter_guard.core.prompts import GenerationParams
from letter_guard.core.retry import RetryPolicy
from letter_guard.core.state_machine import LetterStatus
from letter_guard.storage.audit import AuditLog
from letter_guard.storage.db import get_connection
from letter_guard.storage.ledger import AllowanceLedger
from letter_guard.storage.repository import LetterRepository, initialize_schema

LETTER_TEXT = "Dear Acme Corp,\n\nPlease refund the appliance."


def transient():
    return TransientServiceError(classify_error(http_status=503, message="Service Unavailable"))


def permanent():
    return PermanentServiceError(classify_error(http_status=401, message="Incorrect API key provided"))


class OrchestratorTestBase:
    """Temporary database plus helpers shared by the orchestrator tests."""

    @pytest.fixture(autouse=True)
    def _environment(self, fake_clock, make_generator, valid_intake):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.clock = fake_clock
        self.make_generator = make_generator
        self.params = GenerationParams(letter_type="Demand Letter", intake_data=valid_intake)
        self.ledger = AllowanceLedger(self.db_path)
        self.letters = LetterRepository(self.db_path)
        self.audit = AuditLog(self.db_path)
        yield
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def build(self, outcomes, breaker=None, retry_policy=None, ledger=None, audit=None, settings=None):
        generator = self.make_generator(outcomes)
        orchestrator = GenerationOrchestrator(
            ledger=ledger or self.ledger,
            letters=self.letters,
            audit=audit or self.audit,
            generator=generator,
            retry_policy=retry_policy or RetryPolicy(jitter=False),
            breaker=breaker or CircuitBreaker(clock=self.clock),
            settings=settings,
            sleep=self.clock.sleep,
            clock=self.clock
        )
        return orchestrator, generator

    def new_letter(self, owner="owner-1"):
        return self.letters.create_letter(owner, "Demand Letter", self.params.intake_data)

    def credits(self, owner="owner-1"):
        return self.ledger.get_account(owner).credits_remaining

    def actions(self, letter_id):
        return [entry.action for entry in self.audit.entries_for(letter_id)]


class TestSuccessfulGeneration(OrchestratorTestBase):
    """Test the happy path."""

    def test_success_debits_exactly_one_credit(self):
        self.ledger.open_account("owner-1", credits=3)
        letter = self.new_letter()
        orchestrator, generator = self.build([LETTER_TEXT])

        result = orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert result.success is True
        assert result.status == LetterStatus.PENDING_REVIEW
        assert result.content == LETTER_TEXT
        assert result.attempts == 1
        assert self.credits() == 2

        stored = self.letters.get_letter(letter.id)
        assert stored.status == LetterStatus.PENDING_REVIEW
        assert stored.ai_draft_content == LETTER_TEXT
        assert stored.credit_reserved is False
        assert self.ledger.get_account("owner-1").total_generated == 1
        assert self.actions(letter.id) == ["generation_started", "created"]

    def test_request_uses_settings_and_prompt(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        settings = GenerationSettings(model="gpt-4o", temperature=0.2, max_tokens=512)
        orchestrator, generator = self.build([LETTER_TEXT], settings=settings)

        orchestrator.generate_letter("owner-1", letter.id, self.params)

        request = generator.requests[0]
        assert request.model == "gpt-4o"
        assert request.temperature == 0.2
        assert request.max_tokens == 512
        assert "Sender Name: Jane Doe" in request.prompt
        assert "Demand Letter" in request.prompt

    def test_transient_failures_then_success(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        orchestrator, generator = self.build(
            [transient(), transient(), transient(), LETTER_TEXT],
            retry_policy=RetryPolicy(max_retries=3, jitter=False)
        )

        result = orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert result.success is True
        assert result.attempts == 4
        assert generator.calls == 4
        # 1000 + 2000 + 4000 ms of backoff
        assert result.duration_ms == 7000
        assert self.clock.sleeps == [1.0, 2.0, 4.0]
        assert self.credits() == 0

    def test_unlimited_owner_keeps_balance(self):
        self.ledger.open_account("admin", credits=0, is_unlimited=True)
        letter = self.new_letter(owner="admin")
        orchestrator, _ = self.build([LETTER_TEXT])

        result = orchestrator.generate_letter("admin", letter.id, self.params)

        assert result.success is True
        account = self.ledger.get_account("admin")
        assert account.credits_remaining == 0
        assert account.total_generated == 1

    def test_failed_letter_can_be_generated_again(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        orchestrator, _ = self.build([permanent(), LETTER_TEXT])

        first = orchestrator.generate_letter("owner-1", letter.id, self.params)
        assert first.status == LetterStatus.FAILED
        assert self.credits() == 1

        second = orchestrator.generate_letter("owner-1", letter.id, self.params)
        assert second.status == LetterStatus.PENDING_REVIEW
        assert self.credits() == 0

    def test_audit_failure_does_not_block_generation(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        broken_audit = AuditLog(os.path.join(self.temp_dir, "missing", "audit.db"))
        orchestrator, _ = self.build([LETTER_TEXT], audit=broken_audit)

        result = orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert result.success is True
        assert self.credits() == 0


class TestFailedGeneration(OrchestratorTestBase):
    """Test that every terminal failure refunds the credit."""

    def test_permanent_error_refunds(self):
        self.ledger.open_account("owner-1", credits=2)
        letter = self.new_letter()
        orchestrator, generator = self.build([permanent()])

        result = orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert result.status == LetterStatus.FAILED
        assert result.success is False
        assert result.error.kind == FailureKind.AUTHENTICATION
        assert generator.calls == 1
        assert self.credits() == 2

        stored = self.letters.get_letter(letter.id)
        assert stored.status == LetterStatus.FAILED
        assert stored.credit_reserved is False

        entries = self.audit.entries_for(letter.id)
        assert [e.action for e in entries] == ["generation_started", "generation_failed"]
        assert "Incorrect API key provided" in entries[-1].notes
        assert entries[-1].metadata["kind"] == "authentication"

    def test_retries_exhausted_refunds(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        orchestrator, generator = self.build([transient()])

        result = orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert result.status == LetterStatus.FAILED
        assert result.error.kind == FailureKind.SERVER_ERROR
        assert generator.calls == 4
        assert self.credits() == 1

    def test_timeout_refunds(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        orchestrator, generator = self.build([transient()])

        result = orchestrator.generate_letter("owner-1", letter.id, self.params, timeout=2.5)

        assert result.status == LetterStatus.FAILED
        assert result.error.kind == FailureKind.DEADLINE_EXCEEDED
        assert generator.calls == 2
        assert self.credits() == 1
        assert self.letters.get_letter(letter.id).status == LetterStatus.FAILED

    def test_breaker_opening_mid_generation_refunds(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2), clock=self.clock)
        orchestrator, generator = self.build([transient()], breaker=breaker)

        result = orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert result.status == LetterStatus.FAILED
        assert result.error.kind == FailureKind.CIRCUIT_OPEN
        assert generator.calls == 2
        assert self.credits() == 1

    def test_unexpected_error_refunds_and_propagates(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        orchestrator, _ = self.build([RuntimeError("client bug")])

        with pytest.raises(RuntimeError, match="client bug"):
            orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert self.credits() == 1
        assert self.letters.get_letter(letter.id).status == LetterStatus.FAILED
        assert self.actions(letter.id)[-1] == "generation_failed"


class TestRejectedBeforeDeduction(OrchestratorTestBase):
    """Test paths that must not touch the allowance at all."""

    def test_zero_credits_never_reaches_generating(self):
        self.ledger.open_account("owner-1", credits=0)
        letter = self.new_letter()
        orchestrator, generator = self.build([LETTER_TEXT])

        with pytest.raises(AllowanceExhaustedError):
            orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert generator.calls == 0
        assert self.letters.get_letter(letter.id).status == LetterStatus.DRAFT
        assert self.actions(letter.id) == []
        assert self.credits() == 0

    def test_missing_account_is_exhausted(self):
        letter = self.new_letter()
        orchestrator, _ = self.build([LETTER_TEXT])
        with pytest.raises(AllowanceExhaustedError):
            orchestrator.generate_letter("owner-1", letter.id, self.params)

    def test_validation_error(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        orchestrator, generator = self.build([LETTER_TEXT])
        bad = GenerationParams(letter_type="Demand Letter", intake_data={"senderName": "Jane"})

        with pytest.raises(ValidationError, match="recipientName is required"):
            orchestrator.generate_letter("owner-1", letter.id, bad)

        assert generator.calls == 0
        assert self.credits() == 1

    def test_other_owners_letter(self):
        self.ledger.open_account("owner-2", credits=1)
        letter = self.new_letter(owner="owner-1")
        orchestrator, _ = self.build([LETTER_TEXT])

        with pytest.raises(LetterNotFoundError):
            orchestrator.generate_letter("owner-2", letter.id, self.params)
        assert self.ledger.get_account("owner-2").credits_remaining == 1

    def test_letter_in_review_cannot_be_generated(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        self.letters.compare_and_set_status(letter.id, "draft", "pending_review")
        orchestrator, _ = self.build([LETTER_TEXT])

        with pytest.raises(InvalidTransitionError):
            orchestrator.generate_letter("owner-1", letter.id, self.params)
        assert self.credits() == 1

    def test_open_breaker_fails_fast_without_deduction(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        breaker = CircuitBreaker(clock=self.clock)
        for _ in range(5):
            breaker.on_failure()
        orchestrator, generator = self.build([LETTER_TEXT], breaker=breaker)

        with pytest.raises(CircuitOpenError):
            orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert generator.calls == 0
        assert self.credits() == 1
        assert self.letters.get_letter(letter.id).status == LetterStatus.DRAFT

    def test_ledger_unavailable_denies(self):
        letter = self.new_letter()
        broken = AllowanceLedger(os.path.join(self.temp_dir, "missing", "ledger.db"))
        orchestrator, generator = self.build([LETTER_TEXT], ledger=broken)

        with pytest.raises(LedgerUnavailableError):
            orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert generator.calls == 0
        assert self.letters.get_letter(letter.id).status == LetterStatus.DRAFT


class RefundFailingLedger(AllowanceLedger):
    """Ledger whose standalone refund always fails."""

    def refund(self, owner_id, amount=1):
        raise LedgerUnavailableError("database is locked")


class BlockRefundGenerator:
    """Generator that breaks credit writes before failing permanently."""

    def __init__(self, db_path):
        self.db_path = db_path
        self.calls = 0

    def generate(self, request):
        self.calls += 1
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TRIGGER block_refund BEFORE UPDATE OF credits_remaining
                ON allowance_account
                BEGIN SELECT RAISE(ABORT, 'database is locked'); END
            """)
            conn.commit()
        finally:
            conn.close()
        raise permanent()


class TestRefundDurability(OrchestratorTestBase):
    """Test that a failed generation never loses its credit."""

    def _drop_trigger(self):
        conn = get_connection(self.db_path)
        try:
            conn.execute("DROP TRIGGER block_refund")
            conn.commit()
        finally:
            conn.close()

    def _backdate(self, letter_id, seconds):
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE letter SET updated_at = ? WHERE id = ?",
                ((datetime.now() - timedelta(seconds=seconds)).isoformat(), letter_id)
            )
            conn.commit()
        finally:
            conn.close()

    def test_failure_refund_does_not_depend_on_standalone_refund(self):
        ledger = RefundFailingLedger(self.db_path)
        ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        orchestrator, _ = self.build([permanent()], ledger=ledger)

        result = orchestrator.generate_letter("owner-1", letter.id, self.params)

        assert result.status == LetterStatus.FAILED
        assert self.credits() == 1
        assert self.letters.get_letter(letter.id).credit_reserved is False

    def test_failed_refund_leaves_letter_for_sweep(self):
        self.ledger.open_account("owner-1", credits=1)
        letter = self.new_letter()
        generator = BlockRefundGenerator(self.db_path)
        orchestrator = GenerationOrchestrator(
            ledger=self.ledger,
            letters=self.letters,
            audit=self.audit,
            generator=generator,
            retry_policy=RetryPolicy(jitter=False),
            breaker=CircuitBreaker(clock=self.clock),
            sleep=self.clock.sleep,
            clock=self.clock
        )

        with pytest.raises(LedgerUnavailableError):
            orchestrator.generate_letter("owner-1", letter.id, self.params)

        # Nothing was committed: the reservation is still on the letter
        stranded = self.letters.get_letter(letter.id)
        assert stranded.status == LetterStatus.GENERATING
        assert stranded.credit_reserved is True
        assert self.credits() == 0

        # While the store keeps failing, the sweep leaves the letter alone
        self._backdate(letter.id, 3600)
        assert orchestrator.sweep_stale_generations(600) == []
        assert self.letters.get_letter(letter.id).status == LetterStatus.GENERATING

        self._drop_trigger()
        assert orchestrator.sweep_stale_generations(600) == [letter.id]
        assert self.credits() == 1
        recovered = self.letters.get_letter(letter.id)
        assert recovered.status == LetterStatus.FAILED
        assert recovered.credit_reserved is False

    def test_unlimited_owner_failure_keeps_balance(self):
        self.ledger.open_account("admin", credits=0, is_unlimited=True)
        letter = self.new_letter(owner="admin")
        orchestrator, _ = self.build([permanent()])

        result = orchestrator.generate_letter("admin", letter.id, self.params)

        assert result.status == LetterStatus.FAILED
        assert self.ledger.get_account("admin").credits_remaining == 0


class TestConcurrentGeneration(OrchestratorTestBase):
    """Test two requests racing for the last credit."""

    def test_single_credit_two_letters(self):
        self.ledger.open_account("owner-1", credits=1)
        letters = [self.new_letter(), self.new_letter()]
        orchestrator, _ = self.build([LETTER_TEXT])
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def worker(letter_id):
            barrier.wait()
            try:
                result = orchestrator.generate_letter("owner-1", letter_id, self.params)
                outcome = result.status
            except AllowanceExhaustedError as e:
                outcome = e
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker, args=(l.id,)) for l in letters]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(LetterStatus.PENDING_REVIEW) == 1
        assert sum(isinstance(o, AllowanceExhaustedError) for o in outcomes) == 1
        assert self.credits() == 0


class TestStaleGenerationSweep(OrchestratorTestBase):
    """Test crash recovery for letters stuck in generating."""

    def _strand(self, letter_id, age_seconds):
        """Simulate a process that died after deducting and moving to generating."""
        self.ledger.deduct("owner-1")
        self.letters.compare_and_set_status(letter_id, "draft", "generating", credit_reserved=True)
        updated_at = datetime.now() - timedelta(seconds=age_seconds)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE letter SET updated_at = ? WHERE id = ?",
                (updated_at.isoformat(), letter_id)
            )
            conn.commit()
        finally:
            conn.close()

    def test_sweep_fails_and_refunds_stale_letters(self):
        self.ledger.open_account("owner-1", credits=2)
        stale = self.new_letter()
        self._strand(stale.id, 3600)
        assert self.credits() == 1
        orchestrator, _ = self.build([LETTER_TEXT])

        swept = orchestrator.sweep_stale_generations(600)

        assert swept == [stale.id]
        assert self.credits() == 2
        assert self.letters.get_letter(stale.id).status == LetterStatus.FAILED
        assert self.actions(stale.id) == ["generation_failed"]
        # Nothing left to sweep, and no double refund
        assert orchestrator.sweep_stale_generations(600) == []
        assert self.credits() == 2

    def test_recent_generations_are_left_alone(self):
        self.ledger.open_account("owner-1", credits=2)
        fresh = self.new_letter()
        self._strand(fresh.id, 5)
        orchestrator, _ = self.build([LETTER_TEXT])

        assert orchestrator.sweep_stale_generations(600) == []
        assert self.letters.get_letter(fresh.id).status == LetterStatus.GENERATING
        assert self.credits() == 1


class TestObservability(OrchestratorTestBase):
    """Test breaker state reporting and the health probe."""

    def test_circuit_breaker_state(self):
        breaker = CircuitBreaker(clock=self.clock)
        orchestrator, _ = self.build([LETTER_TEXT], breaker=breaker)
        breaker.on_failure()

        state = orchestrator.get_circuit_breaker_state()
        assert state.is_open is False
        assert state.failure_count == 1

    def test_health_check_healthy(self):
        orchestrator, generator = self.build(["OK"])
        report = orchestrator.health_check()

        assert report.healthy is True
        assert report.error is None
        assert generator.requests[0].max_tokens == 10
        assert generator.requests[0].temperature == 0

    def test_health_check_unexpected_text(self):
        orchestrator, _ = self.build(["Hello there"])
        report = orchestrator.health_check()
        assert report.healthy is False
        assert "Unexpected" in report.error

    def test_health_check_single_attempt(self):
        orchestrator, generator = self.build([transient()])
        report = orchestrator.health_check()

        assert report.healthy is False
        assert report.error == "Service Unavailable"
        assert generator.calls == 1

    def test_health_check_breaker_open(self):
        breaker = CircuitBreaker(clock=self.clock)
        for _ in range(5):
            breaker.on_failure()
        orchestrator, generator = self.build(["OK"], breaker=breaker)

        report = orchestrator.health_check()
        assert report.healthy is False
        assert "Circuit breaker is open" in report.error
        assert generator.calls == 0

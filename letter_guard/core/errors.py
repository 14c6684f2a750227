"""
Error taxonomy and service failure classification.

Every failure from the text-generation service is normalized once, at the
service boundary, into a ServiceFailure. Retry decisions are made from that
normalized shape only, never from transport-specific exception fields.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FailureKind(Enum):
    """Normalized categories of generation failures."""
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    OVERLOADED = "overloaded"
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    INVALID_RESPONSE = "invalid_response"
    CIRCUIT_OPEN = "circuit_open"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    FailureKind.RATE_LIMIT,
    FailureKind.TIMEOUT,
    FailureKind.SERVER_ERROR,
    FailureKind.OVERLOADED,
    FailureKind.CONNECTION,
})

# Provider error codes with a fixed meaning
_CODE_KINDS = {
    "rate_limit_exceeded": FailureKind.RATE_LIMIT,
    "insufficient_quota": FailureKind.RATE_LIMIT,
    "model_overloaded": FailureKind.OVERLOADED,
    "timeout": FailureKind.TIMEOUT,
    "connection_error": FailureKind.CONNECTION,
    "temporary_failure": FailureKind.SERVER_ERROR,
    "openai_error": FailureKind.SERVER_ERROR,
    "invalid_api_key": FailureKind.AUTHENTICATION,
    "invalid_request_error": FailureKind.INVALID_REQUEST,
    "empty_response": FailureKind.INVALID_RESPONSE,
}

# Checked in order; first match wins
_MESSAGE_PATTERNS = (
    ("rate limit", FailureKind.RATE_LIMIT),
    ("timed out", FailureKind.TIMEOUT),
    ("timeout", FailureKind.TIMEOUT),
    ("connection", FailureKind.CONNECTION),
    ("temporary", FailureKind.SERVER_ERROR),
    ("overloaded", FailureKind.OVERLOADED),
    ("service unavailable", FailureKind.SERVER_ERROR),
    ("unavailable", FailureKind.SERVER_ERROR),
)


@dataclass(frozen=True)
class ServiceFailure:
    """Normalized description of a failed call to the generation service."""
    kind: FailureKind
    retryable: bool
    raw_message: str
    http_status: Optional[int] = None
    code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "message": self.raw_message,
            "http_status": self.http_status,
            "code": self.code,
        }


def _kind_from_status(http_status: int) -> Optional[FailureKind]:
    if http_status == 429:
        return FailureKind.RATE_LIMIT
    if http_status == 408:
        return FailureKind.TIMEOUT
    if 500 <= http_status <= 599:
        return FailureKind.SERVER_ERROR
    if http_status in (401, 403):
        return FailureKind.AUTHENTICATION
    if 400 <= http_status <= 499:
        return FailureKind.INVALID_REQUEST
    return None


def classify_error(
    code: Optional[str] = None,
    http_status: Optional[int] = None,
    message: Optional[str] = None
) -> ServiceFailure:
    """Classify a raw service error into a ServiceFailure.

    Precedence is: known error code, then HTTP status, then message
    patterns. Anything unrecognized is UNKNOWN and not retryable.

    Args:
        code: Provider error code, if any
        http_status: HTTP status code, if any
        message: Raw error message

    Returns:
        Normalized ServiceFailure
    """
    raw_message = message or ""
    kind: Optional[FailureKind] = None

    if code:
        kind = _CODE_KINDS.get(code.lower())

    if kind is None and http_status is not None:
        kind = _kind_from_status(http_status)

    if kind is None:
        lowered = raw_message.lower()
        for pattern, pattern_kind in _MESSAGE_PATTERNS:
            if pattern in lowered:
                kind = pattern_kind
                break

    if kind is None:
        kind = FailureKind.UNKNOWN

    return ServiceFailure(
        kind=kind,
        retryable=kind in RETRYABLE_KINDS,
        raw_message=raw_message,
        http_status=http_status,
        code=code
    )


class LetterGuardError(Exception):
    """Base class for all letter_guard errors."""


class ValidationError(LetterGuardError):
    """Malformed input. Never retried and never touches the allowance."""


class LetterNotFoundError(ValidationError):
    """Letter does not exist or is not owned by the caller."""


class AllowanceExhaustedError(LetterGuardError):
    """Owner has no credits left. No deduction has taken place."""
    def __init__(self, owner_id: str, remaining: int = 0):
        super().__init__(f"No letter credits remaining for owner {owner_id}")
        self.owner_id = owner_id
        self.remaining = remaining


class LedgerUnavailableError(LetterGuardError):
    """Backing store for the allowance ledger could not be reached."""


class InvalidTransitionError(LetterGuardError):
    """Attempted a letter status change outside the transition table."""
    def __init__(self, letter_id: Optional[str], current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Invalid transition for letter {letter_id}: {current} -> {target}"
        )
        self.letter_id = letter_id
        self.current = current
        self.target = target


class ServiceError(LetterGuardError):
    """Failure raised at the generation service boundary."""
    def __init__(self, failure: ServiceFailure):
        super().__init__(failure.raw_message or failure.kind.value)
        self.failure = failure


class TransientServiceError(ServiceError):
    """Rate limit, timeout or server-side failure; eligible for retry."""


class PermanentServiceError(ServiceError):
    """Authentication or malformed-request failure; never retried."""


class CircuitOpenError(ServiceError):
    """Circuit breaker rejected the call without contacting the service."""
    def __init__(self, message: str = "Circuit breaker is open - generation service temporarily unavailable"):
        super().__init__(ServiceFailure(
            kind=FailureKind.CIRCUIT_OPEN,
            retryable=False,
            raw_message=message
        ))


def service_error_for(failure: ServiceFailure) -> ServiceError:
    """Build the matching ServiceError subclass for a failure."""
    if failure.kind == FailureKind.CIRCUIT_OPEN:
        return CircuitOpenError(failure.raw_message)
    if failure.retryable:
        return TransientServiceError(failure)
    return PermanentServiceError(failure)

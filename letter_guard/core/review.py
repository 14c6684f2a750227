"""
Reviewer workflow.

Actions an owner or reviewer takes on a generated letter. Each action is a
single compare-and-set against the letter's current status and leaves an
audit entry.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from letter_guard.storage.audit import AuditLog
from letter_guard.storage.models import AuditEntry, Letter
from letter_guard.storage.repository import LetterRepository

from .errors import InvalidTransitionError, ValidationError
from .state_machine import LetterStatus, validate_transition

logger = logging.getLogger(__name__)


class ReviewService:
    """Moves letters through review, approval and completion."""

    def __init__(self, letters: LetterRepository, audit: AuditLog):
        self.letters = letters
        self.audit = audit

    def _transition(
        self,
        letter_id: str,
        target: LetterStatus,
        action: str,
        notes: str,
        performed_by: Optional[str] = None,
        **fields: Any
    ) -> Letter:
        letter = self.letters.require_letter(letter_id)
        validate_transition(letter.status, target, letter_id)
        if not self.letters.compare_and_set_status(letter_id, letter.status, target, **fields):
            raise InvalidTransitionError(
                letter_id, letter.status.value, target.value,
                f"Letter {letter_id} changed status concurrently; {action} not applied"
            )
        self.audit.append(AuditEntry(
            letter_id=letter_id,
            action=action,
            old_status=letter.status.value,
            new_status=target.value,
            notes=notes,
            performed_by=performed_by
        ))
        logger.info("Letter %s: %s -> %s (%s)", letter_id, letter.status.value, target.value, action)
        return self.letters.require_letter(letter_id)

    def submit(self, letter_id: str) -> Letter:
        """Send a draft straight to the review queue."""
        return self._transition(
            letter_id, LetterStatus.PENDING_REVIEW, "submitted",
            "Letter submitted for review"
        )

    def start_review(self, letter_id: str, reviewer: str) -> Letter:
        return self._transition(
            letter_id, LetterStatus.UNDER_REVIEW, "review_started",
            "Reviewer started reviewing the letter",
            performed_by=reviewer,
            reviewed_by=reviewer
        )

    def return_to_queue(self, letter_id: str, reviewer: Optional[str] = None) -> Letter:
        """Put a letter under review back into the pending queue."""
        return self._transition(
            letter_id, LetterStatus.PENDING_REVIEW, "returned_to_queue",
            "Letter returned to the review queue",
            performed_by=reviewer
        )

    def approve(
        self,
        letter_id: str,
        reviewer: str,
        final_content: str,
        notes: Optional[str] = None
    ) -> Letter:
        """Approve a letter with its reviewed final content.

        Raises:
            ValidationError: If final_content is empty
            InvalidTransitionError: If the letter is not awaiting review
        """
        if not final_content or not final_content.strip():
            raise ValidationError("Final content is required for approval")
        fields: Dict[str, Any] = {
            "final_content": final_content,
            "reviewed_by": reviewer,
            "reviewed_at": datetime.now(),
        }
        if notes:
            fields["review_notes"] = notes
        return self._transition(
            letter_id, LetterStatus.APPROVED, "approved",
            notes or "Letter approved",
            performed_by=reviewer,
            **fields
        )

    def reject(self, letter_id: str, reviewer: str, reason: str) -> Letter:
        """Reject a letter, recording why.

        Raises:
            ValidationError: If reason is empty
            InvalidTransitionError: If the letter is not awaiting review
        """
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")
        return self._transition(
            letter_id, LetterStatus.REJECTED, "rejected",
            f"Letter rejected: {reason}",
            performed_by=reviewer,
            rejection_reason=reason,
            reviewed_by=reviewer,
            reviewed_at=datetime.now()
        )

    def complete(self, letter_id: str) -> Letter:
        return self._transition(
            letter_id, LetterStatus.COMPLETED, "completed",
            "Letter marked as completed"
        )

    def resubmit(self, letter_id: str) -> Letter:
        """Return a rejected or failed letter to draft for another attempt."""
        return self._transition(
            letter_id, LetterStatus.DRAFT, "resubmitted",
            "Letter returned to draft for resubmission"
        )

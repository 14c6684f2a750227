"""
Data models for storage layer.

Defines the letter, allowance account and audit trail records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from letter_guard.core.state_machine import LetterStatus


@dataclass(frozen=True)
class Letter:
    """Snapshot of a letter row."""
    id: str
    owner_id: str
    title: str
    letter_type: str
    status: LetterStatus
    intake_data: Dict[str, Any] = field(default_factory=dict)
    ai_draft_content: Optional[str] = None
    final_content: Optional[str] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    credit_reserved: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class AllowanceAccount:
    """Per-owner credit balance.

    credits_remaining never goes below zero. It is only changed through the
    ledger's atomic operations.
    """
    owner_id: str
    credits_remaining: int
    is_unlimited: bool = False
    total_generated: int = 0
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of a letter status change or action."""
    letter_id: str
    action: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    notes: Optional[str] = None
    performed_by: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

"""
Repository pattern for letter data access.

Handles schema creation and letter persistence. Every status change goes
through a single compare-and-set UPDATE so two writers can never both move
a letter out of the same status.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from letter_guard.core.errors import LedgerUnavailableError, LetterNotFoundError
from letter_guard.core.state_machine import LetterStatus, validate_transition

from .db import DEFAULT_DB_PATH, get_connection
from .models import Letter

logger = logging.getLogger(__name__)

# Columns that may be written alongside a status change
_UPDATABLE_FIELDS = frozenset({
    "ai_draft_content",
    "final_content",
    "review_notes",
    "rejection_reason",
    "reviewed_by",
    "reviewed_at",
    "credit_reserved",
})


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the allowance, letter and audit tables if they don't exist.

    letter_audit_trail is append-only. No UPDATE or DELETE operations should
    ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS allowance_account (
                owner_id TEXT PRIMARY KEY,
                credits_remaining INTEGER NOT NULL DEFAULT 0
                    CHECK (credits_remaining >= 0),
                is_unlimited INTEGER NOT NULL DEFAULT 0,
                total_generated INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS letter (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL,
                letter_type TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN (
                    'draft', 'generating', 'pending_review', 'under_review',
                    'approved', 'rejected', 'completed', 'failed'
                )),
                intake_data TEXT NOT NULL DEFAULT '{}',
                ai_draft_content TEXT,
                final_content TEXT,
                review_notes TEXT,
                rejection_reason TEXT,
                reviewed_by TEXT,
                reviewed_at TEXT,
                credit_reserved INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_letter_status_updated
                ON letter (status, updated_at);

            CREATE TABLE IF NOT EXISTS letter_audit_trail (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                letter_id TEXT NOT NULL,
                action TEXT NOT NULL,
                old_status TEXT,
                new_status TEXT,
                notes TEXT,
                performed_by TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_letter(row) -> Letter:
    return Letter(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        letter_type=row["letter_type"],
        status=LetterStatus(row["status"]),
        intake_data=json.loads(row["intake_data"] or "{}"),
        ai_draft_content=row["ai_draft_content"],
        final_content=row["final_content"],
        review_notes=row["review_notes"],
        rejection_reason=row["rejection_reason"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=_parse_datetime(row["reviewed_at"]),
        credit_reserved=bool(row["credit_reserved"]),
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"])
    )


class LetterRepository:
    """Repository for reading letters and changing their status.

    Database errors are propagated unchanged; callers decide how to recover.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def create_letter(
        self,
        owner_id: str,
        letter_type: str,
        intake_data: Optional[Dict[str, Any]] = None,
        title: Optional[str] = None
    ) -> Letter:
        """Create a new letter in draft status.

        Args:
            owner_id: Owner of the letter
            letter_type: Letter template name, e.g. "Demand Letter"
            intake_data: Form data used to build the generation prompt
            title: Display title (derived from type and date if omitted)

        Returns:
            The stored letter
        """
        now = datetime.now()
        letter_id = uuid.uuid4().hex
        title = title or f"{letter_type} - {now.date().isoformat()}"
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO letter
                (id, owner_id, title, letter_type, status, intake_data,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                letter_id,
                owner_id,
                title,
                letter_type,
                LetterStatus.DRAFT.value,
                json.dumps(intake_data or {}),
                now.isoformat(),
                now.isoformat()
            ))
            conn.commit()
        finally:
            conn.close()
        return self.require_letter(letter_id)

    def get_letter(self, letter_id: str) -> Optional[Letter]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM letter WHERE id = ?", (letter_id,)
            ).fetchone()
            return _row_to_letter(row) if row else None
        finally:
            conn.close()

    def require_letter(self, letter_id: str, owner_id: Optional[str] = None) -> Letter:
        """Fetch a letter, optionally checking ownership.

        Raises:
            LetterNotFoundError: If the letter is missing or owned by
                someone else
        """
        letter = self.get_letter(letter_id)
        if letter is None or (owner_id is not None and letter.owner_id != owner_id):
            raise LetterNotFoundError(f"Letter not found: {letter_id}")
        return letter

    def compare_and_set_status(
        self,
        letter_id: str,
        expected: Union[LetterStatus, str],
        target: Union[LetterStatus, str],
        **fields: Any
    ) -> bool:
        """Atomically move a letter from `expected` to `target`.

        The transition is validated against the state machine first. The
        UPDATE only applies while the row still holds `expected`.

        Args:
            letter_id: Letter to update
            expected: Status the caller believes the letter holds
            target: New status
            **fields: Extra columns to write in the same statement

        Returns:
            True if this call performed the transition, False if the letter
            was no longer in `expected`

        Raises:
            InvalidTransitionError: If expected -> target is not permitted
            ValueError: If an unknown column is passed
        """
        target_status = validate_transition(expected, target, letter_id)
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown letter fields: {sorted(unknown)}")

        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [target_status.value, datetime.now().isoformat()]
        for name in sorted(fields):
            value = fields[name]
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, bool):
                value = int(value)
            assignments.append(f"{name} = ?")
            params.append(value)
        params.extend([letter_id, LetterStatus(expected).value])

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE letter SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                params
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def fail_and_refund(self, letter_id: str) -> bool:
        """Move a generating letter to failed and return its reserved credit.

        The status change, the cleared reservation flag and the credit
        increment commit in one transaction. If any part fails the letter
        stays in generating with its reservation, where the stale generation
        sweep can still find it.

        Args:
            letter_id: Letter expected to be in generating

        Returns:
            True if this call moved the letter to failed, False if it was no
            longer generating

        Raises:
            LedgerUnavailableError: If the transaction could not be committed
        """
        validate_transition(LetterStatus.GENERATING, LetterStatus.FAILED, letter_id)
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailableError(f"Allowance store unavailable: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT owner_id, credit_reserved FROM letter WHERE id = ? AND status = ?",
                (letter_id, LetterStatus.GENERATING.value)
            ).fetchone()
            if row is None:
                conn.rollback()
                return False

            now = datetime.now().isoformat()
            conn.execute("""
                UPDATE letter SET status = ?, credit_reserved = 0, updated_at = ?
                WHERE id = ? AND status = ?
            """, (LetterStatus.FAILED.value, now, letter_id, LetterStatus.GENERATING.value))
            if row["credit_reserved"]:
                # Unlimited accounts never had a credit taken
                conn.execute("""
                    UPDATE allowance_account
                    SET credits_remaining = credits_remaining + 1, updated_at = ?
                    WHERE owner_id = ? AND is_unlimited = 0
                """, (now, row["owner_id"]))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerUnavailableError(f"Allowance store unavailable: {e}") from e
        finally:
            conn.close()
        logger.info(
            "Letter %s failed%s", letter_id,
            f"; refunded 1 credit to {row['owner_id']}" if row["credit_reserved"] else ""
        )
        return True

    def list_letters(
        self,
        owner_id: Optional[str] = None,
        status: Optional[Union[LetterStatus, str]] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100
    ) -> List[Letter]:
        """List letters with optional filtering, most recently updated first.

        Args:
            owner_id: Optional filter for a specific owner
            status: Optional filter for a specific status
            updated_before: Only letters last updated before this time
            limit: Maximum number of letters to return

        Returns:
            List of letters
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT * FROM letter"
            params: List[Any] = []
            conditions = []

            if owner_id:
                conditions.append("owner_id = ?")
                params.append(owner_id)
            if status is not None:
                conditions.append("status = ?")
                params.append(LetterStatus(status).value)
            if updated_before is not None:
                conditions.append("updated_at < ?")
                params.append(updated_before.isoformat())

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY updated_at DESC LIMIT ?"
            params.append(limit)

            return [_row_to_letter(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

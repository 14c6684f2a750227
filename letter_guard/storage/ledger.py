"""
Allowance ledger.

Atomic check, deduct, refund and grant operations on per-owner letter
credits. Deduction is a single conditional UPDATE, so concurrent requests
from the same owner, in this process or another, cannot both consume the
last credit. Any storage failure surfaces as LedgerUnavailableError and
callers deny the request.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Mapping, Optional

from letter_guard.core.errors import LedgerUnavailableError

from .db import DEFAULT_DB_PATH, get_connection
from .models import AllowanceAccount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllowanceCheck:
    """Result of the read-only eligibility probe."""
    allowed: bool
    remaining: int
    is_unlimited: bool


def _row_to_account(row) -> AllowanceAccount:
    return AllowanceAccount(
        owner_id=row["owner_id"],
        credits_remaining=row["credits_remaining"],
        is_unlimited=bool(row["is_unlimited"]),
        total_generated=row["total_generated"],
        updated_at=datetime.fromisoformat(row["updated_at"])
    )


class AllowanceLedger:
    """Credit balances backed by the allowance_account table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise LedgerUnavailableError(f"Allowance store unavailable: {e}") from e
        try:
            yield conn
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerUnavailableError(f"Allowance store unavailable: {e}") from e
        finally:
            conn.close()

    def get_account(self, owner_id: str) -> Optional[AllowanceAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM allowance_account WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            return _row_to_account(row) if row else None

    def open_account(self, owner_id: str, credits: int = 0, is_unlimited: bool = False) -> AllowanceAccount:
        """Create an allowance account with a starting balance.

        Args:
            owner_id: Account owner
            credits: Initial credits_remaining
            is_unlimited: Whether the owner bypasses credit accounting

        Returns:
            The created account

        Raises:
            ValueError: If credits is negative or the account already exists
            LedgerUnavailableError: If the store cannot be reached
        """
        if credits < 0:
            raise ValueError("credits must be >= 0")
        try:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO allowance_account
                    (owner_id, credits_remaining, is_unlimited, total_generated, updated_at)
                    VALUES (?, ?, ?, 0, ?)
                """, (owner_id, credits, int(is_unlimited), datetime.now().isoformat()))
                conn.commit()
        except sqlite3.IntegrityError:
            raise ValueError(f"Allowance account already exists for owner {owner_id}")
        logger.info("Opened allowance account for %s with %d credits", owner_id, credits)
        return self.get_account(owner_id)

    def check_and_reserve(self, owner_id: str) -> AllowanceCheck:
        """Read-only probe of whether the owner can generate a letter.

        Owners without an account are not allowed.
        """
        account = self.get_account(owner_id)
        if account is None:
            return AllowanceCheck(allowed=False, remaining=0, is_unlimited=False)
        return AllowanceCheck(
            allowed=account.is_unlimited or account.credits_remaining > 0,
            remaining=account.credits_remaining,
            is_unlimited=account.is_unlimited
        )

    def deduct(self, owner_id: str) -> bool:
        """Atomically consume one credit.

        Returns:
            True if a credit was consumed or the owner is unlimited, False
            if the balance is zero or there is no account

        Raises:
            LedgerUnavailableError: If the store cannot be reached
        """
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE allowance_account
                SET credits_remaining = credits_remaining - 1, updated_at = ?
                WHERE owner_id = ? AND is_unlimited = 0 AND credits_remaining > 0
            """, (datetime.now().isoformat(), owner_id))
            conn.commit()
            if cursor.rowcount == 1:
                logger.info("Deducted 1 credit from %s", owner_id)
                return True

            row = conn.execute(
                "SELECT is_unlimited FROM allowance_account WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            return bool(row and row["is_unlimited"])

    def refund(self, owner_id: str, amount: int = 1) -> None:
        """Atomically return credits after a failed generation.

        Unlimited accounts are left unchanged.

        Raises:
            ValueError: If amount is not positive
            LedgerUnavailableError: If the store cannot be reached
        """
        if amount <= 0:
            raise ValueError("refund amount must be > 0")
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE allowance_account
                SET credits_remaining = credits_remaining + ?, updated_at = ?
                WHERE owner_id = ? AND is_unlimited = 0
            """, (amount, datetime.now().isoformat(), owner_id))
            conn.commit()
        if cursor.rowcount == 1:
            logger.info("Refunded %d credit(s) to %s", amount, owner_id)

    def grant(self, owner_id: str, amount: int) -> AllowanceAccount:
        """Add credits, creating the account if it does not exist yet.

        Raises:
            ValueError: If amount is not positive
            LedgerUnavailableError: If the store cannot be reached
        """
        if amount <= 0:
            raise ValueError("grant amount must be > 0")
        now = datetime.now().isoformat()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO allowance_account
                (owner_id, credits_remaining, is_unlimited, total_generated, updated_at)
                VALUES (?, ?, 0, 0, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    credits_remaining = credits_remaining + excluded.credits_remaining,
                    updated_at = excluded.updated_at
            """, (owner_id, amount, now))
            conn.commit()
        logger.info("Granted %d credit(s) to %s", amount, owner_id)
        return self.get_account(owner_id)

    def grant_plan(self, owner_id: str, plan: str, plans: Mapping[str, int]) -> AllowanceAccount:
        """Grant the credits included in a subscription plan.

        Raises:
            ValueError: If the plan is unknown
        """
        if plan not in plans:
            raise ValueError(f"Invalid plan type: {plan}. Must be one of: {sorted(plans)}")
        return self.grant(owner_id, plans[plan])

    def increment_total_generated(self, owner_id: str) -> None:
        """Bump the lifetime generation counter, independent of credits."""
        with self._connect() as conn:
            conn.execute("""
                UPDATE allowance_account
                SET total_generated = total_generated + 1, updated_at = ?
                WHERE owner_id = ?
            """, (datetime.now().isoformat(), owner_id))
            conn.commit()

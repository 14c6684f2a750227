"""
Letter audit trail.

Append-only log of every letter status change. Writes are best-effort: a
failed append is logged and never interrupts the caller's workflow.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import List

from .db import DEFAULT_DB_PATH, get_connection
from .models import AuditEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """Audit sink backed by the letter_audit_trail table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, entry: AuditEntry) -> bool:
        """Append an entry to the audit trail.

        Args:
            entry: Entry to record; created_at defaults to now

        Returns:
            True if the entry was written, False if the write failed
        """
        created_at = entry.created_at or datetime.now()
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute("""
                    INSERT INTO letter_audit_trail
                    (letter_id, action, old_status, new_status, notes,
                     performed_by, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    entry.letter_id,
                    entry.action,
                    entry.old_status,
                    entry.new_status,
                    entry.notes,
                    entry.performed_by,
                    json.dumps(entry.metadata) if entry.metadata is not None else None,
                    created_at.isoformat()
                ))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(
                "Failed to append audit entry %s for letter %s: %s",
                entry.action, entry.letter_id, e
            )
            return False
        return True

    def entries_for(self, letter_id: str) -> List[AuditEntry]:
        """Return a letter's audit entries, oldest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT letter_id, action, old_status, new_status, notes,
                       performed_by, metadata, created_at
                FROM letter_audit_trail
                WHERE letter_id = ?
                ORDER BY id ASC
            """, (letter_id,)).fetchall()
        finally:
            conn.close()
        return [
            AuditEntry(
                letter_id=row["letter_id"],
                action=row["action"],
                old_status=row["old_status"],
                new_status=row["new_status"],
                notes=row["notes"],
                performed_by=row["performed_by"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else None,
                created_at=datetime.fromisoformat(row["created_at"])
            )
            for row in rows
        ]

"""
Repository for centralized_updates.

Writes that belong to a larger unit of work (approve, reject) take the
caller's open connection.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any

from inseam.config import API_LIST_LIMIT_DEFAULT, MARK_ALL_VIEWED_LIMIT
from inseam.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from inseam.observability.logging import get_logger
from inseam.updates.models import CentralizedUpdate, UpdateStats

logger = get_logger(__name__)

_COLUMNS = (
    "id, user_id, source, source_id, tracker_matches, tracker_proposals, type, category, "
    "title, summary, urgency, from_name, from_id, source_subject, source_quote, source_date, "
    "processed, processed_at, approved, approved_at, approved_by, rejected, rejected_at, "
    "archived_at, viewed_at, viewed_by, created_at"
)
_PLACEHOLDERS = ", ".join(f":{name.strip()}" for name in _COLUMNS.split(","))


class CentralizedUpdateRepository:
    @staticmethod
    @retry_on_db_lock()
    def insert_or_get(update: CentralizedUpdate) -> tuple[str, bool]:
        """
        Insert the update unless (user_id, source, source_id) already exists.

        Returns:
            (update id, created)

        Side Effects:
            - Inserts at most one row into centralized_updates
        """
        with db_transaction() as conn:
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO centralized_updates ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
                update.to_db_dict(),
            )
            if cursor.rowcount:
                return update.id, True

            row = conn.execute(
                """
                SELECT id FROM centralized_updates
                WHERE user_id = ? AND source = ? AND source_id = ?
                """,
                (update.user_id, update.source, update.source_id),
            ).fetchone()
        return row["id"], False

    @staticmethod
    def get_by_id(update_id: str, conn: sqlite3.Connection | None = None) -> CentralizedUpdate | None:
        query = "SELECT * FROM centralized_updates WHERE id = ?"
        if conn is not None:
            row = conn.execute(query, (update_id,)).fetchone()
        else:
            with get_db_connection() as own_conn:
                row = own_conn.execute(query, (update_id,)).fetchone()
        return CentralizedUpdate.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_by_user(
        user_id: str,
        include_archived: bool = False,
        limit: int = API_LIST_LIMIT_DEFAULT,
        offset: int = 0,
    ) -> list[CentralizedUpdate]:
        query = "SELECT * FROM centralized_updates WHERE user_id = ?"
        if not include_archived:
            query += " AND archived_at IS NULL"
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"

        with get_db_connection() as conn:
            rows = conn.execute(query, (user_id, limit, offset)).fetchall()
        return [CentralizedUpdate.from_db_row(dict(r)) for r in rows]

    @staticmethod
    def mark_processed(
        conn: sqlite3.Connection,
        update_id: str,
        now: datetime,
        approved_by: str | None = None,
        rejected: bool = False,
    ) -> None:
        """Close the update as approved (approved_by set) or rejected."""
        stamp = now.isoformat()
        if rejected:
            conn.execute(
                """
                UPDATE centralized_updates
                SET processed = 1, processed_at = ?, rejected = 1, rejected_at = ?, archived_at = ?
                WHERE id = ?
                """,
                (stamp, stamp, stamp, update_id),
            )
        else:
            conn.execute(
                """
                UPDATE centralized_updates
                SET processed = 1, processed_at = ?, approved = 1, approved_at = ?,
                    approved_by = ?, archived_at = ?
                WHERE id = ?
                """,
                (stamp, stamp, approved_by, stamp, update_id),
            )

    @staticmethod
    @retry_on_db_lock()
    def set_viewed(update_id: str, user_id: str, now: datetime) -> bool:
        """Set viewed_at unless already set. Returns True if it changed."""
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE centralized_updates SET viewed_at = ?, viewed_by = ?
                WHERE id = ? AND viewed_at IS NULL
                """,
                (now.isoformat(), user_id, update_id),
            )
        return cursor.rowcount > 0

    @staticmethod
    @retry_on_db_lock()
    def mark_all_viewed(user_id: str, now: datetime, limit: int = MARK_ALL_VIEWED_LIMIT) -> int:
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE centralized_updates SET viewed_at = ?, viewed_by = ?
                WHERE id IN (
                    SELECT id FROM centralized_updates
                    WHERE user_id = ? AND viewed_at IS NULL AND archived_at IS NULL
                    LIMIT ?
                )
                """,
                (now.isoformat(), user_id, user_id, limit),
            )
        return cursor.rowcount

    @staticmethod
    @retry_on_db_lock()
    def set_archived(update_id: str, now: datetime) -> None:
        with db_transaction() as conn:
            conn.execute(
                "UPDATE centralized_updates SET archived_at = ? WHERE id = ?",
                (now.isoformat(), update_id),
            )

    @staticmethod
    def stats(user_id: str) -> UpdateStats:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(processed = 0 AND archived_at IS NULL) AS active,
                    SUM(archived_at IS NOT NULL) AS archived,
                    SUM(processed = 0) AS pending,
                    SUM(approved = 1) AS approved,
                    SUM(rejected = 1) AS rejected,
                    SUM(archived_at IS NULL AND tracker_proposals != '[]') AS with_proposals,
                    SUM(archived_at IS NULL AND viewed_at IS NULL) AS unread
                FROM centralized_updates WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()

        counts: dict[str, Any] = {key: row[key] or 0 for key in row.keys()}
        return UpdateStats(**counts)

"""
Tracker repositories - CRUD for trackers, tracker_rows and tracker_row_aliases.

Row writes that must be atomic with other writes (proposal approval) take
an open connection from the caller's db_transaction().
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from inseam.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from inseam.observability.logging import get_logger
from inseam.trackers.models import RowAlias, Tracker, TrackerRow, utc_now

logger = get_logger(__name__)


def _json_path(column_key: str) -> str:
    return f'$."{column_key}"'


class TrackerRepository:
    @staticmethod
    @retry_on_db_lock()
    def create(tracker: Tracker) -> Tracker:
        """
        Side Effects:
            - Inserts row into trackers table
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO trackers (
                    id, user_id, name, slug, description, color, columns,
                    primary_key_column, is_active, created_at, updated_at
                ) VALUES (
                    :id, :user_id, :name, :slug, :description, :color, :columns,
                    :primary_key_column, :is_active, :created_at, :updated_at
                )
                """,
                tracker.to_db_dict(),
            )

        logger.info("Created tracker %s for user %s", tracker.id, tracker.user_id)
        return tracker

    @staticmethod
    def get_by_id(tracker_id: str) -> Tracker | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM trackers WHERE id = ?", (tracker_id,)).fetchone()
        return Tracker.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_active_by_user(user_id: str) -> list[Tracker]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trackers WHERE user_id = ? AND is_active = 1 ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [Tracker.from_db_row(dict(r)) for r in rows]

    @staticmethod
    @retry_on_db_lock()
    def update(tracker: Tracker) -> Tracker:
        """
        Side Effects:
            - Rewrites the editable fields of one trackers row
        """
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE trackers SET
                    name = :name, description = :description, color = :color,
                    columns = :columns, primary_key_column = :primary_key_column,
                    is_active = :is_active, updated_at = :updated_at
                WHERE id = :id
                """,
                tracker.to_db_dict(),
            )
        return tracker

    @staticmethod
    @retry_on_db_lock()
    def delete(tracker_id: str) -> None:
        """
        Side Effects:
            - Deletes the tracker with its rows and aliases in one transaction
        """
        with db_transaction() as conn:
            conn.execute("DELETE FROM tracker_row_aliases WHERE tracker_id = ?", (tracker_id,))
            conn.execute("DELETE FROM tracker_rows WHERE tracker_id = ?", (tracker_id,))
            conn.execute("DELETE FROM trackers WHERE id = ?", (tracker_id,))
        logger.info("Deleted tracker %s", tracker_id)

    @staticmethod
    def slug_exists(user_id: str, slug: str) -> bool:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM trackers WHERE user_id = ? AND slug = ?",
                (user_id, slug),
            ).fetchone()
        return row is not None


class TrackerRowRepository:
    @staticmethod
    def list_rows(tracker_id: str, limit: int = 500, offset: int = 0) -> list[TrackerRow]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tracker_rows WHERE tracker_id = ?
                ORDER BY created_at LIMIT ? OFFSET ?
                """,
                (tracker_id, limit, offset),
            ).fetchall()
        return [TrackerRow.from_db_row(dict(r)) for r in rows]

    @staticmethod
    def get(conn: sqlite3.Connection, tracker_id: str, row_id: str) -> TrackerRow | None:
        row = conn.execute(
            "SELECT * FROM tracker_rows WHERE tracker_id = ? AND row_id = ?",
            (tracker_id, row_id),
        ).fetchone()
        return TrackerRow.from_db_row(dict(row)) if row else None

    @staticmethod
    def replace(
        conn: sqlite3.Connection,
        row: TrackerRow,
        new_row_id: str,
        data: dict[str, Any],
        user_id: str,
    ) -> TrackerRow:
        """
        Overwrite a row's data (and key, when it changed) on an open transaction.

        Aliases follow the row to its new key.

        Side Effects:
            - Updates one tracker_rows row
        """
        now = utc_now()
        conn.execute(
            """
            UPDATE tracker_rows SET row_id = ?, data = ?, updated_at = ?, updated_by = ?
            WHERE id = ?
            """,
            (new_row_id, json.dumps(data), now.isoformat(), user_id, row.id),
        )
        if new_row_id != row.row_id:
            conn.execute(
                "UPDATE tracker_row_aliases SET row_id = ? WHERE tracker_id = ? AND row_id = ?",
                (new_row_id, row.tracker_id, row.row_id),
            )
        return row.model_copy(
            update={"row_id": new_row_id, "data": data, "updated_at": now, "updated_by": user_id}
        )

    @staticmethod
    def delete(conn: sqlite3.Connection, tracker_id: str, row_id: str) -> bool:
        """
        Side Effects:
            - Deletes the row and the aliases pointing at it
        """
        cursor = conn.execute(
            "DELETE FROM tracker_rows WHERE tracker_id = ? AND row_id = ?",
            (tracker_id, row_id),
        )
        conn.execute(
            "DELETE FROM tracker_row_aliases WHERE tracker_id = ? AND row_id = ?",
            (tracker_id, row_id),
        )
        return cursor.rowcount > 0

    @staticmethod
    def find_by_primary_key(
        tracker_id: str,
        primary_key_column: str,
        value: Any,
        conn: sqlite3.Connection | None = None,
    ) -> TrackerRow | None:
        """
        Row whose row_id or primary-key column equals value.

        Pass conn to read inside an open transaction.
        """
        query = """
            SELECT * FROM tracker_rows
            WHERE tracker_id = ? AND (row_id = ? OR json_extract(data, ?) = ?)
            ORDER BY row_id = ? DESC
            LIMIT 1
        """
        params = (tracker_id, str(value), _json_path(primary_key_column), value, str(value))

        if conn is not None:
            row = conn.execute(query, params).fetchone()
        else:
            with get_db_connection() as own_conn:
                row = own_conn.execute(query, params).fetchone()

        return TrackerRow.from_db_row(dict(row)) if row else None

    @staticmethod
    def primary_key_taken(
        conn: sqlite3.Connection,
        tracker_id: str,
        primary_key_column: str,
        value: Any,
        exclude_row_id: str,
    ) -> bool:
        """True if a row other than exclude_row_id already uses value as its key."""
        row = conn.execute(
            """
            SELECT 1 FROM tracker_rows
            WHERE tracker_id = ? AND row_id != ?
              AND (row_id = ? OR json_extract(data, ?) = ?)
            LIMIT 1
            """,
            (tracker_id, exclude_row_id, str(value), _json_path(primary_key_column), value),
        ).fetchone()
        return row is not None

    @staticmethod
    def upsert(
        conn: sqlite3.Connection,
        tracker_id: str,
        row_id: str,
        data: dict[str, Any],
        user_id: str,
    ) -> TrackerRow:
        """
        Merge data into the row (creating it if missing) on an open transaction.

        Existing keys not present in data are kept; keys in data overwrite.

        Side Effects:
            - Inserts or updates one tracker_rows row
        """
        now = utc_now().isoformat()
        existing = conn.execute(
            "SELECT * FROM tracker_rows WHERE tracker_id = ? AND row_id = ?",
            (tracker_id, row_id),
        ).fetchone()

        if existing:
            merged = {**json.loads(existing["data"]), **data}
            conn.execute(
                """
                UPDATE tracker_rows SET data = ?, updated_at = ?, updated_by = ?
                WHERE id = ?
                """,
                (json.dumps(merged), now, user_id, existing["id"]),
            )
            row_pk = existing["id"]
            created_at, created_by = existing["created_at"], existing["created_by"]
        else:
            merged = dict(data)
            row_pk = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO tracker_rows (
                    id, tracker_id, row_id, data, created_at, created_by, updated_at, updated_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (row_pk, tracker_id, row_id, json.dumps(merged), now, user_id, now, user_id),
            )
            created_at, created_by = now, user_id

        return TrackerRow.from_db_row(
            {
                "id": row_pk,
                "tracker_id": tracker_id,
                "row_id": row_id,
                "data": json.dumps(merged),
                "created_at": created_at,
                "created_by": created_by,
                "updated_at": now,
                "updated_by": user_id,
            }
        )


class RowAliasRepository:
    @staticmethod
    @retry_on_db_lock()
    def create(alias: RowAlias) -> RowAlias:
        """
        Raises:
            sqlite3.IntegrityError: alias already used in this tracker
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO tracker_row_aliases (id, tracker_id, row_id, alias, user_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    alias.id,
                    alias.tracker_id,
                    alias.row_id,
                    alias.alias,
                    alias.user_id,
                    alias.created_at.isoformat(),
                ),
            )
        return alias

    @staticmethod
    def get_by_id(alias_id: str) -> RowAlias | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM tracker_row_aliases WHERE id = ?", (alias_id,)
            ).fetchone()
        return RowAlias.from_db_row(dict(row)) if row else None

    @staticmethod
    @retry_on_db_lock()
    def delete(alias_id: str) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute("DELETE FROM tracker_row_aliases WHERE id = ?", (alias_id,))
        return cursor.rowcount > 0

    @staticmethod
    def list_for_tracker(tracker_id: str, row_id: str | None = None) -> list[RowAlias]:
        query = "SELECT * FROM tracker_row_aliases WHERE tracker_id = ?"
        params: list[Any] = [tracker_id]
        if row_id is not None:
            query += " AND row_id = ?"
            params.append(row_id)
        query += " ORDER BY alias"

        with get_db_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [RowAlias.from_db_row(dict(r)) for r in rows]

    @staticmethod
    def find(tracker_id: str, normalized_alias: str) -> RowAlias | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM tracker_row_aliases WHERE tracker_id = ? AND alias = ?",
                (tracker_id, normalized_alias),
            ).fetchone()
        return RowAlias.from_db_row(dict(row)) if row else None

"""
Processed email checkpoint.

Append-only record of which email ids a user's pipeline has already
handled. Reads honour a lookback window so very old ids (already pruned by
retention, or simply aged out) are treated as unseen.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from inseam.config import (
    PROCESSED_EMAIL_CLEANUP_BATCH,
    PROCESSED_EMAIL_LOOKBACK_DAYS,
    PROCESSED_EMAIL_RETENTION_DAYS,
)
from inseam.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter

logger = get_logger(__name__)


def _cutoff(days: int) -> str:
    return (datetime.now(UTC) - timedelta(days=days)).isoformat()


def is_processed(user_id: str, email_id: str) -> bool:
    return bool(filter_processed(user_id, [email_id]))


def filter_processed(user_id: str, email_ids: Iterable[str]) -> set[str]:
    """Subset of email_ids already processed within the lookback window."""
    ids = list(dict.fromkeys(email_ids))
    if not ids:
        return set()

    placeholders = ",".join("?" for _ in ids)
    with get_db_connection() as conn:
        rows = conn.execute(
            f"""
            SELECT email_id FROM processed_emails
            WHERE user_id = ? AND created_at >= ? AND email_id IN ({placeholders})
            """,
            (user_id, _cutoff(PROCESSED_EMAIL_LOOKBACK_DAYS), *ids),
        ).fetchall()
    return {row["email_id"] for row in rows}


@retry_on_db_lock()
def mark_processed(user_id: str, email_ids: Iterable[str]) -> int:
    """
    Record email ids as processed. Already-recorded ids are ignored.

    Side Effects:
        - Inserts rows into processed_emails
    """
    now = datetime.now(UTC).isoformat()
    inserted = 0
    with db_transaction() as conn:
        for email_id in dict.fromkeys(email_ids):
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO processed_emails (user_id, email_id, created_at)
                VALUES (?, ?, ?)
                """,
                (user_id, email_id, now),
            )
            inserted += cursor.rowcount

    counter("processed_emails.marked", inserted)
    return inserted


def cleanup_old_processed_emails(days: int = PROCESSED_EMAIL_RETENTION_DAYS) -> int:
    """
    Delete records older than `days`, PROCESSED_EMAIL_CLEANUP_BATCH at a time.

    Side Effects:
        - Deletes from processed_emails, one short transaction per batch
    """
    cutoff = _cutoff(days)
    deleted = 0

    while True:
        batch = _delete_batch(cutoff)
        deleted += batch
        if batch < PROCESSED_EMAIL_CLEANUP_BATCH:
            break

    if deleted:
        logger.info("Cleaned up %d processed email records older than %d days", deleted, days)
    return deleted


@retry_on_db_lock()
def _delete_batch(cutoff: str) -> int:
    with db_transaction() as conn:
        cursor = conn.execute(
            """
            DELETE FROM processed_emails WHERE id IN (
                SELECT id FROM processed_emails WHERE created_at < ? LIMIT ?
            )
            """,
            (cutoff, PROCESSED_EMAIL_CLEANUP_BATCH),
        )
    return cursor.rowcount

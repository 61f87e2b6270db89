"""
Tests for the processed-email checkpoint.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from conftest import OTHER_USER_ID, USER_ID

from inseam.infrastructure.database import db_transaction
from inseam.storage import processed_emails


def insert_aged(email_id: str, days_ago: int) -> None:
    created = (datetime.now(UTC) - timedelta(days=days_ago)).isoformat()
    with db_transaction() as conn:
        conn.execute(
            "INSERT INTO processed_emails (user_id, email_id, created_at) VALUES (?, ?, ?)",
            (USER_ID, email_id, created),
        )


def test_mark_and_filter(temp_db):
    assert processed_emails.mark_processed(USER_ID, ["a", "b", "a"]) == 2
    assert processed_emails.mark_processed(USER_ID, ["b", "c"]) == 1

    assert processed_emails.filter_processed(USER_ID, ["a", "c", "z"]) == {"a", "c"}
    assert processed_emails.is_processed(USER_ID, "b")
    assert not processed_emails.is_processed(USER_ID, "z")


def test_checkpoint_is_per_user(temp_db):
    processed_emails.mark_processed(USER_ID, ["a"])

    assert processed_emails.filter_processed(OTHER_USER_ID, ["a"]) == set()


def test_filter_with_no_ids(temp_db):
    assert processed_emails.filter_processed(USER_ID, []) == set()


def test_ids_outside_lookback_count_as_unseen(temp_db):
    insert_aged("ancient", days_ago=400)

    assert not processed_emails.is_processed(USER_ID, "ancient")


def test_cleanup_removes_only_old_records(temp_db):
    insert_aged("old-1", days_ago=120)
    insert_aged("old-2", days_ago=100)
    processed_emails.mark_processed(USER_ID, ["fresh"])

    assert processed_emails.cleanup_old_processed_emails(days=90) == 2
    assert processed_emails.is_processed(USER_ID, "fresh")
    assert processed_emails.cleanup_old_processed_emails(days=90) == 0

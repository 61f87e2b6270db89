"""
Tests for storing updates and applying approve/reject decisions.

Validates:
1. Storing is idempotent per email
2. Approval patches existing rows and creates new ones
3. Edited approvals, column remapping and duplicate primary keys
4. Already-processed updates are left alone
5. Ownership is enforced on updates and trackers
6. Concurrent approvals touching one row serialize and merge
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from conftest import OTHER_USER_ID, USER_ID, make_email, make_tracker

from inseam.infrastructure.database import db_transaction
from inseam.trackers.models import Tracker
from inseam.trackers.repository import TrackerRowRepository
from inseam.trackers.service import PermissionDeniedError, list_rows
from inseam.updates.models import EditedColumn, EditedProposal, MatchResult, TrackerMatch
from inseam.updates.proposals import build_proposals, lookup_row
from inseam.updates.service import UpdateNotFoundError, UpdateStore


def seed_row(tracker: Tracker, data: dict) -> None:
    with db_transaction() as conn:
        TrackerRowRepository.upsert(conn, tracker.id, data["order_id"], data, USER_ID)


def store_update(tracker: Tracker, extracted: dict, email_id: str = "msg-1", user_id: str = USER_ID):
    match = MatchResult(
        tracker_matches=[TrackerMatch(tracker_id=tracker.id, tracker_name=tracker.name, confidence=90)],
        extracted_data={tracker.id: extracted},
    )
    email = make_email(email_id=email_id)
    proposal = build_proposals(match, [tracker], email, lookup_row)
    return UpdateStore().store_centralized_update(email, proposal, user_id)


def rows_by_id(tracker: Tracker) -> dict[str, dict]:
    return {r.row_id: r.data for r in list_rows(tracker.id, USER_ID)}


def test_store_is_idempotent_per_email(temp_db):
    tracker = make_tracker()

    first = store_update(tracker, {"order_id": "ORD-1", "status": "shipped"})
    second = store_update(tracker, {"order_id": "ORD-1", "status": "delivered"})

    assert first.created is True
    assert second.created is False
    assert second.update_id == first.update_id
    assert len(UpdateStore().list_updates(USER_ID)) == 1


def test_stored_update_carries_email_fields(temp_db):
    tracker = make_tracker()
    stored = store_update(tracker, {"order_id": "ORD-1"})

    update = UpdateStore().get_update(stored.update_id, USER_ID)
    assert update.source == "email"
    assert update.source_id == "msg-1"
    assert update.from_name == "Shop"
    assert update.from_id == "orders@shop.example.com"
    assert update.tracker_matches[0].tracker_id == tracker.id
    assert update.processed is False


def test_approve_patches_existing_row(temp_db):
    tracker = make_tracker()
    seed_row(tracker, {"order_id": "ORD-1", "status": "ordered", "cost": 40})
    stored = store_update(tracker, {"order_id": "ORD-1", "status": "shipped", "tracking": "1Z999"})

    result = UpdateStore().approve_update(stored.update_id, USER_ID)

    assert result.success
    assert [r.success for r in result.results] == [True]
    assert result.results[0].is_new_row is False
    assert rows_by_id(tracker) == {
        "ORD-1": {"order_id": "ORD-1", "status": "shipped", "cost": 40, "tracking": "1Z999"}
    }

    update = UpdateStore().get_update(stored.update_id, USER_ID)
    assert update.processed and update.approved
    assert update.approved_by == USER_ID
    assert update.archived_at is not None


def test_approve_creates_new_row(temp_db):
    tracker = make_tracker()
    stored = store_update(tracker, {"order_id": "ORD-5", "status": "ordered"})

    result = UpdateStore().approve_update(stored.update_id, USER_ID)

    assert result.results[0].is_new_row is True
    assert rows_by_id(tracker) == {"ORD-5": {"order_id": "ORD-5", "status": "ordered"}}


def test_row_created_after_proposal_is_patched_not_duplicated(temp_db):
    tracker = make_tracker()
    stored = store_update(tracker, {"order_id": "ORD-1", "status": "shipped"})
    seed_row(tracker, {"order_id": "ORD-1", "status": "ordered", "cost": 10})

    UpdateStore().approve_update(stored.update_id, USER_ID)

    assert rows_by_id(tracker) == {"ORD-1": {"order_id": "ORD-1", "status": "shipped", "cost": 10}}


def test_approve_twice_is_a_no_op(temp_db):
    tracker = make_tracker()
    stored = store_update(tracker, {"order_id": "ORD-1", "status": "shipped"})
    store = UpdateStore()

    store.approve_update(stored.update_id, USER_ID)
    seed_row(tracker, {"order_id": "ORD-1", "status": "delivered"})
    again = store.approve_update(stored.update_id, USER_ID)

    assert again.already_processed is True
    assert again.results == []
    assert rows_by_id(tracker)["ORD-1"]["status"] == "delivered"


def test_approve_with_edits_and_remapped_column(temp_db):
    tracker = make_tracker()
    stored = store_update(tracker, {"order_id": "ORD-1", "status": "shipped"})
    update = UpdateStore().get_update(stored.update_id, USER_ID)
    row_id = update.tracker_proposals[0].row_id

    edits = [
        EditedProposal(
            tracker_id=tracker.id,
            row_id=row_id,
            edited_columns=[
                EditedColumn(column_key="order_id", new_value="ORD-1"),
                EditedColumn(column_key="status", new_value="delivered"),
                EditedColumn(column_key="status", new_value="1Z42", target_column_key="tracking"),
            ],
        )
    ]
    result = UpdateStore().update_proposal_with_edits(stored.update_id, USER_ID, edits)

    assert result.results[0].success
    assert rows_by_id(tracker)["ORD-1"] == {
        "order_id": "ORD-1",
        "status": "delivered",
        "tracking": "1Z42",
    }


def test_invalid_edit_fails_that_proposal_only(temp_db):
    tracker = make_tracker()
    other = make_tracker(name="Returns")
    stored = store_update(tracker, {"order_id": "ORD-1"})

    edits = [
        EditedProposal(
            tracker_id=tracker.id,
            row_id="ORD-1",
            edited_columns=[EditedColumn(column_key="status", new_value="lost")],
        ),
        EditedProposal(
            tracker_id=other.id,
            row_id="R-1",
            edited_columns=[EditedColumn(column_key="status", new_value="shipped")],
        ),
    ]
    result = UpdateStore().update_proposal_with_edits(stored.update_id, USER_ID, edits)

    assert [r.success for r in result.results] == [False, True]
    assert "must be one of" in result.results[0].error
    assert UpdateStore().get_update(stored.update_id, USER_ID).processed


def test_primary_key_edit_colliding_with_other_row_is_refused(temp_db):
    tracker = make_tracker()
    seed_row(tracker, {"order_id": "ORD-1", "status": "ordered"})
    seed_row(tracker, {"order_id": "ORD-2", "status": "ordered"})
    stored = store_update(tracker, {"order_id": "ORD-1", "status": "shipped"})

    edits = [
        EditedProposal(
            tracker_id=tracker.id,
            row_id="ORD-1",
            edited_columns=[EditedColumn(column_key="order_id", new_value="ORD-2")],
        )
    ]
    result = UpdateStore().update_proposal_with_edits(stored.update_id, USER_ID, edits)

    assert result.results[0].success is False
    assert "Duplicate order_id" in result.results[0].error
    assert rows_by_id(tracker)["ORD-1"]["status"] == "ordered"


def test_unknown_column_fails_proposal(temp_db):
    tracker = make_tracker()
    stored = store_update(tracker, {"order_id": "ORD-1"})

    edits = [
        EditedProposal(
            tracker_id=tracker.id,
            row_id="ORD-1",
            edited_columns=[EditedColumn(column_key="colour", new_value="blue")],
        )
    ]
    result = UpdateStore().update_proposal_with_edits(stored.update_id, USER_ID, edits)
    assert result.results[0].error == "Column colour not found in tracker"


def test_reject_leaves_rows_untouched(temp_db):
    tracker = make_tracker()
    seed_row(tracker, {"order_id": "ORD-1", "status": "ordered"})
    stored = store_update(tracker, {"order_id": "ORD-1", "status": "shipped"})
    store = UpdateStore()

    result = store.reject_proposals(stored.update_id, USER_ID)

    assert result.success and not result.already_processed
    assert rows_by_id(tracker)["ORD-1"]["status"] == "ordered"
    update = store.get_update(stored.update_id, USER_ID)
    assert update.rejected and update.processed and not update.approved

    assert store.approve_update(stored.update_id, USER_ID).already_processed is True
    assert rows_by_id(tracker)["ORD-1"]["status"] == "ordered"


def test_other_users_cannot_touch_update(temp_db):
    tracker = make_tracker()
    stored = store_update(tracker, {"order_id": "ORD-1"})
    store = UpdateStore()

    with pytest.raises(PermissionDeniedError):
        store.approve_update(stored.update_id, OTHER_USER_ID)
    with pytest.raises(PermissionDeniedError):
        store.reject_proposals(stored.update_id, OTHER_USER_ID)
    with pytest.raises(UpdateNotFoundError):
        store.approve_update("missing", USER_ID)

    assert store.get_update(stored.update_id, USER_ID).processed is False


def test_edit_targeting_foreign_tracker_rolls_back(temp_db):
    tracker = make_tracker()
    foreign = make_tracker(user_id=OTHER_USER_ID, name="Theirs")
    stored = store_update(tracker, {"order_id": "ORD-1"})

    edits = [
        EditedProposal(
            tracker_id=tracker.id,
            row_id="ORD-1",
            edited_columns=[EditedColumn(column_key="status", new_value="shipped")],
        ),
        EditedProposal(
            tracker_id=foreign.id,
            row_id="X",
            edited_columns=[EditedColumn(column_key="status", new_value="shipped")],
        ),
    ]
    with pytest.raises(PermissionDeniedError):
        UpdateStore().update_proposal_with_edits(stored.update_id, USER_ID, edits)

    assert rows_by_id(tracker) == {}
    assert UpdateStore().get_update(stored.update_id, USER_ID).processed is False


def test_viewed_archived_and_stats(temp_db):
    tracker = make_tracker()
    first = store_update(tracker, {"order_id": "ORD-1"}, email_id="m1")
    second = store_update(tracker, {"order_id": "ORD-2"}, email_id="m2")
    store_update(tracker, {}, email_id="m3")
    store = UpdateStore()

    assert store.mark_as_viewed(first.update_id, USER_ID) is True
    assert store.mark_as_viewed(first.update_id, USER_ID) is False
    store.approve_update(second.update_id, USER_ID)

    stats = store.get_stats(USER_ID)
    assert stats.total == 3
    assert stats.pending == 2
    assert stats.approved == 1
    assert stats.archived == 1
    assert stats.active == 2
    assert stats.with_proposals == 1
    assert stats.unread == 1

    assert store.mark_all_as_viewed(USER_ID) == 1
    assert store.get_stats(USER_ID).unread == 0

    store.archive_update(first.update_id, USER_ID)
    assert [u.source_id for u in store.list_updates(USER_ID)] == ["m3"]
    assert len(store.list_updates(USER_ID, include_archived=True)) == 3


def test_concurrent_approvals_on_one_row_merge(temp_db):
    tracker = make_tracker()
    seed_row(tracker, {"order_id": "ORD-1", "status": "ordered", "cost": 40})
    first = store_update(tracker, {"order_id": "ORD-1", "status": "shipped"}, email_id="m1")
    second = store_update(tracker, {"order_id": "ORD-1", "tracking": "1Z999"}, email_id="m2")
    edits = [
        EditedProposal(
            tracker_id=tracker.id,
            row_id="ORD-1",
            edited_columns=[
                EditedColumn(column_key="status", new_value="delivered"),
                EditedColumn(column_key="tracking", new_value="1Z999"),
            ],
        )
    ]
    barrier = threading.Barrier(2)

    def approve_first():
        barrier.wait()
        return UpdateStore().approve_update(first.update_id, USER_ID)

    def approve_second_with_edits():
        barrier.wait()
        return UpdateStore().update_proposal_with_edits(second.update_id, USER_ID, edits)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(approve_first), pool.submit(approve_second_with_edits)]
        results = [f.result() for f in futures]

    assert all(r.results[0].success for r in results)
    row = rows_by_id(tracker)["ORD-1"]
    # Whichever approval committed last owns status; untouched columns survive both
    assert row["status"] in ("shipped", "delivered")
    assert row["tracking"] == "1Z999"
    assert row["cost"] == 40
    assert len(rows_by_id(tracker)) == 1

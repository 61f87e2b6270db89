"""
Tests for turning a match result into row-level proposals.
"""

from __future__ import annotations

import pytest
from conftest import make_email, order_columns

from inseam.trackers.models import Tracker, TrackerRow
from inseam.updates.models import MatchResult, TrackerMatch
from inseam.updates.proposals import NEW_ROW_ID, ProposalValidationError, build_proposals


def orders() -> Tracker:
    return Tracker(
        id="t1",
        user_id="user-1",
        name="Orders",
        slug="orders",
        columns=order_columns(),
        primary_key_column="order_id",
    )


def match(extracted: dict, confidence: float = 90, column_confidence: dict | None = None) -> MatchResult:
    return MatchResult(
        tracker_matches=[TrackerMatch(tracker_id="t1", tracker_name="Orders", confidence=confidence)],
        extracted_data={"t1": extracted},
        column_confidence={"t1": column_confidence or {}},
    )


def existing_row(data: dict) -> TrackerRow:
    return TrackerRow(
        id="row-uuid",
        tracker_id="t1",
        row_id=data["order_id"],
        data=data,
        created_by="user-1",
        updated_by="user-1",
    )


def no_rows(_tracker, _value):
    return None


def test_existing_row_gets_current_values():
    row = existing_row({"order_id": "ORD-1", "status": "ordered"})
    result = build_proposals(
        match({"order_id": "ORD-1", "status": "shipped"}),
        [orders()],
        make_email(),
        row_lookup=lambda _t, value: row if value == "ORD-1" else None,
    )

    [proposal] = result.tracker_proposals
    assert proposal.row_id == "ORD-1"
    assert proposal.is_new_row is False
    status = next(cu for cu in proposal.column_updates if cu.column_key == "status")
    assert status.current_value == "ordered"
    assert status.proposed_value == "shipped"


def test_unknown_primary_key_proposes_new_row_keyed_by_value():
    result = build_proposals(match({"order_id": "ORD-9"}), [orders()], make_email(), no_rows)

    [proposal] = result.tracker_proposals
    assert proposal.row_id == "ORD-9"
    assert proposal.is_new_row is True
    assert proposal.column_updates[0].current_value is None


def test_missing_primary_key_proposes_new_row():
    result = build_proposals(match({"status": "delivered"}), [orders()], make_email(), no_rows)
    assert result.tracker_proposals[0].row_id == NEW_ROW_ID


def test_column_updates_follow_column_order():
    result = build_proposals(
        match({"tracking": "1Z999", "status": "shipped", "order_id": "ORD-1"}),
        [orders()],
        make_email(),
        no_rows,
    )
    keys = [cu.column_key for cu in result.tracker_proposals[0].column_updates]
    assert keys == ["order_id", "status", "tracking"]


def test_confidence_per_column_falls_back_to_match_confidence():
    result = build_proposals(
        match({"order_id": "ORD-1", "status": "shipped"}, confidence=75, column_confidence={"status": 55}),
        [orders()],
        make_email(),
        no_rows,
    )
    confidences = {cu.column_key: cu.confidence for cu in result.tracker_proposals[0].column_updates}
    assert confidences == {"order_id": 75, "status": 55}


def test_match_without_values_yields_no_proposal():
    result = build_proposals(match({}), [orders()], make_email(), no_rows)

    assert result.tracker_proposals == []
    assert len(result.tracker_matches) == 1
    assert result.email_summary.type == "general"
    assert result.total_proposals == 0


def test_summary_names_matched_trackers():
    email = make_email(subject="A very long subject line that keeps going well beyond fifty chars")
    result = build_proposals(match({"order_id": "ORD-1"}), [orders()], email, no_rows)

    assert result.email_summary.summary == "Email about Orders"
    assert result.email_summary.category == "tracker_update"
    assert len(result.email_summary.title) == 50


def test_unknown_tracker_is_rejected():
    result = MatchResult(
        tracker_matches=[TrackerMatch(tracker_id="ghost", tracker_name="Ghost", confidence=90)],
        extracted_data={"ghost": {"order_id": "X"}},
    )
    with pytest.raises(ProposalValidationError):
        build_proposals(result, [orders()], make_email(), no_rows)


def test_email_without_id_is_rejected():
    with pytest.raises(ProposalValidationError):
        build_proposals(match({"order_id": "A"}), [orders()], make_email(email_id=""), no_rows)

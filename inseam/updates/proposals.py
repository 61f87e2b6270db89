"""
Proposal builder - turn matcher output into row-level proposals.

Deterministic: the only outside input is the row lookup, which callers
pass in (the pipeline reads tracker_rows, tests pass a dict-backed fake).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from inseam.config import SUMMARY_TITLE_MAX_CHARS
from inseam.email.models import Email
from inseam.trackers.models import Tracker, TrackerRow
from inseam.trackers.repository import TrackerRowRepository
from inseam.updates.models import (
    ColumnUpdate,
    EmailSummary,
    MatchResult,
    ProposalResult,
    TrackerProposal,
)

NEW_ROW_ID = "new"

RowLookup = Callable[[Tracker, Any], TrackerRow | None]


class ProposalValidationError(ValueError):
    pass


def lookup_row(tracker: Tracker, primary_key_value: Any) -> TrackerRow | None:
    """Existing row whose primary key equals the value."""
    return TrackerRowRepository.find_by_primary_key(
        tracker.id, tracker.primary_key_column, primary_key_value
    )


def summarize_email(email: Email, proposals: list[TrackerProposal]) -> EmailSummary:
    if proposals:
        names = ", ".join(p.tracker_name for p in proposals)
        summary = f"Email about {names}"
    else:
        summary = f"Email from {email.sender.name or email.sender.email}"

    return EmailSummary(
        title=email.subject[:SUMMARY_TITLE_MAX_CHARS],
        summary=summary,
        type="update" if proposals else "general",
        urgency="medium",
        category="tracker_update" if proposals else "general",
    )


def build_proposals(
    match_result: MatchResult,
    trackers: list[Tracker],
    email: Email,
    row_lookup: RowLookup = lookup_row,
) -> ProposalResult:
    """
    One TrackerProposal per matched tracker that has extracted values.

    Column confidence is the matcher's per-column score when it gave one,
    else the tracker match's score, copied as-is.

    Raises:
        ProposalValidationError: email without an id, or a match naming a
            tracker that was not supplied
    """
    if not email.id:
        raise ProposalValidationError("Email is missing an id")

    by_id = {t.id: t for t in trackers}
    proposals: list[TrackerProposal] = []

    for match in match_result.tracker_matches:
        tracker = by_id.get(match.tracker_id)
        if tracker is None:
            raise ProposalValidationError(f"Match references unknown tracker {match.tracker_id}")

        extracted = match_result.extracted_data.get(tracker.id)
        if not extracted:
            continue
        column_confidence = match_result.column_confidence.get(tracker.id, {})

        pk_value = extracted.get(tracker.primary_key_column)
        row = row_lookup(tracker, pk_value) if pk_value is not None else None

        if row is not None:
            row_id = row.row_id
        elif pk_value is not None:
            row_id = str(pk_value)
        else:
            row_id = NEW_ROW_ID

        column_updates = []
        for column in sorted(tracker.columns, key=lambda c: c.order):
            if column.key not in extracted or extracted[column.key] is None:
                continue
            confidence = column_confidence.get(column.key)
            column_updates.append(
                ColumnUpdate(
                    column_key=column.key,
                    column_name=column.name,
                    column_type=column.type,
                    column_color=column.color,
                    current_value=row.data.get(column.key) if row else None,
                    proposed_value=extracted[column.key],
                    confidence=match.confidence if confidence is None else confidence,
                )
            )

        if column_updates:
            proposals.append(
                TrackerProposal(
                    tracker_id=tracker.id,
                    tracker_name=tracker.name,
                    row_id=row_id,
                    is_new_row=row is None,
                    column_updates=column_updates,
                )
            )

    return ProposalResult(
        tracker_proposals=proposals,
        tracker_matches=match_result.tracker_matches,
        email_summary=summarize_email(email, proposals),
    )

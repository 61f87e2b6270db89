"""
Update store - persist centralized updates and apply user decisions.

Approval is the only path that writes tracker rows. It runs as one
BEGIN IMMEDIATE transaction: the update's processed flag is re-read under
the write lock, every row is read and merged on the same connection, and
the update is closed before commit. Two approvals touching the same row
are therefore serialized, and the later one wins for any column both set.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import Any

from inseam.config import API_LIST_LIMIT_DEFAULT, SOURCE_QUOTE_MAX_CHARS
from inseam.email.models import Email
from inseam.infrastructure.database import db_transaction, retry_on_db_lock
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter, log_event
from inseam.trackers.models import Tracker, utc_now
from inseam.trackers.repository import TrackerRepository, TrackerRowRepository
from inseam.trackers.service import PermissionDeniedError
from inseam.trackers.validation import (
    DuplicatePrimaryKeyError,
    TrackerValidationError,
    validate_row_data,
)
from inseam.updates.models import (
    ApprovalResult,
    CentralizedUpdate,
    EditedProposal,
    ProposalApplyResult,
    ProposalResult,
    StoreResult,
    TrackerProposal,
    UpdateStats,
)
from inseam.updates.proposals import NEW_ROW_ID
from inseam.updates.repository import CentralizedUpdateRepository
from inseam.utils.redaction import redact

logger = get_logger(__name__)


class UpdateNotFoundError(LookupError):
    pass


def _require_owned(update: CentralizedUpdate | None, update_id: str, user_id: str) -> CentralizedUpdate:
    if update is None:
        raise UpdateNotFoundError(f"Update not found: {update_id}")
    if update.user_id != user_id:
        log_event("updates.permission_denied", update_id=update_id)
        raise PermissionDeniedError("Not authorized to modify this update")
    return update


def _check_primary_key(
    conn: sqlite3.Connection, tracker: Tracker, value: Any, row_id: str
) -> None:
    """
    Raises:
        DuplicatePrimaryKeyError: another row of the tracker already has value
    """
    if value is None:
        return
    pk = tracker.primary_key_column
    if TrackerRowRepository.primary_key_taken(conn, tracker.id, pk, value, exclude_row_id=row_id):
        raise DuplicatePrimaryKeyError(f"Duplicate {pk} value: {value} already exists in tracker")


class UpdateStore:
    def store_centralized_update(
        self, email: Email, proposal_result: ProposalResult, user_id: str
    ) -> StoreResult:
        """
        Persist the update for one email. A second call for the same email
        returns the existing id and inserts nothing.
        """
        summary = proposal_result.email_summary
        update = CentralizedUpdate(
            id=str(uuid.uuid4()),
            user_id=user_id,
            source="email",
            source_id=email.id,
            tracker_matches=proposal_result.tracker_matches,
            tracker_proposals=proposal_result.tracker_proposals,
            type=summary.type,
            category=summary.category,
            title=summary.title,
            summary=summary.summary,
            urgency=summary.urgency,
            from_name=email.sender.name or "Unknown",
            from_id=email.sender.email,
            source_subject=email.subject,
            source_quote=email.snippet or email.body[:SOURCE_QUOTE_MAX_CHARS],
            source_date=email.date,
        )

        update_id, created = CentralizedUpdateRepository.insert_or_get(update)

        if created:
            counter("updates.stored")
            log_event(
                "updates.stored",
                email_id=redact(email.id),
                proposals=len(update.tracker_proposals),
            )
        else:
            counter("updates.duplicate")
        return StoreResult(success=True, update_id=update_id, created=created)

    @retry_on_db_lock()
    def update_proposal_with_edits(
        self,
        update_id: str,
        user_id: str,
        edited_proposals: list[EditedProposal] | None = None,
    ) -> ApprovalResult:
        """
        Approve the update, writing its proposals to tracker rows.

        With edited_proposals, those values (optionally remapped to another
        column via target_column_key) are written instead of the stored
        proposals. Each proposal succeeds or fails on its own; the update is
        closed either way. An update that is already processed is left
        untouched and reported with already_processed=True.

        Raises:
            UpdateNotFoundError: No such update
            PermissionDeniedError: Update or a target tracker is not the caller's

        Side Effects:
            - Inserts/patches tracker_rows
            - Marks the update processed, approved and archived
        """
        now = utc_now()
        with db_transaction(immediate=True) as conn:
            update = _require_owned(
                CentralizedUpdateRepository.get_by_id(update_id, conn), update_id, user_id
            )
            if update.processed:
                counter("updates.approve_already_processed")
                return ApprovalResult(update_id=update_id, success=True, already_processed=True)

            if edited_proposals is None:
                work = [self._stored_changes(p) for p in update.tracker_proposals]
            else:
                work = [self._edited_changes(p, update) for p in edited_proposals]

            trackers: dict[str, Tracker | None] = {}
            results = []
            for tracker_id, row_id, is_new_row, changes in work:
                if tracker_id not in trackers:
                    trackers[tracker_id] = TrackerRepository.get_by_id(tracker_id)
                tracker = trackers[tracker_id]
                if tracker is not None and tracker.user_id != user_id:
                    raise PermissionDeniedError("Not authorized to modify this tracker")

                results.append(
                    self._apply(conn, tracker, tracker_id, row_id, is_new_row, changes, user_id)
                )

            CentralizedUpdateRepository.mark_processed(conn, update_id, now, approved_by=user_id)

        applied = sum(1 for r in results if r.success)
        counter("updates.approved")
        log_event("updates.approved", proposals=len(results), applied=applied)
        return ApprovalResult(update_id=update_id, success=True, results=results)

    def approve_update(self, update_id: str, user_id: str) -> ApprovalResult:
        """Approve with the stored proposal values."""
        return self.update_proposal_with_edits(update_id, user_id, None)

    @staticmethod
    def _stored_changes(proposal: TrackerProposal) -> tuple[str, str, bool, list[tuple[str, str, Any]]]:
        changes = [(cu.column_key, cu.column_key, cu.proposed_value) for cu in proposal.column_updates]
        return proposal.tracker_id, proposal.row_id, proposal.is_new_row, changes

    @staticmethod
    def _edited_changes(
        edited: EditedProposal, update: CentralizedUpdate
    ) -> tuple[str, str, bool, list[tuple[str, str, Any]]]:
        stored = next(
            (
                p
                for p in update.tracker_proposals
                if p.tracker_id == edited.tracker_id and p.row_id == edited.row_id
            ),
            None,
        )
        changes = [
            (c.column_key, c.target_column_key or c.column_key, c.new_value)
            for c in edited.edited_columns
        ]
        is_new_row = stored.is_new_row if stored else False
        return edited.tracker_id, edited.row_id, is_new_row, changes

    @staticmethod
    def _apply(
        conn: sqlite3.Connection,
        tracker: Tracker | None,
        tracker_id: str,
        row_id: str,
        is_new_row: bool,
        changes: list[tuple[str, str, Any]],
        user_id: str,
    ) -> ProposalApplyResult:
        """Validate and write one proposal on the open transaction."""

        def failed(error: str) -> ProposalApplyResult:
            counter("updates.proposal_failed")
            return ProposalApplyResult(
                tracker_id=tracker_id, row_id=row_id, success=False, is_new_row=is_new_row, error=error
            )

        if tracker is None:
            return failed("Tracker not found")

        data: dict[str, Any] = {}
        for _, target_key, value in changes:
            if tracker.column(target_key) is None:
                return failed(f"Column {target_key} not found in tracker")
            data[target_key] = value
        if not data:
            return failed("No valid columns to update")

        try:
            data = validate_row_data(tracker.columns, data, partial=True)
        except TrackerValidationError as e:
            return failed(str(e))

        pk = tracker.primary_key_column
        pk_value = data.get(pk)

        existing = None
        if row_id != NEW_ROW_ID:
            existing = TrackerRowRepository.find_by_primary_key(tracker_id, pk, row_id, conn=conn)
        if existing is None and pk_value is not None:
            existing = TrackerRowRepository.find_by_primary_key(tracker_id, pk, pk_value, conn=conn)

        if existing is not None:
            target_row_id = existing.row_id
        elif row_id != NEW_ROW_ID:
            target_row_id = row_id
        elif pk_value is not None:
            target_row_id = str(pk_value)
        else:
            target_row_id = str(uuid.uuid4())

        try:
            _check_primary_key(conn, tracker, pk_value, target_row_id)
        except DuplicatePrimaryKeyError as e:
            return failed(str(e))

        if existing is None and pk not in data and target_row_id == row_id:
            data[pk] = row_id

        try:
            TrackerRowRepository.upsert(conn, tracker_id, target_row_id, data, user_id)
        except sqlite3.IntegrityError as e:
            return failed(f"Could not write row: {e}")

        return ProposalApplyResult(
            tracker_id=tracker_id,
            row_id=target_row_id,
            success=True,
            is_new_row=existing is None,
        )

    @retry_on_db_lock()
    def reject_proposals(self, update_id: str, user_id: str) -> ApprovalResult:
        """
        Close the update as rejected. Tracker rows are not touched.

        Raises:
            UpdateNotFoundError: No such update
            PermissionDeniedError: Update is not the caller's
        """
        now = utc_now()
        with db_transaction(immediate=True) as conn:
            update = _require_owned(
                CentralizedUpdateRepository.get_by_id(update_id, conn), update_id, user_id
            )
            if update.processed:
                return ApprovalResult(update_id=update_id, success=True, already_processed=True)
            CentralizedUpdateRepository.mark_processed(conn, update_id, now, rejected=True)

        counter("updates.rejected")
        log_event("updates.rejected", proposals=len(update.tracker_proposals))
        return ApprovalResult(update_id=update_id, success=True)

    def get_update(self, update_id: str, user_id: str) -> CentralizedUpdate:
        return _require_owned(CentralizedUpdateRepository.get_by_id(update_id), update_id, user_id)

    def mark_as_viewed(self, update_id: str, user_id: str) -> bool:
        self.get_update(update_id, user_id)
        return CentralizedUpdateRepository.set_viewed(update_id, user_id, utc_now())

    def mark_all_as_viewed(self, user_id: str) -> int:
        """Mark the caller's unviewed, unarchived updates viewed. Returns how many."""
        count = CentralizedUpdateRepository.mark_all_viewed(user_id, utc_now())
        log_event("updates.all_viewed", count=count)
        return count

    def archive_update(self, update_id: str, user_id: str) -> None:
        self.get_update(update_id, user_id)
        CentralizedUpdateRepository.set_archived(update_id, utc_now())

    def list_updates(
        self,
        user_id: str,
        include_archived: bool = False,
        limit: int = API_LIST_LIMIT_DEFAULT,
        offset: int = 0,
    ) -> list[CentralizedUpdate]:
        return CentralizedUpdateRepository.list_by_user(user_id, include_archived, limit, offset)

    def get_stats(self, user_id: str) -> UpdateStats:
        return CentralizedUpdateRepository.stats(user_id)

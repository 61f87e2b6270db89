"""
Tracker operations with ownership checks.

Routes and the update store go through these functions rather than the
repositories so every tracker access is verified against the caller.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import Any

from inseam.config import ALIAS_MAX_LENGTH
from inseam.infrastructure.database import db_transaction, retry_on_db_lock
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter, log_event
from inseam.trackers.models import (
    AliasEntry,
    AliasFailure,
    BulkAliasResult,
    RowAlias,
    Tracker,
    TrackerCreate,
    TrackerRow,
    TrackerUpdate,
    utc_now,
)
from inseam.trackers.repository import RowAliasRepository, TrackerRepository, TrackerRowRepository
from inseam.trackers.validation import (
    DuplicatePrimaryKeyError,
    TrackerValidationError,
    generate_slug,
    validate_columns,
    validate_row_data,
)

logger = get_logger(__name__)


class TrackerNotFoundError(LookupError):
    pass


class PermissionDeniedError(PermissionError):
    """Caller does not own the tracker or update it asked for."""


class RowNotFoundError(LookupError):
    pass


def _unique_slug(user_id: str, name: str) -> str:
    base = generate_slug(name) or "tracker"
    slug = base
    suffix = 1
    while TrackerRepository.slug_exists(user_id, slug):
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


def create_tracker(user_id: str, data: TrackerCreate) -> Tracker:
    """
    Raises:
        TrackerValidationError: Column definitions are inconsistent
    """
    validate_columns(data.columns, data.primary_key_column)

    now = utc_now()
    tracker = Tracker(
        id=str(uuid.uuid4()),
        user_id=user_id,
        name=data.name,
        slug=_unique_slug(user_id, data.name),
        description=data.description,
        color=data.color,
        columns=data.columns,
        primary_key_column=data.primary_key_column,
        created_at=now,
        updated_at=now,
    )
    return TrackerRepository.create(tracker)


def get_tracker(tracker_id: str, user_id: str) -> Tracker:
    """
    Raises:
        TrackerNotFoundError: No such tracker
        PermissionDeniedError: Tracker belongs to another user
    """
    tracker = TrackerRepository.get_by_id(tracker_id)
    if tracker is None:
        raise TrackerNotFoundError(f"Tracker not found: {tracker_id}")
    if tracker.user_id != user_id:
        log_event("trackers.permission_denied", tracker_id=tracker_id)
        raise PermissionDeniedError("Unauthorized: You don't own this tracker")
    return tracker


def list_active_trackers(user_id: str) -> list[Tracker]:
    return TrackerRepository.list_active_by_user(user_id)


def update_tracker(tracker_id: str, user_id: str, changes: TrackerUpdate) -> Tracker:
    """
    Apply a partial edit. The slug is kept when the name changes.

    Raises:
        TrackerValidationError: Resulting columns or primary key are inconsistent
    """
    tracker = get_tracker(tracker_id, user_id)
    updated = tracker.model_copy(
        update=changes.model_dump(exclude_unset=True, exclude_none=True, exclude={"columns"})
    )
    if changes.columns is not None:
        updated.columns = changes.columns
    validate_columns(updated.columns, updated.primary_key_column)

    updated.updated_at = utc_now()
    TrackerRepository.update(updated)
    log_event("trackers.updated", tracker_id=tracker_id, fields=sorted(changes.model_fields_set))
    return updated


def update_column_ai_status(tracker_id: str, column_id: str, ai_enabled: bool, user_id: str) -> Tracker:
    """
    Toggle whether the matcher may extract values for one column.

    Raises:
        TrackerValidationError: No column with that id
    """
    tracker = get_tracker(tracker_id, user_id)
    column = next((c for c in tracker.columns if c.id == column_id), None)
    if column is None:
        raise TrackerValidationError({"column_id": f"Column {column_id} not found"})

    column.ai_enabled = ai_enabled
    tracker.updated_at = utc_now()
    TrackerRepository.update(tracker)
    logger.info("Column %s of tracker %s ai_enabled=%s", column_id, tracker_id, ai_enabled)
    return tracker


def delete_tracker(tracker_id: str, user_id: str) -> None:
    """Delete the tracker with all of its rows and aliases."""
    get_tracker(tracker_id, user_id)
    TrackerRepository.delete(tracker_id)
    counter("trackers.deleted")


def list_rows(tracker_id: str, user_id: str, limit: int = 500, offset: int = 0) -> list[TrackerRow]:
    get_tracker(tracker_id, user_id)
    return TrackerRowRepository.list_rows(tracker_id, limit=limit, offset=offset)


@retry_on_db_lock()
def add_row(tracker_id: str, data: dict[str, Any], user_id: str) -> TrackerRow:
    """
    Insert a row by hand. The primary-key value becomes the row id.

    Raises:
        TrackerValidationError: Data fails validation, or has no primary key
        DuplicatePrimaryKeyError: A row with that key already exists
    """
    tracker = get_tracker(tracker_id, user_id)
    validated = validate_row_data(tracker.columns, data)

    pk = tracker.primary_key_column
    pk_value = validated.get(pk)
    if pk_value is None or pk_value == "":
        raise TrackerValidationError({pk: f'Primary key "{pk}" is required'})
    row_id = str(pk_value)

    with db_transaction(immediate=True) as conn:
        if TrackerRowRepository.find_by_primary_key(tracker_id, pk, pk_value, conn=conn):
            raise DuplicatePrimaryKeyError(f'Row with {pk} "{row_id}" already exists')
        row = TrackerRowRepository.upsert(conn, tracker_id, row_id, validated, user_id)

    logger.info("Added row %s to tracker %s", row_id, tracker_id)
    return row


@retry_on_db_lock()
def update_row(tracker_id: str, row_id: str, changes: dict[str, Any], user_id: str) -> TrackerRow:
    """
    Merge changes into a row and re-validate the whole row.

    Changing the primary-key value re-keys the row unless another row has it.

    Raises:
        RowNotFoundError: No row with that id
        TrackerValidationError: Merged data fails validation
        DuplicatePrimaryKeyError: New key already used by another row
    """
    tracker = get_tracker(tracker_id, user_id)
    pk = tracker.primary_key_column

    with db_transaction(immediate=True) as conn:
        row = TrackerRowRepository.get(conn, tracker_id, row_id)
        if row is None:
            raise RowNotFoundError(f"Row not found: {row_id}")

        validated = validate_row_data(tracker.columns, {**row.data, **changes})
        pk_value = validated.get(pk)
        if pk_value is None or pk_value == "":
            raise TrackerValidationError({pk: f'Primary key "{pk}" is required'})

        new_row_id = str(pk_value)
        if new_row_id != row_id and TrackerRowRepository.primary_key_taken(
            conn, tracker_id, pk, pk_value, exclude_row_id=row_id
        ):
            raise DuplicatePrimaryKeyError(f'Row with {pk} "{new_row_id}" already exists')

        return TrackerRowRepository.replace(conn, row, new_row_id, validated, user_id)


@retry_on_db_lock()
def delete_row(tracker_id: str, row_id: str, user_id: str) -> None:
    """
    Raises:
        RowNotFoundError: No row with that id
    """
    get_tracker(tracker_id, user_id)
    with db_transaction() as conn:
        if not TrackerRowRepository.delete(conn, tracker_id, row_id):
            raise RowNotFoundError(f"Row not found: {row_id}")


def normalize_alias(alias: str) -> str:
    return alias.strip().lower()


def add_alias(tracker_id: str, row_id: str, alias: str, user_id: str) -> RowAlias:
    """
    Register an alternate name for a row.

    Raises:
        TrackerValidationError: Empty, too long, same as the row id, or
            already used by a row in this tracker
    """
    get_tracker(tracker_id, user_id)
    return _insert_alias(tracker_id, row_id, alias, user_id)


def bulk_add_aliases(tracker_id: str, entries: list[AliasEntry], user_id: str) -> BulkAliasResult:
    """Add several aliases; each entry succeeds or fails on its own."""
    get_tracker(tracker_id, user_id)

    result = BulkAliasResult()
    for entry in entries:
        try:
            result.added.append(_insert_alias(tracker_id, entry.row_id, entry.alias, user_id))
        except TrackerValidationError as e:
            result.failed.append(AliasFailure(alias=entry.alias, reason=e.errors["alias"]))

    log_event(
        "trackers.aliases_bulk_added",
        tracker_id=tracker_id,
        added=len(result.added),
        failed=len(result.failed),
    )
    return result


def _insert_alias(tracker_id: str, row_id: str, alias: str, user_id: str) -> RowAlias:
    normalized = normalize_alias(alias)
    if not normalized:
        raise TrackerValidationError({"alias": "Alias cannot be empty"})
    if len(normalized) > ALIAS_MAX_LENGTH:
        raise TrackerValidationError(
            {"alias": f"Alias must be {ALIAS_MAX_LENGTH} characters or less"}
        )
    if normalized == row_id.strip().lower():
        raise TrackerValidationError({"alias": "Alias cannot be the same as the row ID"})

    record = RowAlias(
        id=str(uuid.uuid4()),
        tracker_id=tracker_id,
        row_id=row_id,
        alias=normalized,
        user_id=user_id,
    )
    try:
        RowAliasRepository.create(record)
    except sqlite3.IntegrityError:
        existing = RowAliasRepository.find(tracker_id, normalized)
        owner = existing.row_id if existing else "another row"
        raise TrackerValidationError(
            {"alias": f'Alias "{normalized}" is already used by row "{owner}"'}
        ) from None

    logger.info("Added alias for tracker %s row %s", tracker_id, row_id)
    return record


def remove_alias(alias_id: str, user_id: str, tracker_id: str | None = None) -> None:
    """
    Raises:
        TrackerNotFoundError: No such alias (in tracker_id, when given)
        PermissionDeniedError: Alias belongs to another user's tracker
    """
    alias = RowAliasRepository.get_by_id(alias_id)
    if alias is None or (tracker_id is not None and alias.tracker_id != tracker_id):
        raise TrackerNotFoundError(f"Alias not found: {alias_id}")
    get_tracker(alias.tracker_id, user_id)
    RowAliasRepository.delete(alias_id)


def list_aliases(tracker_id: str, user_id: str, row_id: str | None = None) -> list[RowAlias]:
    get_tracker(tracker_id, user_id)
    return RowAliasRepository.list_for_tracker(tracker_id, row_id)


def resolve_alias(tracker_id: str, term: Any) -> str | None:
    """Row id the term is an alias for, or None."""
    if term is None:
        return None
    normalized = normalize_alias(str(term))
    if not normalized:
        return None
    alias = RowAliasRepository.find(tracker_id, normalized)
    return alias.row_id if alias else None

"""
Tracker endpoints: tracker CRUD, column AI toggles, rows, row aliases.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from inseam.api.middleware.user_auth import AuthenticatedUser, get_current_user
from inseam.config import ALIAS_MAX_LENGTH, API_LIST_LIMIT_MAX
from inseam.observability.logging import get_logger
from inseam.trackers import service
from inseam.trackers.models import (
    AliasEntry,
    BulkAliasResult,
    RowAlias,
    Tracker,
    TrackerCreate,
    TrackerRow,
    TrackerUpdate,
)
from inseam.trackers.service import PermissionDeniedError, RowNotFoundError, TrackerNotFoundError
from inseam.trackers.validation import DuplicatePrimaryKeyError, TrackerValidationError
from inseam.utils.error_sanitizer import get_safe_error_detail, sanitize_error_message

router = APIRouter(prefix="/api/trackers", tags=["trackers"])
logger = get_logger(__name__)


class AddAliasRequest(BaseModel):
    row_id: str = Field(..., min_length=1)
    alias: str = Field(..., max_length=ALIAS_MAX_LENGTH * 2)


class BulkAliasRequest(BaseModel):
    aliases: list[AliasEntry] = Field(..., min_length=1, max_length=API_LIST_LIMIT_MAX)


class RowRequest(BaseModel):
    data: dict[str, Any]


class ColumnAIRequest(BaseModel):
    ai_enabled: bool


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, RowNotFoundError):
        return HTTPException(status_code=404, detail="Row not found")
    if isinstance(e, TrackerNotFoundError):
        return HTTPException(status_code=404, detail="Tracker not found")
    if isinstance(e, PermissionDeniedError):
        return HTTPException(status_code=403, detail="Access denied.")
    if isinstance(e, TrackerValidationError):
        return HTTPException(
            status_code=400,
            detail={
                "message": "Validation failed",
                "errors": {k: sanitize_error_message(v, 400) for k, v in e.errors.items()},
            },
        )
    if isinstance(e, DuplicatePrimaryKeyError):
        return HTTPException(status_code=409, detail=sanitize_error_message(str(e), 409))
    return HTTPException(status_code=500, detail=get_safe_error_detail(e, 500, f"Failed to {action}"))


@router.get("", response_model=list[Tracker])
async def list_trackers(user: AuthenticatedUser = Depends(get_current_user)) -> list[Tracker]:
    return service.list_active_trackers(user.id)


@router.post("", response_model=Tracker, status_code=201)
async def create_tracker(
    request: TrackerCreate,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Tracker:
    try:
        return service.create_tracker(user.id, request)
    except Exception as e:
        raise _http_error(e, "create tracker") from None


@router.get("/{tracker_id}", response_model=Tracker)
async def get_tracker(
    tracker_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Tracker:
    try:
        return service.get_tracker(tracker_id, user.id)
    except Exception as e:
        raise _http_error(e, "get tracker") from None


@router.get("/{tracker_id}/rows", response_model=list[TrackerRow])
async def list_rows(
    tracker_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    limit: int = Query(API_LIST_LIMIT_MAX, ge=1, le=API_LIST_LIMIT_MAX),
    offset: int = Query(0, ge=0),
) -> list[TrackerRow]:
    try:
        return service.list_rows(tracker_id, user.id, limit, offset)
    except Exception as e:
        raise _http_error(e, "list rows") from None


@router.get("/{tracker_id}/aliases", response_model=list[RowAlias])
async def list_aliases(
    tracker_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    row_id: str | None = Query(None),
) -> list[RowAlias]:
    try:
        return service.list_aliases(tracker_id, user.id, row_id)
    except Exception as e:
        raise _http_error(e, "list aliases") from None


@router.post("/{tracker_id}/aliases", response_model=RowAlias, status_code=201)
async def add_alias(
    tracker_id: str,
    request: AddAliasRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> RowAlias:
    """Let the matcher resolve another name (e.g. a nickname) to an existing row."""
    try:
        return service.add_alias(tracker_id, request.row_id, request.alias, user.id)
    except Exception as e:
        raise _http_error(e, "add alias") from None


@router.delete("/{tracker_id}/aliases/{alias_id}", status_code=204)
async def remove_alias(
    tracker_id: str,
    alias_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Response:
    try:
        service.remove_alias(alias_id, user.id, tracker_id)
    except Exception as e:
        raise _http_error(e, "remove alias") from None
    return Response(status_code=204)


@router.patch("/{tracker_id}", response_model=Tracker)
async def update_tracker(
    tracker_id: str,
    request: TrackerUpdate,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Tracker:
    try:
        return service.update_tracker(tracker_id, user.id, request)
    except Exception as e:
        raise _http_error(e, "update tracker") from None


@router.delete("/{tracker_id}", status_code=204)
async def delete_tracker(
    tracker_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Response:
    try:
        service.delete_tracker(tracker_id, user.id)
    except Exception as e:
        raise _http_error(e, "delete tracker") from None
    return Response(status_code=204)


@router.patch("/{tracker_id}/columns/{column_id}/ai", response_model=Tracker)
async def update_column_ai_status(
    tracker_id: str,
    column_id: str,
    request: ColumnAIRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Tracker:
    """Turn matcher extraction on or off for one column."""
    try:
        return service.update_column_ai_status(tracker_id, column_id, request.ai_enabled, user.id)
    except Exception as e:
        raise _http_error(e, "update column") from None


@router.post("/{tracker_id}/rows", response_model=TrackerRow, status_code=201)
async def add_row(
    tracker_id: str,
    request: RowRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> TrackerRow:
    try:
        return service.add_row(tracker_id, request.data, user.id)
    except Exception as e:
        raise _http_error(e, "add row") from None


@router.patch("/{tracker_id}/rows/{row_id}", response_model=TrackerRow)
async def update_row(
    tracker_id: str,
    row_id: str,
    request: RowRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> TrackerRow:
    try:
        return service.update_row(tracker_id, row_id, request.data, user.id)
    except Exception as e:
        raise _http_error(e, "update row") from None


@router.delete("/{tracker_id}/rows/{row_id}", status_code=204)
async def delete_row(
    tracker_id: str,
    row_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
) -> Response:
    try:
        service.delete_row(tracker_id, row_id, user.id)
    except Exception as e:
        raise _http_error(e, "delete row") from None
    return Response(status_code=204)


@router.post("/{tracker_id}/aliases/bulk", response_model=BulkAliasResult)
async def bulk_add_aliases(
    tracker_id: str,
    request: BulkAliasRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> BulkAliasResult:
    """Add many aliases at once; per-alias failures are reported, not raised."""
    try:
        return service.bulk_add_aliases(tracker_id, request.aliases, user.id)
    except Exception as e:
        raise _http_error(e, "add aliases") from None

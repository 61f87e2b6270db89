"""
Update review endpoints.

List pending updates, approve (optionally with edits) or reject them, and
keep the viewed/archived bookkeeping the dashboard badges depend on.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from inseam.api.dependencies import get_update_store
from inseam.api.middleware.user_auth import AuthenticatedUser, get_current_user
from inseam.config import API_LIST_LIMIT_DEFAULT, API_LIST_LIMIT_MAX
from inseam.observability.logging import get_logger
from inseam.trackers.service import PermissionDeniedError
from inseam.updates.models import ApprovalResult, CentralizedUpdate, EditedProposal, UpdateStats
from inseam.updates.service import UpdateNotFoundError, UpdateStore
from inseam.utils.error_sanitizer import get_safe_error_detail

router = APIRouter(prefix="/api/updates", tags=["updates"])
logger = get_logger(__name__)


class UpdateListResponse(BaseModel):
    updates: list[CentralizedUpdate]
    count: int


class ApproveRequest(BaseModel):
    """Omit edited_proposals to apply the stored proposals as-is."""

    edited_proposals: list[EditedProposal] | None = None


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, UpdateNotFoundError):
        return HTTPException(status_code=404, detail="Update not found")
    if isinstance(e, PermissionDeniedError):
        return HTTPException(status_code=403, detail="Access denied.")
    return HTTPException(status_code=500, detail=get_safe_error_detail(e, 500, f"Failed to {action}"))


@router.get("", response_model=UpdateListResponse)
async def list_updates(
    user: AuthenticatedUser = Depends(get_current_user),
    store: UpdateStore = Depends(get_update_store),
    include_archived: bool = Query(False),
    limit: int = Query(API_LIST_LIMIT_DEFAULT, ge=1, le=API_LIST_LIMIT_MAX),
    offset: int = Query(0, ge=0),
) -> UpdateListResponse:
    updates = store.list_updates(user.id, include_archived, limit, offset)
    return UpdateListResponse(updates=updates, count=len(updates))


@router.get("/stats", response_model=UpdateStats)
async def get_stats(
    user: AuthenticatedUser = Depends(get_current_user),
    store: UpdateStore = Depends(get_update_store),
) -> UpdateStats:
    return store.get_stats(user.id)


@router.post("/viewed")
async def mark_all_viewed(
    user: AuthenticatedUser = Depends(get_current_user),
    store: UpdateStore = Depends(get_update_store),
) -> dict[str, int]:
    return {"count": store.mark_all_as_viewed(user.id)}


@router.get("/{update_id}", response_model=CentralizedUpdate)
async def get_update(
    update_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    store: UpdateStore = Depends(get_update_store),
) -> CentralizedUpdate:
    try:
        return store.get_update(update_id, user.id)
    except Exception as e:
        raise _http_error(e, "get update") from None


@router.post("/{update_id}/approve", response_model=ApprovalResult)
async def approve_update(
    update_id: str,
    request: ApproveRequest | None = None,
    user: AuthenticatedUser = Depends(get_current_user),
    store: UpdateStore = Depends(get_update_store),
) -> ApprovalResult:
    """
    Write the update's proposals into tracker rows and close it.

    Per-proposal failures (bad value, duplicate primary key) are reported in
    results; the request itself still succeeds.
    """
    edits = request.edited_proposals if request else None
    try:
        return store.update_proposal_with_edits(update_id, user.id, edits)
    except Exception as e:
        raise _http_error(e, "approve update") from None


@router.post("/{update_id}/reject", response_model=ApprovalResult)
async def reject_update(
    update_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    store: UpdateStore = Depends(get_update_store),
) -> ApprovalResult:
    try:
        return store.reject_proposals(update_id, user.id)
    except Exception as e:
        raise _http_error(e, "reject update") from None


@router.post("/{update_id}/view")
async def mark_viewed(
    update_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    store: UpdateStore = Depends(get_update_store),
) -> dict[str, bool]:
    try:
        changed = store.mark_as_viewed(update_id, user.id)
    except Exception as e:
        raise _http_error(e, "mark update viewed") from None
    return {"success": True, "changed": changed}


@router.post("/{update_id}/archive")
async def archive_update(
    update_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    store: UpdateStore = Depends(get_update_store),
) -> dict[str, bool]:
    try:
        store.archive_update(update_id, user.id)
    except Exception as e:
        raise _http_error(e, "archive update") from None
    return {"success": True}

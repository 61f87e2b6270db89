"""
Inbox processing endpoints.

Start a batch over the caller's new emails, poll its progress, cancel it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from inseam.api.dependencies import get_orchestrator
from inseam.api.middleware.user_auth import AuthenticatedUser, get_current_user
from inseam.config import DEFAULT_EMAIL_FETCH_LIMIT, MAX_EMAIL_SUMMARY_COUNT
from inseam.infrastructure.rate_limit import RateLimitExceededError
from inseam.observability.logging import get_logger
from inseam.pipeline.models import BatchJob, BatchResult, BatchStatistics
from inseam.pipeline.orchestrator import BatchNotFoundError, BatchOrchestrator
from inseam.utils.error_sanitizer import get_safe_error_detail, sanitize_error_message

router = APIRouter(prefix="/api/inbox", tags=["inbox"])
logger = get_logger(__name__)


class ProcessInboxRequest(BaseModel):
    email_count: int = Field(DEFAULT_EMAIL_FETCH_LIMIT, ge=1, le=MAX_EMAIL_SUMMARY_COUNT)
    wait: bool = True


class BatchStatusResponse(BaseModel):
    workflow_id: str
    status: str
    steps_completed: int
    email_statuses: dict[str, str]
    statistics: BatchStatistics | None
    error: str | None
    created_at: str
    completed_at: str | None

    @classmethod
    def from_job(cls, job: BatchJob) -> BatchStatusResponse:
        return cls(
            workflow_id=job.workflow_id,
            status=job.status.value,
            steps_completed=job.steps_completed,
            email_statuses={k: v.value for k, v in job.email_statuses.items()},
            statistics=job.statistics,
            error=job.error,
            created_at=job.created_at.isoformat(),
            completed_at=job.completed_at.isoformat() if job.completed_at else None,
        )


@router.post("/process", response_model=BatchResult)
async def process_inbox(
    request: ProcessInboxRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> BatchResult:
    """
    Fetch the caller's new emails and turn them into pending updates.

    "Not connected" and "no new emails" are both answered with 200; the
    outcome field tells them apart.
    """
    try:
        return await orchestrator.process_inbox(user.id, request.email_count, wait=request.wait)
    except RateLimitExceededError as e:
        raise HTTPException(
            status_code=429,
            detail=sanitize_error_message(str(e), 429),
            headers={"Retry-After": str(e.retry_after_seconds)},
        ) from None
    except Exception as e:
        raise HTTPException(
            status_code=500, detail=get_safe_error_detail(e, 500, "Failed to process inbox")
        ) from None


@router.get("/batches/{workflow_id}", response_model=BatchStatusResponse)
async def get_batch_status(
    workflow_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> BatchStatusResponse:
    try:
        job = orchestrator.get_batch_status(workflow_id, user.id)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found") from None
    return BatchStatusResponse.from_job(job)


@router.post("/batches/{workflow_id}/cancel")
async def cancel_batch(
    workflow_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> dict[str, bool]:
    try:
        cancelled = orchestrator.cancel_batch(workflow_id, user.id)
    except BatchNotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found") from None
    return {"cancelled": cancelled}

"""
Batch pipeline result types.

Each email's pipeline resolves to exactly one tagged outcome (success or
failure); the orchestrator aggregates those into BatchStatistics.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from inseam.trackers.models import parse_dt, utc_now


class BatchStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStep(int, Enum):
    FETCH = 1
    DISPATCH = 2
    AGGREGATE = 3
    CHECKPOINT = 4


class EmailStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InboxOutcome(str, Enum):
    PROCESSED = "processed"
    STARTED = "started"  # running in the background
    NO_NEW_EMAILS = "no_new_emails"
    NOT_CONNECTED = "not_connected"
    FETCH_FAILED = "fetch_failed"


class EmailSuccess(BaseModel):
    kind: Literal["success"] = "success"
    email_id: str
    update_id: str
    proposal_count: int
    tracker_count: int
    created: bool = True


class EmailFailure(BaseModel):
    kind: Literal["failure"] = "failure"
    email_id: str
    error: str
    error_type: str | None = None
    cancelled: bool = False


EmailOutcome = Annotated[EmailSuccess | EmailFailure, Field(discriminator="kind")]


class BatchStatistics(BaseModel):
    total_emails: int = 0
    successful_updates: int = 0
    failed_processing: int = 0
    total_proposals: int = 0
    average_proposals_per_email: float = 0.0

    @classmethod
    def from_outcomes(cls, outcomes: list[EmailSuccess | EmailFailure]) -> BatchStatistics:
        successes = [o for o in outcomes if isinstance(o, EmailSuccess)]
        total_proposals = sum(o.proposal_count for o in successes)
        return cls(
            total_emails=len(outcomes),
            successful_updates=len(successes),
            failed_processing=len(outcomes) - len(successes),
            total_proposals=total_proposals,
            average_proposals_per_email=total_proposals / len(successes) if successes else 0.0,
        )


class BatchResult(BaseModel):
    success: bool
    outcome: InboxOutcome
    message: str
    statistics: BatchStatistics = Field(default_factory=BatchStatistics)
    workflow_id: str | None = None
    results: list[EmailSuccess] = Field(default_factory=list)
    failed_emails: list[EmailFailure] = Field(default_factory=list)


class BatchJob(BaseModel):
    """Persisted state of one batch, polled by the UI."""

    workflow_id: str
    user_id: str
    status: BatchStatus = BatchStatus.PENDING
    steps_completed: int = 0
    email_statuses: dict[str, EmailStatus] = Field(default_factory=dict)
    statistics: BatchStatistics | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "steps_completed": self.steps_completed,
            "email_statuses": json.dumps({k: v.value for k, v in self.email_statuses.items()}),
            "statistics": self.statistics.model_dump_json() if self.statistics else None,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> BatchJob:
        statistics = row.get("statistics")
        return cls(
            workflow_id=row["workflow_id"],
            user_id=row["user_id"],
            status=BatchStatus(row["status"]),
            steps_completed=row["steps_completed"],
            email_statuses={
                k: EmailStatus(v) for k, v in json.loads(row["email_statuses"] or "{}").items()
            },
            statistics=BatchStatistics.model_validate_json(statistics) if statistics else None,
            error=row.get("error"),
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
            completed_at=parse_dt(row.get("completed_at")),
        )

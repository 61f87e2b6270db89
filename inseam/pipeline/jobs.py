"""
Batch job records - the explicit state machine behind batch polling.
"""

from __future__ import annotations

import json

from inseam.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from inseam.observability.logging import get_logger
from inseam.pipeline.models import BatchJob, BatchStatistics, BatchStatus, EmailStatus
from inseam.trackers.models import utc_now

logger = get_logger(__name__)


class BatchJobRepository:
    @staticmethod
    @retry_on_db_lock()
    def create(job: BatchJob) -> BatchJob:
        """
        Side Effects:
            - Inserts row into batch_jobs table
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO batch_jobs (
                    workflow_id, user_id, status, steps_completed, email_statuses,
                    statistics, error, created_at, updated_at, completed_at
                ) VALUES (
                    :workflow_id, :user_id, :status, :steps_completed, :email_statuses,
                    :statistics, :error, :created_at, :updated_at, :completed_at
                )
                """,
                job.to_db_dict(),
            )
        return job

    @staticmethod
    def get(workflow_id: str) -> BatchJob | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM batch_jobs WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
        return BatchJob.from_db_row(dict(row)) if row else None

    @staticmethod
    @retry_on_db_lock()
    def advance(
        workflow_id: str,
        status: BatchStatus,
        steps_completed: int,
        email_statuses: dict[str, EmailStatus] | None = None,
        statistics: BatchStatistics | None = None,
        error: str | None = None,
    ) -> None:
        """
        Move the job to a new status/step. Fields left as None keep their
        stored value.

        Side Effects:
            - Updates the batch_jobs row
        """
        now = utc_now().isoformat()
        assignments = ["status = ?", "steps_completed = ?", "updated_at = ?"]
        params: list[object] = [status.value, steps_completed, now]

        if email_statuses is not None:
            job = BatchJobRepository.get(workflow_id)
            merged = dict(job.email_statuses) if job else {}
            merged.update(email_statuses)
            assignments.append("email_statuses = ?")
            params.append(json.dumps({k: v.value for k, v in merged.items()}))
        if statistics is not None:
            assignments.append("statistics = ?")
            params.append(statistics.model_dump_json())
        if error is not None:
            assignments.append("error = ?")
            params.append(error)
        if status in (BatchStatus.COMPLETED, BatchStatus.FAILED):
            assignments.append("completed_at = ?")
            params.append(now)

        params.append(workflow_id)
        with db_transaction() as conn:
            conn.execute(
                f"UPDATE batch_jobs SET {', '.join(assignments)} WHERE workflow_id = ?",
                params,
            )

"""
Batch orchestrator - Fetch -> Dispatch -> Aggregate -> Checkpoint.

Every email runs its own pipeline (match -> build proposals -> store)
concurrently, capped by a semaphore. A pipeline never raises: it resolves
to an EmailSuccess or EmailFailure, so one email cannot abort its
siblings. Shared state (the batch job record, the processed-email
checkpoint) is only written from the orchestrator itself, after all
pipelines have resolved.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable

from inseam.config import BATCH_CONCURRENCY, DEFAULT_EMAIL_FETCH_LIMIT, MAX_EMAIL_SUMMARY_COUNT
from inseam.email.fetcher import EmailFetcher
from inseam.email.models import Email, FetchStatus
from inseam.infrastructure.retry import AdapterError
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter, log_event, time_block
from inseam.pipeline.jobs import BatchJobRepository
from inseam.pipeline.models import (
    BatchJob,
    BatchResult,
    BatchStatistics,
    BatchStatus,
    BatchStep,
    EmailFailure,
    EmailStatus,
    EmailSuccess,
    InboxOutcome,
)
from inseam.storage import processed_emails
from inseam.trackers.models import Tracker
from inseam.trackers.service import list_active_trackers
from inseam.updates.matcher import TrackerMatcher
from inseam.updates.proposals import RowLookup, build_proposals, lookup_row
from inseam.updates.service import UpdateStore
from inseam.utils.error_sanitizer import sanitize_error_message
from inseam.utils.redaction import redact

logger = get_logger(__name__)

NOT_CONNECTED_MESSAGE = "No email account connected. Please connect your email first."
NO_NEW_EMAILS_MESSAGE = "No new emails since last check"
NO_EMAILS_MESSAGE = "No emails found"
CANCELLED_ERROR = "Batch cancelled before this email started"


class BatchNotFoundError(LookupError):
    pass


def _failure_message(error: Exception) -> str:
    """Client-safe failure text; internals and validation dumps become a generic message."""
    status = getattr(error, "status_code", None) or 422
    return sanitize_error_message(str(error) or type(error).__name__, status)


class BatchOrchestrator:
    def __init__(
        self,
        fetcher: EmailFetcher | None = None,
        matcher: TrackerMatcher | None = None,
        store: UpdateStore | None = None,
        tracker_loader: Callable[[str], list[Tracker]] = list_active_trackers,
        row_lookup: RowLookup = lookup_row,
        concurrency: int = BATCH_CONCURRENCY,
    ):
        self.fetcher = fetcher or EmailFetcher()
        self.matcher = matcher or TrackerMatcher()
        self.store = store or UpdateStore()
        self.tracker_loader = tracker_loader
        self.row_lookup = row_lookup
        self.concurrency = max(1, concurrency)
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task[BatchResult]] = {}

    async def process_inbox(
        self,
        user_id: str,
        email_count: int = DEFAULT_EMAIL_FETCH_LIMIT,
        wait: bool = True,
    ) -> BatchResult:
        """
        Fetch new emails and run the batch.

        An empty fetch returns immediately with zero statistics and no
        workflow id. With wait=False the batch runs as a background task and
        the returned result only carries the workflow id to poll.

        Raises:
            RateLimitExceededError: User's fetch quota is used up
        """
        count = max(1, min(email_count, MAX_EMAIL_SUMMARY_COUNT))
        log_event("inbox.process.started", user_id=user_id, email_count=count)

        try:
            fetched = await self.fetcher.fetch_new_emails(user_id, count)
        except AdapterError as e:
            logger.warning("Email fetch failed for user %s (status=%s)", user_id, e.status_code)
            return BatchResult(
                success=False,
                outcome=InboxOutcome.FETCH_FAILED,
                message="Failed to fetch emails. Please try again.",
            )

        if fetched.status == FetchStatus.NOT_CONNECTED:
            return BatchResult(
                success=False, outcome=InboxOutcome.NOT_CONNECTED, message=NOT_CONNECTED_MESSAGE
            )

        if not fetched.emails:
            message = NO_NEW_EMAILS_MESSAGE if fetched.fetched_count else NO_EMAILS_MESSAGE
            return BatchResult(success=True, outcome=InboxOutcome.NO_NEW_EMAILS, message=message)

        workflow_id = str(uuid.uuid4())
        await asyncio.to_thread(
            BatchJobRepository.create,
            BatchJob(
                workflow_id=workflow_id,
                user_id=user_id,
                status=BatchStatus.PENDING,
                steps_completed=BatchStep.FETCH.value,
                email_statuses={e.id: EmailStatus.PENDING for e in fetched.emails},
            ),
        )
        self._cancel_events[workflow_id] = asyncio.Event()

        if wait:
            return await self._run_batch(workflow_id, user_id, fetched.emails)

        task = asyncio.create_task(self._run_batch(workflow_id, user_id, fetched.emails))
        self._tasks[workflow_id] = task
        task.add_done_callback(lambda t: self._background_done(workflow_id, t))
        return BatchResult(
            success=True,
            outcome=InboxOutcome.STARTED,
            message=f"Processing {len(fetched.emails)} emails",
            statistics=BatchStatistics(total_emails=len(fetched.emails)),
            workflow_id=workflow_id,
        )

    def _background_done(self, workflow_id: str, task: asyncio.Task[BatchResult]) -> None:
        self._tasks.pop(workflow_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background batch %s failed: %s", workflow_id, type(error).__name__)

    async def wait_for_batch(self, workflow_id: str) -> BatchResult | None:
        """Await a background batch started by this orchestrator, if still running."""
        task = self._tasks.get(workflow_id)
        return await task if task is not None else None

    def get_batch_status(self, workflow_id: str, user_id: str | None = None) -> BatchJob:
        """
        Raises:
            BatchNotFoundError: Unknown workflow id, or not the caller's
        """
        job = BatchJobRepository.get(workflow_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise BatchNotFoundError(f"Batch not found: {workflow_id}")
        return job

    def cancel_batch(self, workflow_id: str, user_id: str | None = None) -> bool:
        """
        Ask a running batch to stop dispatching. Emails already in flight
        finish; the rest are recorded as cancelled failures.

        Returns False if the batch is not running in this process.
        """
        self.get_batch_status(workflow_id, user_id)
        event = self._cancel_events.get(workflow_id)
        if event is None:
            return False
        event.set()
        log_event("batch.cancel_requested", workflow_id=workflow_id)
        return True

    async def _run_batch(self, workflow_id: str, user_id: str, emails: list[Email]) -> BatchResult:
        cancel = self._cancel_events[workflow_id]
        try:
            with time_block("batch.duration"):
                return await self._execute(workflow_id, user_id, emails, cancel)
        except Exception as e:
            logger.error("Batch %s failed: %s", workflow_id, type(e).__name__)
            await asyncio.to_thread(
                BatchJobRepository.advance,
                workflow_id,
                BatchStatus.FAILED,
                BatchStep.FETCH.value,
                error=type(e).__name__,
            )
            raise
        finally:
            self._cancel_events.pop(workflow_id, None)

    async def _execute(
        self, workflow_id: str, user_id: str, emails: list[Email], cancel: asyncio.Event
    ) -> BatchResult:
        trackers = await asyncio.to_thread(self.tracker_loader, user_id)

        # Dispatch
        await asyncio.to_thread(
            BatchJobRepository.advance,
            workflow_id,
            BatchStatus.IN_PROGRESS,
            BatchStep.FETCH.value,
            email_statuses={e.id: EmailStatus.PROCESSING for e in emails},
        )
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(email: Email) -> EmailSuccess | EmailFailure:
            async with semaphore:
                if cancel.is_set():
                    return EmailFailure(email_id=email.id, error=CANCELLED_ERROR, cancelled=True)
                return await self._process_email(email, trackers, user_id)

        outcomes = await asyncio.gather(*(run_one(e) for e in emails))
        await asyncio.to_thread(
            BatchJobRepository.advance, workflow_id, BatchStatus.IN_PROGRESS, BatchStep.DISPATCH.value
        )

        # Aggregate
        results = [o for o in outcomes if isinstance(o, EmailSuccess)]
        failed = [o for o in outcomes if isinstance(o, EmailFailure)]
        statistics = BatchStatistics.from_outcomes(list(outcomes))

        statuses = {o.email_id: EmailStatus.SUCCEEDED for o in results}
        for failure in failed:
            statuses[failure.email_id] = (
                EmailStatus.CANCELLED if failure.cancelled else EmailStatus.FAILED
            )
            log_event(
                "batch.email_failed",
                workflow_id=workflow_id,
                email_id=redact(failure.email_id),
                error_type=failure.error_type,
            )
        await asyncio.to_thread(
            BatchJobRepository.advance,
            workflow_id,
            BatchStatus.IN_PROGRESS,
            BatchStep.AGGREGATE.value,
            email_statuses=statuses,
            statistics=statistics,
        )

        # Checkpoint
        if results:
            await asyncio.to_thread(
                processed_emails.mark_processed, user_id, [o.email_id for o in results]
            )
        await asyncio.to_thread(
            BatchJobRepository.advance, workflow_id, BatchStatus.COMPLETED, BatchStep.CHECKPOINT.value
        )

        counter("batch.completed")
        counter("batch.emails_failed", len(failed))
        log_event("batch.completed", workflow_id=workflow_id, **statistics.model_dump())

        return BatchResult(
            success=True,
            outcome=InboxOutcome.PROCESSED,
            message=f"Processed {statistics.successful_updates} of {statistics.total_emails} emails",
            statistics=statistics,
            workflow_id=workflow_id,
            results=results,
            failed_emails=failed,
        )

    async def _process_email(
        self, email: Email, trackers: list[Tracker], user_id: str
    ) -> EmailSuccess | EmailFailure:
        """Match, build and store one email. Any exception becomes an EmailFailure."""
        try:
            match = await self.matcher.match_and_extract(email, trackers, user_id)
            proposal = await asyncio.to_thread(
                build_proposals, match, trackers, email, self.row_lookup
            )
            stored = await asyncio.to_thread(
                self.store.store_centralized_update, email, proposal, user_id
            )
        except Exception as e:
            counter("batch.email_error")
            logger.warning(
                "Email %s failed in pipeline: %s", redact(email.id), type(e).__name__
            )
            return EmailFailure(
                email_id=email.id, error=_failure_message(e), error_type=type(e).__name__
            )

        return EmailSuccess(
            email_id=email.id,
            update_id=stored.update_id,
            proposal_count=proposal.total_proposals,
            tracker_count=len(proposal.tracker_matches),
            created=stored.created,
        )

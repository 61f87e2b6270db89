"""
Email connector models.

Email is read-only to the pipeline: it is fetched, normalized, matched and
then only its id is recorded.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from inseam.trackers.models import parse_dt, utc_now


class EmailSender(BaseModel):
    name: str
    email: str


class Email(BaseModel):
    id: str
    thread_id: str | None = None
    subject: str
    sender: EmailSender
    date: datetime
    snippet: str = ""
    body: str = ""
    unread: bool = False
    has_attachments: bool = False


class FetchStatus(str, Enum):
    OK = "ok"
    NO_NEW = "no_new"  # connected, nothing unprocessed
    NOT_CONNECTED = "not_connected"


class FetchResult(BaseModel):
    """
    Outcome of one fetch.

    new_checkpoint lists the ids of the returned emails; the orchestrator
    records the ones that succeed.
    """

    status: FetchStatus
    emails: list[Email] = Field(default_factory=list)
    new_checkpoint: list[str] = Field(default_factory=list)
    fetched_count: int = 0  # before processed-id filtering

    @property
    def connected(self) -> bool:
        return self.status != FetchStatus.NOT_CONNECTED


class EmailGrant(BaseModel):
    """A user's connection to their mailbox via the email connector."""

    user_id: str
    grant_id: str
    email: str
    provider: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> EmailGrant:
        return cls(
            user_id=row["user_id"],
            grant_id=row["grant_id"],
            email=row["email"],
            provider=row["provider"],
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
        )

"""
Centralized update models.

A CentralizedUpdate is the durable record produced for one processed email.
It exclusively owns its matches, proposals and column updates; none of
those has an identity of its own.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from inseam.trackers.models import parse_dt, utc_now


class TrackerMatch(BaseModel):
    tracker_id: str
    tracker_name: str
    tracker_color: str | None = None
    confidence: float = Field(..., ge=0, le=100)


class MatchResult(BaseModel):
    """
    Matcher output for one email.

    extracted_data maps tracker id -> column key -> value; column_confidence
    holds per-column scores where the model gave them.
    """

    tracker_matches: list[TrackerMatch] = Field(default_factory=list)
    extracted_data: dict[str, dict[str, Any]] = Field(default_factory=dict)
    column_confidence: dict[str, dict[str, float]] = Field(default_factory=dict)


class ColumnUpdate(BaseModel):
    column_key: str
    column_name: str
    column_type: str
    column_color: str | None = None
    current_value: Any = None
    proposed_value: Any
    confidence: float


class TrackerProposal(BaseModel):
    tracker_id: str
    tracker_name: str
    row_id: str
    is_new_row: bool
    column_updates: list[ColumnUpdate]


class EmailSummary(BaseModel):
    title: str
    summary: str
    type: str
    urgency: str
    category: str


class ProposalResult(BaseModel):
    tracker_proposals: list[TrackerProposal] = Field(default_factory=list)
    tracker_matches: list[TrackerMatch] = Field(default_factory=list)
    email_summary: EmailSummary

    @property
    def total_proposals(self) -> int:
        return len(self.tracker_proposals)


class CentralizedUpdate(BaseModel):
    id: str
    user_id: str
    source: str = "email"
    source_id: str
    tracker_matches: list[TrackerMatch] = Field(default_factory=list)
    tracker_proposals: list[TrackerProposal] = Field(default_factory=list)
    type: str
    category: str
    title: str
    summary: str | None = None
    urgency: str | None = None
    from_name: str | None = None
    from_id: str | None = None
    source_subject: str | None = None
    source_quote: str | None = None
    source_date: datetime | None = None
    processed: bool = False
    processed_at: datetime | None = None
    approved: bool = False
    approved_at: datetime | None = None
    approved_by: str | None = None
    rejected: bool = False
    rejected_at: datetime | None = None
    archived_at: datetime | None = None
    viewed_at: datetime | None = None
    viewed_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "source": self.source,
            "source_id": self.source_id,
            "tracker_matches": json.dumps([m.model_dump() for m in self.tracker_matches]),
            "tracker_proposals": json.dumps([p.model_dump() for p in self.tracker_proposals]),
            "type": self.type,
            "category": self.category,
            "title": self.title,
            "summary": self.summary,
            "urgency": self.urgency,
            "from_name": self.from_name,
            "from_id": self.from_id,
            "source_subject": self.source_subject,
            "source_quote": self.source_quote,
            "source_date": iso(self.source_date),
            "processed": int(self.processed),
            "processed_at": iso(self.processed_at),
            "approved": int(self.approved),
            "approved_at": iso(self.approved_at),
            "approved_by": self.approved_by,
            "rejected": int(self.rejected),
            "rejected_at": iso(self.rejected_at),
            "archived_at": iso(self.archived_at),
            "viewed_at": iso(self.viewed_at),
            "viewed_by": self.viewed_by,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> CentralizedUpdate:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            source=row["source"],
            source_id=row["source_id"],
            tracker_matches=[TrackerMatch(**m) for m in json.loads(row["tracker_matches"] or "[]")],
            tracker_proposals=[
                TrackerProposal(**p) for p in json.loads(row["tracker_proposals"] or "[]")
            ],
            type=row["type"],
            category=row["category"],
            title=row["title"],
            summary=row.get("summary"),
            urgency=row.get("urgency"),
            from_name=row.get("from_name"),
            from_id=row.get("from_id"),
            source_subject=row.get("source_subject"),
            source_quote=row.get("source_quote"),
            source_date=parse_dt(row.get("source_date")),
            processed=bool(row["processed"]),
            processed_at=parse_dt(row.get("processed_at")),
            approved=bool(row["approved"]),
            approved_at=parse_dt(row.get("approved_at")),
            approved_by=row.get("approved_by"),
            rejected=bool(row["rejected"]),
            rejected_at=parse_dt(row.get("rejected_at")),
            archived_at=parse_dt(row.get("archived_at")),
            viewed_at=parse_dt(row.get("viewed_at")),
            viewed_by=row.get("viewed_by"),
            created_at=parse_dt(row.get("created_at")) or utc_now(),
        )


class StoreResult(BaseModel):
    success: bool
    update_id: str
    created: bool  # False when the email already had an update


class EditedColumn(BaseModel):
    column_key: str
    new_value: Any
    target_column_key: str | None = Field(
        default=None, description="Write the value to this column instead of column_key"
    )


class EditedProposal(BaseModel):
    tracker_id: str
    row_id: str
    edited_columns: list[EditedColumn] = Field(default_factory=list)


class ProposalApplyResult(BaseModel):
    tracker_id: str
    row_id: str
    success: bool
    is_new_row: bool = False
    error: str | None = None


class ApprovalResult(BaseModel):
    update_id: str
    success: bool
    already_processed: bool = False
    results: list[ProposalApplyResult] = Field(default_factory=list)


class UpdateStats(BaseModel):
    total: int = 0
    active: int = 0
    archived: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    with_proposals: int = 0
    unread: int = 0

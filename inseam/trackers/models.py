"""
Tracker domain models.

A Tracker is a user-defined table: an ordered list of typed Columns, one of
which (by key) is the primary key. Rows are keyed by their primary-key
value (row_id) and hold a JSON object of column key -> value.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class ColumnType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    SELECT = "select"  # enumerated options
    BOOLEAN = "boolean"


class Column(BaseModel):
    """One typed column of a tracker."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    name: str
    key: str = Field(..., pattern=r"^[A-Za-z0-9_-]+$", description="Stable identifier used in row data")
    type: ColumnType = ColumnType.TEXT
    required: bool = False
    options: list[str] | None = None
    order: int = 0
    ai_enabled: bool = Field(default=False, description="Matcher may extract values for this column")
    ai_aliases: list[str] = Field(default_factory=list, description="Other names the email may use")
    color: str | None = None
    description: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str) and v.lower() == "enum":
            return ColumnType.SELECT
        return v


class Tracker(BaseModel):
    model_config = ConfigDict(frozen=False)

    id: str
    user_id: str
    name: str
    slug: str
    description: str | None = None
    color: str | None = None
    columns: list[Column]
    primary_key_column: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def column(self, key: str) -> Column | None:
        return next((c for c in self.columns if c.key == key), None)

    def ai_columns(self) -> list[Column]:
        """AI-eligible columns in display order."""
        return sorted((c for c in self.columns if c.ai_enabled), key=lambda c: c.order)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "color": self.color,
            "columns": json.dumps([c.model_dump() for c in self.columns]),
            "primary_key_column": self.primary_key_column,
            "is_active": int(self.is_active),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Tracker:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            slug=row["slug"],
            description=row.get("description"),
            color=row.get("color"),
            columns=[Column(**c) for c in json.loads(row["columns"])],
            primary_key_column=row["primary_key_column"],
            is_active=bool(row["is_active"]),
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
        )


class TrackerRow(BaseModel):
    id: str
    tracker_id: str
    row_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    created_by: str
    updated_at: datetime = Field(default_factory=utc_now)
    updated_by: str

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> TrackerRow:
        return cls(
            id=row["id"],
            tracker_id=row["tracker_id"],
            row_id=row["row_id"],
            data=json.loads(row["data"]),
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            created_by=row["created_by"],
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
            updated_by=row["updated_by"],
        )


class RowAlias(BaseModel):
    """Alternate name for a row, used to resolve what emails call it."""

    id: str
    tracker_id: str
    row_id: str
    alias: str
    user_id: str
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> RowAlias:
        return cls(
            id=row["id"],
            tracker_id=row["tracker_id"],
            row_id=row["row_id"],
            alias=row["alias"],
            user_id=row["user_id"],
            created_at=parse_dt(row.get("created_at")) or utc_now(),
        )


class TrackerCreate(BaseModel):
    """Fields a user supplies when creating a tracker."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    color: str | None = None
    columns: list[Column] = Field(..., min_length=1)
    primary_key_column: str


class TrackerUpdate(BaseModel):
    """Partial tracker edit; unset fields are left as they are."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    color: str | None = None
    columns: list[Column] | None = Field(default=None, min_length=1)
    primary_key_column: str | None = None
    is_active: bool | None = None


class AliasEntry(BaseModel):
    row_id: str = Field(..., min_length=1)
    alias: str


class AliasFailure(BaseModel):
    alias: str
    reason: str


class BulkAliasResult(BaseModel):
    added: list[RowAlias] = Field(default_factory=list)
    failed: list[AliasFailure] = Field(default_factory=list)

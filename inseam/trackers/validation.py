"""
Tracker schema and row data validation.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from inseam.config import TEXT_VALUE_MAX_LENGTH
from inseam.trackers.models import Column, ColumnType

SLUG_MAX_LENGTH = 50

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%B %d, %Y",
)
_TRUE_VALUES = (True, "true", 1, "1", "yes")


class TrackerValidationError(ValueError):
    """Schema or row data failed validation.

    errors maps field (column key, or "columns") to a message.
    """

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{field}: {msg}" for field, msg in errors.items()))


class DuplicatePrimaryKeyError(ValueError):
    """Another row of the tracker already uses this primary-key value."""


def generate_slug(name: str) -> str:
    """URL slug for a tracker name: "Q3 Orders!" -> "q3-orders"."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH]


def validate_columns(columns: list[Column], primary_key_column: str) -> None:
    """
    Raises:
        TrackerValidationError: duplicate ids/keys, select column without
            options, or primary key that names no column
    """
    errors: dict[str, str] = {}
    ids: set[str] = set()
    keys: set[str] = set()

    for column in columns:
        if column.id in ids:
            errors["columns"] = f"Duplicate column ID: {column.id}"
        ids.add(column.id)

        if column.key in keys:
            errors["columns"] = f"Duplicate column key: {column.key}"
        keys.add(column.key)

        if column.type == ColumnType.SELECT and not column.options:
            errors[column.key] = f'Select column "{column.name}" must have options'

    if primary_key_column not in keys:
        errors["primary_key_column"] = f"Primary key column {primary_key_column} not found"

    if errors:
        raise TrackerValidationError(errors)


def _parse_date(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    try:
        return datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _coerce(column: Column, value: Any) -> tuple[Any, str | None]:
    """(coerced value, error message or None)"""
    if value is None:
        return None, None

    if column.type == ColumnType.NUMBER:
        if isinstance(value, bool):
            return None, f"{column.name} must be a number"
        try:
            number = float(str(value).replace(",", "").strip())
        except ValueError:
            return None, f"{column.name} must be a number"
        return (int(number) if number.is_integer() else number), None

    if column.type == ColumnType.DATE:
        parsed = _parse_date(value)
        if parsed is None:
            return None, f"{column.name} must be a valid date"
        return parsed, None

    if column.type == ColumnType.SELECT:
        if column.options and value not in column.options:
            return None, f"{column.name} must be one of: {', '.join(column.options)}"
        return value, None

    if column.type == ColumnType.BOOLEAN:
        if isinstance(value, str):
            value = value.strip().lower()
        return value in _TRUE_VALUES, None

    text = str(value)
    if len(text) > TEXT_VALUE_MAX_LENGTH:
        return None, f"{column.name} must be {TEXT_VALUE_MAX_LENGTH} characters or less"
    return text, None


def validate_row_data(
    columns: list[Column],
    data: dict[str, Any],
    partial: bool = False,
) -> dict[str, Any]:
    """
    Coerce row values to their column types.

    Keys that name no column are dropped. With partial=True (patches) only
    the supplied keys are checked and required columns may be absent;
    otherwise every required column must carry a non-empty value.

    Raises:
        TrackerValidationError: One or more values failed validation
    """
    errors: dict[str, str] = {}
    validated: dict[str, Any] = {}

    for column in columns:
        present = column.key in data
        value = data.get(column.key)

        if value is None or value == "":
            if column.required and (present or not partial):
                errors[column.key] = f"{column.name} is required"
            elif present and value is None:
                validated[column.key] = None
            continue

        coerced, error = _coerce(column, value)
        if error:
            errors[column.key] = error
        else:
            validated[column.key] = coerced

    if errors:
        raise TrackerValidationError(errors)

    return validated

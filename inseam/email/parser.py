"""
Normalize raw connector messages into Email models.

Every field coming from the provider is untrusted: subjects and names are
stripped of markup, invalid addresses are replaced, bodies are converted
to bounded plain text.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from inseam.email.models import Email, EmailSender
from inseam.utils.html import clean_email_body
from inseam.utils.validators import sanitize_email_address, sanitize_sender_name, sanitize_subject


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return datetime.now(UTC)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


def parse_message(message: dict[str, Any]) -> Email:
    """
    Build an Email from one message object of the connector's list response.

    Raises:
        ValueError: message has no id
    """
    message_id = message.get("id")
    if not message_id:
        raise ValueError("Message is missing an id")

    senders = message.get("from") or []
    first = senders[0] if senders else {}

    return Email(
        id=str(message_id),
        thread_id=message.get("thread_id"),
        subject=sanitize_subject(message.get("subject")),
        sender=EmailSender(
            name=sanitize_sender_name(first.get("name")),
            email=sanitize_email_address(first.get("email")),
        ),
        date=_parse_timestamp(message.get("date")),
        snippet=clean_email_body(message.get("snippet"), max_length=500),
        body=clean_email_body(message.get("body")),
        unread=bool(message.get("unread", False)),
        has_attachments=bool(message.get("attachments")),
    )


def parse_messages(messages: list[dict[str, Any]]) -> list[Email]:
    """Parse a page of messages, skipping entries without an id."""
    return [parse_message(m) for m in messages if m.get("id")]

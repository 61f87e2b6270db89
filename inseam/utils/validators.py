"""
Input validation and sanitization for data arriving from the email connector
and from API callers.
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")

UNKNOWN_EMAIL = "unknown@example.com"
UNKNOWN_SENDER = "Unknown Sender"
NO_SUBJECT = "(No subject)"


def is_valid_email(email: str | None) -> bool:
    if not email or len(email) > 254:
        return False
    return bool(EMAIL_PATTERN.match(email))


def sanitize_subject(subject: str | None) -> str:
    """Strip markup/control characters, cap at 200 chars."""
    if not subject:
        return NO_SUBJECT

    cleaned = re.sub(r"[<>\"/\\&'`]", "", subject)
    cleaned = _CONTROL_CHARS.sub("", cleaned)[:200].strip()
    return cleaned or NO_SUBJECT


def sanitize_email_address(email: str | None) -> str:
    """Sanitized address, or unknown@example.com if it isn't a valid one."""
    if not email:
        return UNKNOWN_EMAIL

    cleaned = re.sub(r"[<>\"/\\`]", "", email)
    cleaned = _CONTROL_CHARS.sub("", cleaned)[:254].strip()
    return cleaned if is_valid_email(cleaned) else UNKNOWN_EMAIL


def sanitize_sender_name(name: str | None, default: str = UNKNOWN_SENDER) -> str:
    if not name:
        return default
    cleaned = re.sub(r"[<>\"/\\]", "", name)[:100].strip()
    return cleaned or default


def is_valid_redirect_uri(uri: str, allowed_domains: list[str]) -> bool:
    """
    Check an OAuth redirect URI against the allow-list.

    Entries are matched as:
    - "*.example.com": any subdomain of example.com (not the apex)
    - "localhost:3000": hostname and port must both match
    - "app.example.com": exact hostname
    """
    try:
        parsed = urlparse(uri)
        hostname = parsed.hostname
        port = parsed.port
    except ValueError:
        return False

    if parsed.scheme not in ("http", "https") or not hostname:
        return False

    for domain in allowed_domains:
        if domain.startswith("*."):
            if hostname.endswith("." + domain[2:]):
                return True
        elif "localhost" in domain:
            host, _, expected_port = domain.partition(":")
            if hostname == host and (not expected_port or str(port) == expected_port):
                return True
        elif hostname == domain:
            return True

    return False

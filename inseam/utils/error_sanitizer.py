"""
Error message sanitization for HTTP responses.

Internal details (paths, SQL, tokens, module names) never reach clients;
short user-actionable messages do.
"""

from __future__ import annotations

import re

from inseam.observability.logging import get_logger

logger = get_logger(__name__)

# Patterns that might leak sensitive information
SENSITIVE_PATTERNS = [
    r"/[^\s]+\.py",
    r"[A-Za-z]:\\[^\s]+",
    r"Traceback \(most recent call last\)",
    r"File \".*\"",
    r"line \d+",
    r"sqlite3?\.",
    r"UNIQUE constraint",
    r"FOREIGN KEY constraint",
    r"no such table",
    r"no such column",
    r"[A-Za-z0-9_-]{32,}",  # long opaque strings (keys, grant ids)
    r"Bearer [A-Za-z0-9._-]+",
    r"api[_-]?key",
    r"client[_-]?secret",
    r"inseam\.[a-z_.]+",
]

# Messages that are safe and useful to pass through verbatim
SAFE_PATTERNS = [
    r"^Rate limit exceeded\. Please try again in \d+ seconds\.$",
    r"^No email account connected\. Please connect your email first\.$",
    r"^Invalid redirect URI$",
    r"^Invalid or expired OAuth state$",
]

GENERIC_MESSAGES = {
    400: "Invalid request. Please check your input and try again.",
    401: "Authentication required.",
    403: "Access denied.",
    404: "Resource not found.",
    409: "Request conflicts with existing data.",
    422: "Invalid data format.",
    429: "Too many requests. Please try again later.",
    500: "An internal error occurred. Please try again later.",
    502: "Upstream service error. Please try again later.",
    503: "Service temporarily unavailable.",
}


def sanitize_error_message(
    message: str,
    status_code: int = 500,
    allow_field_names: bool = True,
) -> str:
    """
    Sanitize an error message to prevent information leakage.

    Args:
        message: The original error message
        status_code: HTTP status code (used to select generic fallback)
        allow_field_names: Whether short 4xx validation messages may pass through

    Returns:
        Sanitized error message safe for client consumption
    """
    fallback = GENERIC_MESSAGES.get(status_code, "An error occurred.")
    if not message:
        return fallback

    for pattern in SAFE_PATTERNS:
        if re.match(pattern, message):
            return message

    for pattern in SENSITIVE_PATTERNS:
        if re.search(pattern, message, re.IGNORECASE):
            logger.warning("Sanitized sensitive error pattern: %s", pattern)
            return fallback

    if (
        400 <= status_code < 500
        and allow_field_names
        and len(message) < 120
        and not any(c in message for c in ["{", "}", "[", "]", "\n"])
    ):
        return message

    return fallback


def get_safe_error_detail(
    error: Exception,
    status_code: int = 500,
    context: str | None = None,
) -> str:
    """
    Log the full error and return a client-safe detail string.

    For 5xx responses the context string (if given) is returned instead of
    anything derived from the exception.
    """
    logger.error("Error (status=%d): %s - %s", status_code, type(error).__name__, str(error))

    if context and status_code >= 500:
        return context

    return sanitize_error_message(str(error), status_code)

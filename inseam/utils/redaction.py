"""
Redaction helpers for logs, telemetry, and LLM prompts.

Provides:
- redact(): Hash sensitive strings for correlation without exposure
- redact_subject(): Partially redact email subjects for debugging
- redact_pii(): Mask emails, phones, card numbers before text leaves the process
- sanitize_llm_input(): Strip prompt-injection patterns from untrusted text
"""

from __future__ import annotations

import re
from hashlib import sha256

from inseam.observability.telemetry import counter

# Patterns that could be used for prompt injection
INJECTION_PATTERNS = [
    r"ignore\s+(previous|above|all)\s+instructions?",
    r"disregard\s+(previous|above|all)\s+instructions?",
    r"forget\s+(previous|above|all)\s+instructions?",
    r"new\s+instructions?:",
    r"system\s*:",
    r"assistant\s*:",
    r"\[INST\]",
    r"\[/INST\]",
    r"<\|im_start\|>",
    r"<\|im_end\|>",
]
INJECTION_REGEX = re.compile("|".join(INJECTION_PATTERNS), re.IGNORECASE)


def redact(value: str | None) -> str:
    """
    Return a stable hash representation of a sensitive string.
    """
    if not value:
        return "hash:missing"
    digest = sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"hash:{digest}"


def redact_subject(subject: str | None, max_length: int = 30) -> str:
    """
    Partially redact an email subject for logging.

    Example:
        "Your order #123-456 has shipped today" ->
        "Your order #123-456 has shipp... (h:7a8b9c)"
    """
    if not subject:
        return "(no subject)"

    visible = subject[:max_length] + "..." if len(subject) > max_length else subject
    digest = sha256(subject.encode("utf-8")).hexdigest()[:6]
    return f"{visible} (h:{digest})"


def redact_pii(text: str | None, max_length: int = 500) -> str:
    """
    Redact personally identifiable information from text.

    Redacts email addresses, phone numbers, card numbers and SSN-shaped
    digit groups. Tracking numbers and SKUs are left alone since they are
    exactly what the matcher needs to read.
    """
    if not text:
        return ""

    text = re.sub(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}", "[EMAIL]", text)
    text = re.sub(r"\+?1?[-.\s]?\(\d{3}\)[-.\s]?\d{3}[-.\s]?\d{4}\b", "[PHONE]", text)
    text = re.sub(r"\b\d{3}[-.]\d{3}[-.]\d{4}\b", "[PHONE]", text)
    text = re.sub(r"\b(?:\d{4}[-\s]){3}\d{1,4}\b", "[CARD]", text)
    text = re.sub(r"\b\d{3}-\d{2}-\d{4}\b", "[SSN]", text)

    return text[:max_length]


def sanitize_llm_input(text: str | None, max_length: int = 500, counter_prefix: str = "llm") -> str:
    """
    Sanitize untrusted text (email content) before it goes into a prompt.

    Truncates, replaces known injection phrases and drops characters that
    could break the prompt's own delimiters.

    Side Effects:
        - Increments <counter_prefix>.injection_redacted when a pattern hits
    """
    if not text:
        return ""

    text = text[:max_length]

    if INJECTION_REGEX.search(text):
        counter(f"{counter_prefix}.injection_redacted")
        text = INJECTION_REGEX.sub("[REDACTED]", text)

    text = re.sub(r"[<>{}|\\]", "", text)
    return text.strip()

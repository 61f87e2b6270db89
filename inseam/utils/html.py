"""HTML-to-text conversion for email bodies.

Connector bodies are frequently HTML-only; the pipeline and the stored
source quote work on plain text.
"""

from __future__ import annotations

import html as html_lib
import re

from bs4 import BeautifulSoup

from inseam.config import EMAIL_BODY_MAX_CHARS

# Schemes and inline handlers that must never survive into stored text
_DANGEROUS_PATTERNS = re.compile(r"javascript:|vbscript:|data:|onload|onerror|onclick", re.IGNORECASE)

# Hard cap applied before parsing
_RAW_BODY_LIMIT = 50000


def html_to_text(html: str) -> str:
    """Convert an HTML body to plain text (script/style/head dropped)."""
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()

    text = soup.get_text(separator="\n")
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def clean_email_body(body: str | None, max_length: int = EMAIL_BODY_MAX_CHARS) -> str:
    """
    Plain-text, single-spaced, length-capped version of an email body.

    Markup is removed, entities decoded, script-ish patterns stripped.
    """
    if not body:
        return ""

    if len(body) > _RAW_BODY_LIMIT:
        body = body[:_RAW_BODY_LIMIT]

    text = html_to_text(body) if "<" in body else html_lib.unescape(body)
    text = _DANGEROUS_PATTERNS.sub("", text)
    text = re.sub(r"\s+", " ", text).strip()
    return text[:max_length]

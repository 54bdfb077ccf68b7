"""Normalization helpers for participant identities and contact fields."""

import html
import re
from typing import Optional

import nh3

# Block boundaries become newlines before the markup is dropped.
_LINE_BREAK_RE = re.compile(r"<br\s*/?>|</(?:p|div|li|tr|h[1-6])\s*>", re.IGNORECASE)


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Returns None for empty input or values without an ``@``.
    """
    if not email:
        return None
    normalized = email.strip().lower()
    if "@" not in normalized:
        return None
    return normalized


def normalize_phone_digits(phone: Optional[str]) -> Optional[str]:
    """Strip everything except digits; used for phone comparison."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    return digits or None


def extract_email_domain(email: Optional[str]) -> Optional[str]:
    """Extract lowercased email domain."""
    normalized = normalize_email(email)
    if not normalized:
        return None
    return normalized.split("@", 1)[1] or None


def strip_html(value: Optional[str]) -> str:
    """Convert an HTML body to collapsed plain text."""
    if not value:
        return ""
    text = _LINE_BREAK_RE.sub("\n", value)
    # Drops every tag, comment and script/style body; text stays entity-escaped.
    text = html.unescape(nh3.clean(text, tags=set()))
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return "\n".join(line for line in lines if line).strip()

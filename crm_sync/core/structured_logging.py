"""Structured logging helpers (PII-safe)."""

import hashlib
from typing import Any


def mask_email(email: str | None) -> str:
    """Short stable hash of an address, for log lines that must not carry PII."""
    if not email:
        return ""
    digest = hashlib.sha256(email.strip().lower().encode()).hexdigest()[:12]
    _, _, domain = email.partition("@")
    return f"{digest}@{domain.lower()}" if domain else digest


def build_log_context(
    *,
    user_id: str | None = None,
    integration_type: str | None = None,
    job_id: str | None = None,
    sync_mode: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if integration_type:
        context["integration_type"] = integration_type
    if job_id:
        context["job_id"] = str(job_id)
    if sync_mode:
        context["sync_mode"] = sync_mode
    return context

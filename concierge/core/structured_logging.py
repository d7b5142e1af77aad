"""Structured logging helpers (PHI-safe)."""

from typing import Any


def build_log_context(
    *,
    user_id: str | None = None,
    message_id: str | None = None,
    queue_entry_id: str | None = None,
    job_id: str | None = None,
    job_kind: str | None = None,
    attempt: int | None = None,
    provider: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict (ids and counters only)."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if message_id:
        context["message_id"] = message_id
    if queue_entry_id:
        context["queue_entry_id"] = queue_entry_id
    if job_id:
        context["job_id"] = job_id
    if job_kind:
        context["job_kind"] = job_kind
    if attempt is not None:
        context["attempt"] = attempt
    if provider:
        context["provider"] = provider
    return context

"""Shared helpers for worker job handlers."""

from __future__ import annotations

from concierge.services import audit_service


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    return audit_service.hash_email(email)


def mask_phone(phone: str | None) -> str:
    if not phone:
        return ""
    digits = [c for c in phone if c.isdigit()]
    if len(digits) <= 4:
        return "***"
    return f"***{''.join(digits[-4:])}"

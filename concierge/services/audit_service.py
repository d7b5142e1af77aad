"""Audit trail service - content integrity, redaction and hash-chained events.

Security guidelines:
- NEVER log message text, patient names or raw recipient addresses
- Hash PII in details (use hash_email for emails)
- Redaction is for previews and exports only; the stored final_message is
  never rewritten
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from concierge.core.clock import utcnow
from concierge.core.config import settings
from concierge.core.observability import Observer
from concierge.core.permissions import Actor
from concierge.db.enums import AuditEventType, Role
from concierge.db.models import AuditEvent, AuditLog

GENESIS_HASH = "0" * 64

EDIT_ACTION_EDITED = "edited"

SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
LONG_DIGITS_RE = re.compile(r"\b\d{10,}\b")
EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
DATE_RE = re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b")

# Applied in order; SSNs before long digit runs so they keep their own token
REDACTION_RULES: tuple[tuple[re.Pattern, str], ...] = (
    (SSN_RE, "[SSN]"),
    (LONG_DIGITS_RE, "[PHONE]"),
    (EMAIL_RE, "[EMAIL]"),
    (DATE_RE, "[DATE]"),
)

FULL_CONTENT_ROLES = (Role.AUDITOR, Role.ADMIN)


# =============================================================================
# Content helpers
# =============================================================================

def content_hash(text: str) -> str:
    """SHA-256 hex digest of the message text (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def redact(text: str | None, length: int | None = None) -> str:
    """Replace PII patterns with placeholder tokens and truncate for preview."""
    if not text:
        return ""
    redacted = text
    for pattern, token in REDACTION_RULES:
        redacted = pattern.sub(token, redacted)
    limit = settings.CONTENT_PREVIEW_LENGTH if length is None else length
    if len(redacted) > limit:
        return redacted[:limit] + "..."
    return redacted


def hash_email(email: str) -> str:
    """Hash email for logs (prefix + SHA256 suffix for debugging)."""
    if not email:
        return ""
    prefix = email.split("@")[0][:3] if "@" in email else email[:3]
    suffix = hashlib.sha256(email.lower().encode()).hexdigest()[:12]
    return f"{prefix}...@[hash:{suffix}]"


def canonical_json(obj: dict | None) -> str:
    """
    Serialize object to canonical JSON for consistent hashing.

    Uses sorted keys, compact separators, and str() for non-JSON types.
    """
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


def can_view_full_content(actor: Actor, entry: AuditLog) -> bool:
    """Auditors, admins and the doctor who authored the message see full text."""
    if actor.role in FULL_CONTENT_ROLES:
        return True
    return actor.role == Role.DOCTOR and entry.user_id == actor.user_id


def render_entry(actor: Actor, entry: AuditLog) -> dict[str, Any]:
    """Entry view with content gated by role."""
    full = can_view_full_content(actor, entry)
    text = entry.final_message or entry.generated_draft
    return {
        "id": str(entry.id),
        "patient_name": entry.patient_name,
        "action_type": entry.action_type,
        "delivery_status": entry.delivery_status,
        "created_at": entry.created_at.isoformat(),
        "content": text if full else redact(text),
        "content_redacted": not full,
        "content_hash": entry.content_hash,
    }


# =============================================================================
# Edit history (append-only)
# =============================================================================

def append_edit(
    entry: AuditLog,
    *,
    action: str,
    actor_user_id: UUID | None,
    at: datetime,
    **extra: Any,
) -> dict[str, Any]:
    """Append one history record. The list is replaced, never mutated in place."""
    record: dict[str, Any] = {
        "action": action,
        "actor": str(actor_user_id) if actor_user_id else None,
        "timestamp": at.isoformat(),
    }
    record.update(extra)
    entry.edit_history = [*(entry.edit_history or []), record]
    return record


def set_final_message(
    entry: AuditLog,
    text: str,
    *,
    actor_user_id: UUID | None,
    at: datetime,
    reason: str,
) -> bool:
    """
    Persist final message text, anchoring or extending the integrity chain.

    The first persisted text sets content_hash. Later changes keep the
    anchor and record an ``edited`` history entry linking the digests.
    Returns True when the stored text changed.
    """
    if entry.final_message is None:
        entry.final_message = text
        entry.content_hash = content_hash(text)
        return True
    if entry.final_message == text:
        return False
    append_edit(
        entry,
        action=EDIT_ACTION_EDITED,
        actor_user_id=actor_user_id,
        at=at,
        reason=reason,
        content_hash_before=content_hash(entry.final_message),
        content_hash_after=content_hash(text),
        word_count_before=len(entry.final_message.split()),
        word_count_after=len(text.split()),
    )
    entry.final_message = text
    return True


# =============================================================================
# Integrity verification
# =============================================================================

def verify_entry(entry: AuditLog) -> bool:
    """
    True when the stored text is explained by content_hash and its edit chain.

    Each recorded edit must start from the digest the previous step ended
    on; the final digest must match the current text.
    """
    if entry.final_message is None:
        return entry.content_hash is None
    if not entry.content_hash:
        return False
    expected = entry.content_hash
    for record in entry.edit_history or []:
        if record.get("action") != EDIT_ACTION_EDITED:
            continue
        if record.get("content_hash_before") != expected:
            return False
        expected = record.get("content_hash_after")
    return content_hash(entry.final_message) == expected


@dataclass
class IntegrityReport:
    total_checked: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    missing_hashes: int = 0
    invalid_ids: list[str] = field(default_factory=list)


def verify_integrity(
    db: Session,
    *,
    observer: Observer,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    clock=utcnow,
) -> IntegrityReport:
    """
    Recompute content digests and report mismatches.

    Violations are recorded in the audit trail for compliance review and are
    never corrected automatically.
    """
    query = db.query(AuditLog).filter(AuditLog.final_message.is_not(None))
    if start_date:
        query = query.filter(AuditLog.created_at >= start_date)
    if end_date:
        query = query.filter(AuditLog.created_at <= end_date)

    report = IntegrityReport()
    for entry in query.order_by(AuditLog.created_at, AuditLog.id).all():
        report.total_checked += 1
        if not entry.content_hash:
            report.missing_hashes += 1
            continue
        if verify_entry(entry):
            report.valid_records += 1
            continue
        report.invalid_records += 1
        report.invalid_ids.append(str(entry.id))
        log_event(
            db,
            AuditEventType.INTEGRITY_VIOLATION,
            audit_log_id=entry.id,
            details={"stored_hash": entry.content_hash},
            created_at=clock(),
        )
        observer.event("integrity_violation", message_id=str(entry.id))

    db.commit()
    return report


# =============================================================================
# Hash-chained events
# =============================================================================

def compute_event_hash(
    *,
    prev_hash: str,
    sequence: int,
    event_id: str,
    event_type: str,
    audit_log_id: str,
    from_status: str,
    to_status: str,
    actor_user_id: str,
    created_at: str,
    details_json: str,
) -> str:
    """Hash = SHA256(all immutable fields joined with |)."""
    data = "|".join([
        prev_hash,
        str(sequence),
        event_id,
        event_type,
        audit_log_id,
        from_status,
        to_status,
        actor_user_id,
        created_at,
        details_json,
    ])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _hash_event(event: AuditEvent) -> str:
    return compute_event_hash(
        prev_hash=event.prev_hash or GENESIS_HASH,
        sequence=event.sequence,
        event_id=str(event.id),
        event_type=event.event_type,
        audit_log_id=str(event.audit_log_id) if event.audit_log_id else "",
        from_status=event.from_status or "",
        to_status=event.to_status or "",
        actor_user_id=str(event.actor_user_id) if event.actor_user_id else "",
        created_at=event.created_at.isoformat(),
        details_json=canonical_json(event.details),
    )


def log_event(
    db: Session,
    event_type: AuditEventType,
    *,
    audit_log_id: UUID | None = None,
    actor_user_id: UUID | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    details: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> AuditEvent:
    """
    Append an event to the hash chain.

    Flushes but does not commit: the caller commits the event together with
    the state change it describes.
    """
    last = (
        db.query(AuditEvent.sequence, AuditEvent.entry_hash)
        .order_by(AuditEvent.sequence.desc())
        .first()
    )
    sequence = (last.sequence + 1) if last else 1
    prev_hash = (last.entry_hash if last else None) or GENESIS_HASH

    event = AuditEvent(
        id=uuid4(),
        sequence=sequence,
        audit_log_id=audit_log_id,
        event_type=event_type.value,
        from_status=from_status,
        to_status=to_status,
        actor_user_id=actor_user_id,
        details=details,
        created_at=created_at or utcnow(),
        prev_hash=prev_hash,
    )
    event.entry_hash = _hash_event(event)
    db.add(event)
    db.flush()
    return event


def verify_event_chain(db: Session) -> list[str]:
    """Return ids of events whose hash or chain link does not verify."""
    broken: list[str] = []
    prev_hash = GENESIS_HASH
    events: Iterable[AuditEvent] = db.query(AuditEvent).order_by(AuditEvent.sequence).all()
    for event in events:
        if event.prev_hash != prev_hash or event.entry_hash != _hash_event(event):
            broken.append(str(event.id))
        prev_hash = event.entry_hash or GENESIS_HASH
    return broken


def count_events(db: Session, audit_log_id: UUID) -> int:
    return (
        db.query(func.count(AuditEvent.id))
        .filter(AuditEvent.audit_log_id == audit_log_id)
        .scalar()
    )

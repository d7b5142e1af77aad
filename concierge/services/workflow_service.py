"""Workflow engine - message lifecycle, role gates and audit events.

State machine over ``AuditLog.delivery_status``::

    draft -> pending_review -> approved -> sent -> delivered | failed
                            -> rejected -> draft (edited) -> pending_review
    draft | pending_review -> sent                      (direct send)

Every operation runs as one database transaction: the status change, its
audit event(s), the queue entry and the delivery job commit together or not
at all. Permission and validation checks run before anything is written.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator
from uuid import UUID

from sqlalchemy.orm import Session

from concierge.core.clock import Clock, utcnow
from concierge.core.config import settings
from concierge.core.exceptions import (
    EntryNotFoundError,
    InvalidTransitionError,
    PermissionDeniedError,
    WorkflowValidationError,
)
from concierge.core.observability import Observer, default_observer
from concierge.core.permissions import Actor, require_role, role_name
from concierge.core.structured_logging import build_log_context
from concierge.db.enums import (
    ActionType,
    AuditEventType,
    DeliveryMethod,
    DeliveryStatus,
    Priority,
    QueueStatus,
    ReviewAction,
    Role,
)
from concierge.db.models import AuditLog, MessageQueueEntry
from concierge.services import audit_service
from concierge.services.edit_lock_service import EditLockService
from concierge.services.queue_producer import QueueProducer

logger = logging.getLogger(__name__)

LOCK_ENTITY_TYPE = "audit_log"
EMAIL_SUBJECT_TEMPLATE = "Medical Communication - {date}"

ALLOWED_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.DRAFT: frozenset({DeliveryStatus.PENDING_REVIEW, DeliveryStatus.SENT}),
    DeliveryStatus.PENDING_REVIEW: frozenset(
        {DeliveryStatus.APPROVED, DeliveryStatus.REJECTED, DeliveryStatus.SENT}
    ),
    DeliveryStatus.APPROVED: frozenset({DeliveryStatus.SENT}),
    DeliveryStatus.REJECTED: frozenset({DeliveryStatus.DRAFT}),
    DeliveryStatus.SENT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
}

CONFIRMABLE_STATUSES = (DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)

# Progress order used to ignore stale, out-of-order delivery reports
STATUS_RANK: dict[DeliveryStatus, int] = {
    DeliveryStatus.DRAFT: 0,
    DeliveryStatus.PENDING_REVIEW: 1,
    DeliveryStatus.REJECTED: 1,
    DeliveryStatus.APPROVED: 2,
    DeliveryStatus.SENT: 3,
    DeliveryStatus.DELIVERED: 4,
    DeliveryStatus.FAILED: 4,
}


@dataclass(frozen=True)
class DeliveryDetails:
    method: DeliveryMethod
    recipient_email: str | None = None
    recipient_phone: str | None = None
    priority: Priority = Priority.NORMAL
    scheduled_for: datetime | None = None


class WorkflowEngine:
    def __init__(
        self,
        db: Session,
        *,
        producer: QueueProducer | None = None,
        clock: Clock = utcnow,
        observer: Observer = default_observer,
        edit_locks: EditLockService | None = None,
        direct_send_min_role: Role | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.observer = observer
        self.producer = producer or QueueProducer(db, clock=clock, observer=observer)
        self.edit_locks = edit_locks
        self.direct_send_min_role = direct_send_min_role or Role(settings.DIRECT_SEND_MIN_ROLE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _get(self, entry_id: UUID) -> AuditLog:
        entry = self.db.query(AuditLog).filter(AuditLog.id == entry_id).first()
        if not entry:
            raise EntryNotFoundError(f"Message {entry_id} not found")
        return entry

    def _authorize(
        self, actor: Actor, minimum: Role, action: str, entry: AuditLog | None = None
    ) -> None:
        try:
            require_role(actor, minimum, action)
        except PermissionDeniedError:
            self._record_denial(actor, action, entry)
            raise

    def _record_denial(self, actor: Actor, action: str, entry: AuditLog | None) -> None:
        self.observer.event(
            "permission_denied", user_id=str(actor.user_id), role=role_name(actor.role), action=action
        )
        if entry is None:
            return
        with self._transaction():
            audit_service.log_event(
                self.db,
                AuditEventType.PERMISSION_DENIED,
                audit_log_id=entry.id,
                actor_user_id=actor.user_id,
                details={"action": action, "role": role_name(actor.role)},
                created_at=self.clock(),
            )

    def _ensure_editable(self, actor: Actor, entry: AuditLog) -> None:
        if self.edit_locks is not None:
            self.edit_locks.ensure_editable(LOCK_ENTITY_TYPE, entry.id, actor)

    @staticmethod
    def _validate_text(text: str | None, field: str) -> str:
        if text is None or not text.strip():
            raise WorkflowValidationError(f"{field} is required")
        return text

    @staticmethod
    def _validate_delivery(details: DeliveryDetails) -> DeliveryDetails:
        method = DeliveryMethod(details.method)
        if method == DeliveryMethod.EMAIL and not (details.recipient_email or "").strip():
            raise WorkflowValidationError("recipient_email is required for email delivery")
        if method == DeliveryMethod.SMS and not (details.recipient_phone or "").strip():
            raise WorkflowValidationError("recipient_phone is required for SMS delivery")
        return details

    @staticmethod
    def _apply_delivery(entry: AuditLog, details: DeliveryDetails) -> None:
        entry.delivery_method = DeliveryMethod(details.method).value
        entry.recipient_email = details.recipient_email
        entry.recipient_phone = details.recipient_phone
        entry.priority = Priority(details.priority).value
        entry.scheduled_for = details.scheduled_for

    def _transition(
        self,
        entry: AuditLog,
        to_status: DeliveryStatus,
        event_type: AuditEventType,
        actor_user_id: UUID | None,
        at: datetime,
        *,
        action_type: ActionType | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        from_status = DeliveryStatus(entry.delivery_status)
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransitionError(from_status.value, to_status.value)
        entry.delivery_status = to_status.value
        if action_type is not None:
            entry.action_type = action_type.value
        entry.updated_at = at
        audit_service.log_event(
            self.db,
            event_type,
            audit_log_id=entry.id,
            actor_user_id=actor_user_id,
            from_status=from_status.value,
            to_status=to_status.value,
            details=details,
            created_at=at,
        )
        logger.info(
            "Message %s: %s -> %s",
            entry.id,
            from_status.value,
            to_status.value,
            extra=build_log_context(
                message_id=str(entry.id),
                user_id=str(actor_user_id) if actor_user_id else None,
            ),
        )

    def _dispatch(self, entry: AuditLog, actor_user_id: UUID, at: datetime) -> MessageQueueEntry:
        """Create the queue entry, move to sent and schedule delivery."""
        method = DeliveryMethod(entry.delivery_method)
        queue_entry = MessageQueueEntry(
            audit_log_id=entry.id,
            delivery_method=method.value,
            recipient_email=entry.recipient_email,
            recipient_phone=entry.recipient_phone,
            subject=(
                EMAIL_SUBJECT_TEMPLATE.format(date=at.strftime("%Y-%m-%d"))
                if method == DeliveryMethod.EMAIL
                else None
            ),
            message_content=entry.final_message,
            priority=entry.priority,
            scheduled_for=entry.scheduled_for,
            status=QueueStatus.QUEUED.value,
            attempts=0,
            max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
            error_log=[],
            created_at=at,
            updated_at=at,
        )
        self.db.add(queue_entry)
        self.db.flush()

        self._transition(
            entry,
            DeliveryStatus.SENT,
            AuditEventType.MESSAGE_SENT,
            actor_user_id,
            at,
            action_type=ActionType.SENT,
            details={"delivery_method": method.value, "queue_entry_id": str(queue_entry.id)},
        )

        if method == DeliveryMethod.PORTAL:
            # Portal messages are visible once stored; there is no transport
            queue_entry.status = QueueStatus.SENT.value
            queue_entry.attempts = 1
            queue_entry.last_attempt_at = at
        else:
            self.producer.enqueue_delivery(queue_entry, commit=False)
        return queue_entry

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def record_draft(
        self,
        actor: Actor,
        *,
        patient_name: str,
        request_text: str,
        generated_draft: str,
        patient_id: str | None = None,
        ai_model: str | None = None,
        tokens_consumed: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLog:
        """Record an AI-generated draft (the start of every message lifecycle)."""
        self._authorize(actor, Role.STAFF, "create drafts")
        self._validate_text(patient_name, "patient_name")
        self._validate_text(generated_draft, "generated_draft")
        now = self.clock()

        entry = AuditLog(
            user_id=actor.user_id,
            patient_name=patient_name.strip(),
            patient_id=patient_id,
            request_text=request_text or "",
            generated_draft=generated_draft,
            action_type=ActionType.DRAFT_GENERATED.value,
            delivery_status=DeliveryStatus.DRAFT.value,
            ai_model_used=ai_model,
            tokens_consumed=tokens_consumed,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            edit_history=[],
            created_at=now,
            updated_at=now,
        )
        with self._transaction():
            self.db.add(entry)
            self.db.flush()
            audit_service.append_edit(
                entry, action="draft_generated", actor_user_id=actor.user_id, at=now
            )
            audit_service.log_event(
                self.db,
                AuditEventType.MESSAGE_DRAFTED,
                audit_log_id=entry.id,
                actor_user_id=actor.user_id,
                to_status=DeliveryStatus.DRAFT.value,
                details={"ai_model": ai_model, "tokens_consumed": tokens_consumed},
                created_at=now,
            )
        return entry

    def submit_for_review(
        self,
        actor: Actor,
        entry_id: UUID,
        *,
        final_message: str,
        delivery: DeliveryDetails,
    ) -> AuditLog:
        """
        Submit (or resubmit after rejection) the author's draft for review.

        A rejected message must come back with changed text.
        """
        entry = self._get(entry_id)
        self._authorize(actor, Role.STAFF, "submit messages for review", entry)
        if entry.user_id != actor.user_id:
            self._record_denial(actor, "submit another author's draft", entry)
            raise PermissionDeniedError("You can only submit your own drafts")
        self._ensure_editable(actor, entry)

        current = DeliveryStatus(entry.delivery_status)
        if current not in (DeliveryStatus.DRAFT, DeliveryStatus.REJECTED):
            raise InvalidTransitionError(current.value, DeliveryStatus.PENDING_REVIEW.value)
        text = self._validate_text(final_message, "final_message")
        self._validate_delivery(delivery)
        if current == DeliveryStatus.REJECTED and text == entry.final_message:
            raise WorkflowValidationError("A rejected message must be edited before resubmission")

        now = self.clock()
        with self._transaction():
            if current == DeliveryStatus.REJECTED:
                audit_service.set_final_message(
                    entry, text, actor_user_id=actor.user_id, at=now, reason="resubmission"
                )
                self._transition(
                    entry,
                    DeliveryStatus.DRAFT,
                    AuditEventType.MESSAGE_EDITED,
                    actor.user_id,
                    now,
                    details={"content_hash_after": audit_service.content_hash(text)},
                )
            else:
                if text != entry.generated_draft:
                    audit_service.append_edit(
                        entry,
                        action="draft_edited",
                        actor_user_id=actor.user_id,
                        at=now,
                        word_count_before=len(entry.generated_draft.split()),
                        word_count_after=len(text.split()),
                    )
                audit_service.set_final_message(
                    entry, text, actor_user_id=actor.user_id, at=now, reason="author_edit"
                )
            self._apply_delivery(entry, delivery)
            audit_service.append_edit(
                entry, action="submitted_for_review", actor_user_id=actor.user_id, at=now
            )
            self._transition(
                entry,
                DeliveryStatus.PENDING_REVIEW,
                AuditEventType.MESSAGE_SUBMITTED,
                actor.user_id,
                now,
                action_type=ActionType.SUBMITTED_FOR_REVIEW,
                details={"delivery_method": DeliveryMethod(delivery.method).value},
            )
        return entry

    def review(
        self,
        actor: Actor,
        entry_id: UUID,
        action: ReviewAction | str,
        *,
        reviewer_notes: str | None = None,
        edited_final_message: str | None = None,
    ) -> AuditLog:
        """Approve (and dispatch) or reject a pending message."""
        entry = self._get(entry_id)
        self._authorize(actor, Role.REVIEWER, "review messages", entry)
        try:
            action = ReviewAction(action)
        except ValueError:
            raise WorkflowValidationError(f"Unknown review action: {action}")
        current = DeliveryStatus(entry.delivery_status)
        if current != DeliveryStatus.PENDING_REVIEW:
            target = DeliveryStatus.APPROVED if action == ReviewAction.APPROVE else DeliveryStatus.REJECTED
            raise InvalidTransitionError(current.value, target.value)
        if edited_final_message is not None:
            self._validate_text(edited_final_message, "edited_final_message")
            self._ensure_editable(actor, entry)

        now = self.clock()
        with self._transaction():
            entry.reviewer_id = actor.user_id
            entry.review_notes = reviewer_notes
            entry.reviewed_at = now

            if action == ReviewAction.APPROVE:
                if edited_final_message is not None:
                    audit_service.set_final_message(
                        entry,
                        edited_final_message,
                        actor_user_id=actor.user_id,
                        at=now,
                        reason="review_edit",
                    )
                audit_service.append_edit(
                    entry, action="approved", actor_user_id=actor.user_id, at=now
                )
                self._transition(
                    entry,
                    DeliveryStatus.APPROVED,
                    AuditEventType.MESSAGE_APPROVED,
                    actor.user_id,
                    now,
                    action_type=ActionType.REVIEWED,
                    details={"has_notes": bool(reviewer_notes)},
                )
                self._dispatch(entry, actor.user_id, now)
            else:
                audit_service.append_edit(
                    entry, action="rejected", actor_user_id=actor.user_id, at=now
                )
                self._transition(
                    entry,
                    DeliveryStatus.REJECTED,
                    AuditEventType.MESSAGE_REJECTED,
                    actor.user_id,
                    now,
                    action_type=ActionType.REVIEWED,
                    details={"has_notes": bool(reviewer_notes)},
                )
        return entry

    def send_directly(
        self,
        actor: Actor,
        entry_id: UUID,
        *,
        final_message: str,
        delivery: DeliveryDetails,
    ) -> AuditLog:
        """Skip review and dispatch immediately (policy-configured minimum role)."""
        entry = self._get(entry_id)
        self._authorize(actor, self.direct_send_min_role, "send messages directly", entry)
        self._ensure_editable(actor, entry)
        current = DeliveryStatus(entry.delivery_status)
        if current not in (DeliveryStatus.DRAFT, DeliveryStatus.PENDING_REVIEW):
            raise InvalidTransitionError(current.value, DeliveryStatus.SENT.value)
        text = self._validate_text(final_message, "final_message")
        self._validate_delivery(delivery)

        now = self.clock()
        with self._transaction():
            audit_service.set_final_message(
                entry, text, actor_user_id=actor.user_id, at=now, reason="direct_send"
            )
            self._apply_delivery(entry, delivery)
            entry.reviewer_id = actor.user_id
            entry.reviewed_at = now
            audit_service.append_edit(
                entry, action="sent_directly", actor_user_id=actor.user_id, at=now
            )
            self._dispatch(entry, actor.user_id, now)
        return entry

    def update_delivery_status(
        self,
        entry_id: UUID,
        status: DeliveryStatus | str,
        *,
        failure_reason: str | None = None,
        provider_data: dict[str, Any] | None = None,
    ) -> AuditLog:
        """
        Apply a delivery outcome from the delivery subsystem or a webhook.

        Monotonic: a repeated status is a no-op, and delivered/failed are final.
        """
        try:
            status = DeliveryStatus(status)
        except ValueError:
            raise WorkflowValidationError(f"Unknown delivery status: {status}")
        if status not in CONFIRMABLE_STATUSES:
            raise WorkflowValidationError(f"Delivery status {status.value} cannot be reported")

        entry = self._get(entry_id)
        current = DeliveryStatus(entry.delivery_status)
        if current == status:
            return entry
        if STATUS_RANK[status] < STATUS_RANK[current]:
            logger.info(
                "Ignoring stale %s report for message %s (already %s)",
                status.value,
                entry.id,
                current.value,
            )
            return entry
        if status == DeliveryStatus.SENT and current != DeliveryStatus.APPROVED:
            # draft and pending_review only reach sent through review or send_directly
            raise InvalidTransitionError(current.value, status.value)

        now = self.clock()
        queue_entry = entry.queue_entry
        with self._transaction():
            if status == DeliveryStatus.DELIVERED:
                entry.delivered_at = now
                self._transition(
                    entry,
                    DeliveryStatus.DELIVERED,
                    AuditEventType.MESSAGE_DELIVERED,
                    None,
                    now,
                    action_type=ActionType.DELIVERY_CONFIRMED,
                )
                if queue_entry is not None:
                    queue_entry.status = QueueStatus.DELIVERED.value
                    queue_entry.delivery_confirmed = True
                    queue_entry.confirmed_at = now
                    queue_entry.next_retry_at = None
                    if provider_data:
                        queue_entry.webhook_data = provider_data
            elif status == DeliveryStatus.FAILED:
                entry.failure_reason = failure_reason
                self._transition(
                    entry,
                    DeliveryStatus.FAILED,
                    AuditEventType.MESSAGE_DELIVERY_FAILED,
                    None,
                    now,
                    action_type=ActionType.DELIVERY_FAILED,
                    details={"reason": (failure_reason or "")[:500]},
                )
                if queue_entry is not None and queue_entry.status != QueueStatus.FAILED.value:
                    queue_entry.status = QueueStatus.FAILED.value
                    queue_entry.next_retry_at = None
                    queue_entry.error_log = [
                        *(queue_entry.error_log or []),
                        {
                            "timestamp": now.isoformat(),
                            "error": failure_reason or "Delivery failed",
                            "attempt_number": queue_entry.attempts,
                            "provider": "webhook",
                        },
                    ]
                    if provider_data:
                        queue_entry.webhook_data = provider_data
            else:
                self._transition(
                    entry, DeliveryStatus.SENT, AuditEventType.MESSAGE_SENT, None, now,
                    action_type=ActionType.SENT,
                )
        self.observer.event("delivery_status_updated", message_id=str(entry.id), status=status.value)
        return entry

    def record_provider_acceptance(
        self, entry_id: UUID, *, external_id: str | None, provider: str | None
    ) -> AuditLog:
        """The provider took the message; status stays sent until confirmed."""
        entry = self._get(entry_id)
        now = self.clock()
        with self._transaction():
            if entry.delivery_status == DeliveryStatus.SENT.value:
                entry.action_type = ActionType.MESSAGE_SENT.value
                entry.updated_at = now
            audit_service.log_event(
                self.db,
                AuditEventType.MESSAGE_ACCEPTED_BY_PROVIDER,
                audit_log_id=entry.id,
                from_status=entry.delivery_status,
                to_status=entry.delivery_status,
                details={"external_id": external_id, "provider": provider},
                created_at=now,
            )
        return entry

    def record_retry_scheduled(self, entry_id: UUID, at: datetime) -> AuditLog:
        entry = self._get(entry_id)
        with self._transaction():
            entry.retry_count = (entry.retry_count or 0) + 1
            entry.last_retry_at = at
        return entry

    def list_pending_review(self, actor: Actor, limit: int = 50) -> list[AuditLog]:
        """Messages awaiting review, oldest first."""
        self._authorize(actor, Role.REVIEWER, "list messages pending review")
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.delivery_status == DeliveryStatus.PENDING_REVIEW.value)
            .order_by(AuditLog.created_at, AuditLog.id)
            .limit(limit)
            .all()
        )

    def view_entry(self, actor: Actor, entry_id: UUID) -> dict[str, Any]:
        entry = self._get(entry_id)
        self._authorize(actor, Role.STAFF, "view messages", entry)
        return audit_service.render_entry(actor, entry)

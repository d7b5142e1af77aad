"""Delivery processors - consume email/SMS jobs and drive their queue entries.

Per job, the queue entry moves ``queued -> processing -> sent``, or on a
provider failure back to ``queued`` (retryable, with exponential backoff)
or to ``failed`` (permanent, or out of attempts).

Redelivered jobs are expected: an entry that is no longer queued or
processing is left alone and the job is reported as skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from concierge.core.clock import Clock, utcnow
from concierge.core.config import settings
from concierge.core.observability import Observer, default_observer
from concierge.core.structured_logging import build_log_context
from concierge.db.enums import DeliveryMethod, DeliveryStatus, QueueStatus
from concierge.db.models import MessageQueueEntry
from concierge.schemas.jobs import EmailJob, SMSJob
from concierge.services.delivery_providers import (
    DeliveryMessage, DeliveryProvider, ProviderResult
)
from concierge.services.workflow_service import WorkflowEngine

logger = logging.getLogger(__name__)

PROCESSABLE_STATUSES = (QueueStatus.QUEUED.value, QueueStatus.PROCESSING.value)

# Lower-cased substrings that mark a failure as permanent
NON_RETRYABLE_PATTERNS = (
    "invalid email",
    "invalid address",
    "invalid recipient",
    "invalid number",
    "invalid phone",
    "blocked",
    "unsubscribed",
    "bounced",
    "hard bounce",
    "carrier rejection",
    "rejected by carrier",
)


def is_retryable(error: str | None) -> bool:
    if not error:
        return True
    lowered = error.lower()
    return not any(pattern in lowered for pattern in NON_RETRYABLE_PATTERNS)


def retry_delay(attempt_number: int) -> timedelta:
    """Backoff after the given (1-based) failed attempt: 2^n minutes."""
    return timedelta(minutes=2 ** attempt_number)


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    message_id: str
    status: str | None = None
    external_id: str | None = None
    error: str | None = None
    retry_at: datetime | None = None
    skipped: bool = False


class DeliveryProcessor:
    """Shared delivery algorithm; subclasses only shape the provider message."""

    method: DeliveryMethod

    def __init__(
        self,
        db: Session,
        provider: DeliveryProvider,
        *,
        workflow: WorkflowEngine | None = None,
        clock: Clock = utcnow,
        observer: Observer = default_observer,
        timeout_seconds: float | None = None,
    ) -> None:
        self.db = db
        self.provider = provider
        self.clock = clock
        self.observer = observer
        self.workflow = workflow or WorkflowEngine(db, clock=clock, observer=observer)
        self.timeout_seconds = (
            settings.DELIVERY_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )

    def subject_for(self, job: EmailJob | SMSJob) -> str:
        return ""

    def build_message(
        self, job: EmailJob | SMSJob, entry: MessageQueueEntry, now: datetime
    ) -> DeliveryMessage:
        metadata: dict[str, Any] = {
            **job.metadata,
            "queue_processed_at": now.isoformat(),
            "attempt_number": entry.attempts + 1,
        }
        return DeliveryMessage(
            to=job.recipient,
            subject=self.subject_for(job),
            content=job.content,
            message_id=str(entry.id),
            priority=job.priority.value,
            delivery_method=self.method,
            metadata=metadata,
        )

    async def _call_provider(self, message: DeliveryMessage) -> ProviderResult:
        try:
            return await asyncio.wait_for(self.provider.send(message), self.timeout_seconds)
        except asyncio.TimeoutError:
            return ProviderResult(success=False, error="Provider timeout", provider=self.provider.name)

    async def process(self, job: EmailJob | SMSJob) -> DeliveryOutcome:
        message_id = str(job.message_id)
        log_context = build_log_context(queue_entry_id=message_id, job_kind=job.kind)

        entry = (
            self.db.query(MessageQueueEntry)
            .filter(MessageQueueEntry.id == job.message_id)
            .first()
        )
        if entry is None:
            logger.warning("Queue entry %s not found, skipping", message_id, extra=log_context)
            return DeliveryOutcome(
                success=False, message_id=message_id, error="Queue entry not found", skipped=True
            )
        if entry.status not in PROCESSABLE_STATUSES:
            logger.info(
                "Queue entry %s is %s, skipping redelivered job", message_id, entry.status,
                extra=log_context,
            )
            return DeliveryOutcome(
                success=False,
                message_id=message_id,
                status=entry.status,
                error=f"Queue entry is {entry.status}",
                skipped=True,
            )

        try:
            outcome = await self._attempt(job, entry)
        except Exception as exc:
            self.db.rollback()
            self.observer.exception(exc, queue_entry_id=message_id, job_kind=job.kind)
            self._mark_processing_error(job, exc)
            outcome = DeliveryOutcome(
                success=False,
                message_id=message_id,
                status=QueueStatus.FAILED.value,
                error=str(exc) or type(exc).__name__,
            )

        self._propagate(entry, outcome)
        return outcome

    async def _attempt(self, job: EmailJob | SMSJob, entry: MessageQueueEntry) -> DeliveryOutcome:
        message_id = str(entry.id)
        now = self.clock()
        if entry.attempts >= entry.max_attempts:
            entry.status = QueueStatus.FAILED.value
            entry.next_retry_at = None
            self.db.commit()
            return DeliveryOutcome(
                success=False,
                message_id=message_id,
                status=entry.status,
                error="Maximum attempts reached",
            )

        entry.status = QueueStatus.PROCESSING.value
        entry.updated_at = now
        self.db.commit()

        result = await self._call_provider(self.build_message(job, entry, now))

        now = self.clock()
        attempt_number = entry.attempts + 1
        entry.attempts = attempt_number
        entry.last_attempt_at = now
        entry.updated_at = now
        provider_name = result.provider or self.provider.name

        if result.success:
            entry.status = QueueStatus.SENT.value
            entry.external_id = result.external_id
            entry.next_retry_at = None
            self.db.commit()
            logger.info(
                "Delivered %s via %s (attempt %s)", message_id, provider_name, attempt_number,
                extra=build_log_context(
                    queue_entry_id=message_id, attempt=attempt_number, provider=provider_name
                ),
            )
            self.observer.event(
                "delivery_sent", queue_entry_id=message_id, attempt=attempt_number, provider=provider_name
            )
            return DeliveryOutcome(
                success=True,
                message_id=message_id,
                status=entry.status,
                external_id=result.external_id,
            )

        error = result.error or "Unknown delivery error"
        entry.error_log = [
            *(entry.error_log or []),
            {
                "timestamp": now.isoformat(),
                "error": error,
                "attempt_number": attempt_number,
                "provider": provider_name,
            },
        ]
        retryable = not result.permanent and is_retryable(error)
        if retryable and attempt_number < entry.max_attempts:
            retry_at = now + retry_delay(attempt_number)
            entry.status = QueueStatus.QUEUED.value
            entry.next_retry_at = retry_at
            self.db.commit()
            logger.warning(
                "Delivery of %s failed (attempt %s), retrying at %s",
                message_id, attempt_number, retry_at.isoformat(),
                extra=build_log_context(queue_entry_id=message_id, attempt=attempt_number),
            )
            self.observer.event(
                "delivery_retry_scheduled",
                queue_entry_id=message_id,
                attempt=attempt_number,
                retry_at=retry_at.isoformat(),
            )
            return DeliveryOutcome(
                success=False,
                message_id=message_id,
                status=entry.status,
                error=error,
                retry_at=retry_at,
            )

        entry.status = QueueStatus.FAILED.value
        entry.next_retry_at = None
        self.db.commit()
        logger.warning(
            "Delivery of %s failed permanently (attempt %s, retryable=%s)",
            message_id, attempt_number, retryable,
            extra=build_log_context(queue_entry_id=message_id, attempt=attempt_number),
        )
        self.observer.event(
            "delivery_failed",
            queue_entry_id=message_id,
            attempt=attempt_number,
            permanent=not retryable,
        )
        return DeliveryOutcome(
            success=False, message_id=message_id, status=entry.status, error=error
        )

    def _propagate(self, entry: MessageQueueEntry, outcome: DeliveryOutcome) -> None:
        """Mirror the queue outcome onto the message; never undoes the queue state."""
        try:
            if outcome.success:
                self.workflow.record_provider_acceptance(
                    entry.audit_log_id,
                    external_id=outcome.external_id,
                    provider=self.provider.name,
                )
            elif outcome.retry_at is not None:
                self.workflow.record_retry_scheduled(entry.audit_log_id, self.clock())
            elif outcome.status == QueueStatus.FAILED.value:
                self.workflow.update_delivery_status(
                    entry.audit_log_id, DeliveryStatus.FAILED, failure_reason=outcome.error
                )
        except Exception as exc:
            self.observer.exception(exc, queue_entry_id=str(entry.id), stage="propagate")

    def _mark_processing_error(self, job: EmailJob | SMSJob, exc: Exception) -> None:
        """Unexpected failure: state is uncertain, so fail without retry."""
        try:
            entry = (
                self.db.query(MessageQueueEntry)
                .filter(MessageQueueEntry.id == job.message_id)
                .first()
            )
            if entry is None:
                return
            now = self.clock()
            entry.status = QueueStatus.FAILED.value
            entry.next_retry_at = None
            entry.updated_at = now
            entry.error_log = [
                *(entry.error_log or []),
                {
                    "timestamp": now.isoformat(),
                    "error": str(exc) or type(exc).__name__,
                    "type": "processing_error",
                    "attempt_number": entry.attempts,
                    "provider": self.provider.name,
                },
            ]
            self.db.commit()
        except Exception as inner:
            self.db.rollback()
            logger.exception("Could not record processing error for %s", job.message_id)
            self.observer.exception(inner, queue_entry_id=str(job.message_id), stage="record_error")


class EmailDeliveryProcessor(DeliveryProcessor):
    method = DeliveryMethod.EMAIL

    def subject_for(self, job: EmailJob | SMSJob) -> str:
        return getattr(job, "subject", "") or ""


class SMSDeliveryProcessor(DeliveryProcessor):
    method = DeliveryMethod.SMS

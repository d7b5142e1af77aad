"""Queue producer - turns workflow outcomes and maintenance needs into durable jobs.

Delay defaults come from the job's priority (urgent/high=0s, normal=1s,
low=5s). Export and cleanup jobs are always low priority; cleanup waits an
extra minute by default so it stays clear of interactive traffic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from concierge.core.clock import Clock, utcnow
from concierge.core.config import settings
from concierge.core.observability import Observer, default_observer
from concierge.core.structured_logging import build_log_context
from concierge.db.enums import (
    CleanupTarget, DeliveryMethod, ExportFormat, Priority, QueueStatus
)
from concierge.db.models import MessageQueueEntry
from concierge.schemas.compliance import ExportFilters
from concierge.schemas.jobs import (
    CleanupJob, EmailJob, ExportJob, Job, SMSJob, job_kind, job_priority
)
from concierge.services import job_service

logger = logging.getLogger(__name__)

PRIORITY_DELAY_SECONDS: dict[Priority, float] = {
    Priority.URGENT: 0,
    Priority.HIGH: 0,
    Priority.NORMAL: 1,
    Priority.LOW: 5,
}
CLEANUP_DELAY_SECONDS = 60


def delivery_dedup_id(queue_entry_id: UUID) -> str:
    return f"delivery:{queue_entry_id}"


def default_delay_seconds(job: Job) -> float:
    if isinstance(job, CleanupJob):
        return CLEANUP_DELAY_SECONDS
    return PRIORITY_DELAY_SECONDS[job_priority(job)]


def build_delivery_job(entry: MessageQueueEntry) -> EmailJob | SMSJob:
    """Job payload for a queue entry; portal entries have no transport job."""
    metadata = {
        "audit_log_id": str(entry.audit_log_id),
        "delivery_method": entry.delivery_method,
    }
    if entry.delivery_method == DeliveryMethod.EMAIL.value:
        return EmailJob(
            message_id=entry.id,
            recipient=entry.recipient_email or "",
            subject=entry.subject or "",
            content=entry.message_content,
            priority=Priority(entry.priority),
            metadata=metadata,
        )
    if entry.delivery_method == DeliveryMethod.SMS.value:
        return SMSJob(
            message_id=entry.id,
            recipient=entry.recipient_phone or "",
            content=entry.message_content,
            priority=Priority(entry.priority),
            metadata=metadata,
        )
    raise ValueError(f"No delivery job for method {entry.delivery_method}")


@dataclass(frozen=True)
class EnqueueResult:
    job_id: UUID
    run_at: datetime
    deduplicated: bool = False


class QueueProducer:
    """Places jobs on the durable queue (the jobs table)."""

    def __init__(
        self,
        db: Session,
        *,
        clock: Clock = utcnow,
        observer: Observer = default_observer,
    ) -> None:
        self.db = db
        self.clock = clock
        self.observer = observer

    def enqueue(
        self,
        job: Job,
        *,
        delay: float | None = None,
        dedup_id: str | None = None,
        commit: bool = True,
    ) -> EnqueueResult:
        """
        Schedule a job after ``delay`` seconds (priority default when None).

        A dedup_id that already belongs to a pending or running job returns
        that job instead of scheduling a second one. Failures propagate.
        """
        if dedup_id:
            existing = job_service.find_outstanding_job(self.db, dedup_id)
            if existing:
                self.observer.event(
                    "job_deduplicated", job_id=str(existing.id), kind=job.kind
                )
                return EnqueueResult(existing.id, existing.run_at, deduplicated=True)

        seconds = default_delay_seconds(job) if delay is None else max(0.0, delay)
        run_at = self.clock() + timedelta(seconds=seconds)
        try:
            record = job_service.schedule_job(
                self.db,
                job_kind(job),
                job.model_dump(mode="json"),
                priority=job_priority(job),
                run_at=run_at,
                idempotency_key=dedup_id,
                commit=commit,
            )
        except Exception:
            if commit:
                self.db.rollback()
            raise

        logger.info(
            "Enqueued %s job %s (delay=%ss)",
            job.kind,
            record.id,
            seconds,
            extra=build_log_context(job_id=str(record.id), job_kind=job.kind),
        )
        self.observer.event(
            "job_enqueued", job_id=str(record.id), kind=job.kind, delay_seconds=seconds
        )
        return EnqueueResult(record.id, run_at)

    def enqueue_batch(
        self,
        jobs: Iterable[Job],
        *,
        delay: float | None = None,
        commit: bool = True,
    ) -> list[EnqueueResult]:
        """Enqueue several jobs in one transaction (all or nothing)."""
        try:
            results = [self.enqueue(job, delay=delay, commit=False) for job in jobs]
            if commit:
                self.db.commit()
        except Exception:
            if commit:
                self.db.rollback()
            raise
        return results

    def enqueue_send_later(
        self,
        job: Job,
        send_at: datetime,
        *,
        dedup_id: str | None = None,
        commit: bool = True,
    ) -> EnqueueResult:
        delay = max(0.0, (send_at - self.clock()).total_seconds())
        return self.enqueue(job, delay=delay, dedup_id=dedup_id, commit=commit)

    def enqueue_delivery(
        self, entry: MessageQueueEntry, *, commit: bool = True
    ) -> EnqueueResult:
        """Delivery job for a queue entry, deduplicated per entry."""
        job = build_delivery_job(entry)
        dedup_id = delivery_dedup_id(entry.id)
        if entry.scheduled_for:
            return self.enqueue_send_later(
                job, entry.scheduled_for, dedup_id=dedup_id, commit=commit
            )
        return self.enqueue(job, dedup_id=dedup_id, commit=commit)

    def enqueue_export(
        self,
        export_id: UUID,
        filters: ExportFilters,
        user_id: UUID,
        file_format: ExportFormat,
        *,
        commit: bool = True,
    ) -> EnqueueResult:
        job = ExportJob(export_id=export_id, filters=filters, user_id=user_id, format=file_format)
        return self.enqueue(job, dedup_id=f"export:{export_id}", commit=commit)

    def enqueue_cleanup(
        self,
        target: CleanupTarget,
        older_than: datetime,
        *,
        delay: float | None = None,
        commit: bool = True,
    ) -> EnqueueResult:
        job = CleanupJob(target=target, older_than=older_than)
        return self.enqueue(
            job, delay=delay, dedup_id=f"cleanup:{target.value}", commit=commit
        )

    def enqueue_retention_sweep(self) -> list[EnqueueResult]:
        """One cleanup job per target, each with its retention cutoff."""
        now = self.clock()
        try:
            results = [
                self.enqueue_cleanup(target, now - timedelta(days=days), commit=False)
                for target, days in retention_days().items()
            ]
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return results

    def reconcile_deliveries(self, limit: int = 100) -> int:
        """
        Re-enqueue deliveries that have no outstanding job.

        Covers entries whose enqueue was lost after the transition committed,
        entries whose retry time has come without a scheduled job, and
        entries left processing by a worker that died mid-attempt.
        """
        now = self.clock()
        stale_before = now - timedelta(seconds=settings.JOB_CLAIM_TIMEOUT_SECONDS)
        entries = (
            self.db.query(MessageQueueEntry)
            .filter(
                MessageQueueEntry.delivery_method != DeliveryMethod.PORTAL.value,
                or_(
                    and_(
                        MessageQueueEntry.status == QueueStatus.QUEUED.value,
                        or_(
                            MessageQueueEntry.next_retry_at.is_(None),
                            MessageQueueEntry.next_retry_at <= now,
                        ),
                    ),
                    and_(
                        MessageQueueEntry.status == QueueStatus.PROCESSING.value,
                        MessageQueueEntry.updated_at <= stale_before,
                    ),
                ),
            )
            .order_by(MessageQueueEntry.created_at)
            .limit(limit)
            .all()
        )
        requeued = 0
        for entry in entries:
            if job_service.find_outstanding_job(self.db, delivery_dedup_id(entry.id)):
                continue
            self.enqueue_delivery(entry, commit=False)
            requeued += 1
        if requeued:
            self.db.commit()
            logger.info("Reconciled %s deliveries without a job", requeued)
        return requeued


def retention_days() -> dict[CleanupTarget, int]:
    return {
        CleanupTarget.AUDIT_LOGS: settings.AUDIT_LOG_RETENTION_DAYS,
        CleanupTarget.MESSAGE_QUEUE: settings.MESSAGE_QUEUE_RETENTION_DAYS,
        CleanupTarget.TEMP_FILES: settings.TEMP_FILE_RETENTION_DAYS,
    }

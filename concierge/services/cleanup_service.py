"""Retention cleanup - decides what aged data is archived and what is deleted.

- audit_logs: archive only (compliance records are never hard-deleted)
- message_queue: archive delivered entries, delete failed/cancelled ones
- temp_files: delete export artifacts older than the cutoff

Archiving only stamps ``archived_at``; moving archived rows to cold
storage happens elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from concierge.core.clock import Clock, utcnow
from concierge.core.config import settings
from concierge.core.observability import Observer, default_observer
from concierge.db.enums import AuditEventType, CleanupTarget, QueueStatus
from concierge.db.models import AuditLog, MessageQueueEntry
from concierge.schemas.jobs import CleanupJob
from concierge.services import audit_service
from concierge.services.queue_producer import retention_days

logger = logging.getLogger(__name__)

ARCHIVE_QUEUE_STATUSES = (QueueStatus.DELIVERED.value,)
DELETE_QUEUE_STATUSES = (QueueStatus.FAILED.value, QueueStatus.CANCELLED.value)


@dataclass(frozen=True)
class CleanupResult:
    success: bool
    target: str
    records_processed: int = 0
    records_archived: int = 0
    records_deleted: int = 0
    duration: float = 0.0
    error: str | None = None


class CleanupProcessor:
    def __init__(
        self,
        db: Session,
        *,
        clock: Clock = utcnow,
        observer: Observer = default_observer,
        temp_dir: str | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.observer = observer
        self.temp_dir = temp_dir or settings.EXPORT_LOCAL_DIR

    def process(self, job: CleanupJob) -> CleanupResult:
        target = CleanupTarget(job.target)
        started = time.monotonic()
        try:
            if target == CleanupTarget.AUDIT_LOGS:
                archived, deleted = self._archive_audit_logs(job.older_than), 0
            elif target == CleanupTarget.MESSAGE_QUEUE:
                archived, deleted = self._clean_message_queue(job.older_than)
            else:
                archived, deleted = 0, self._delete_temp_files(job.older_than)

            processed = archived + deleted
            duration = time.monotonic() - started
            audit_service.log_event(
                self.db,
                AuditEventType.CLEANUP_EXECUTED,
                details={
                    "target": target.value,
                    "older_than": job.older_than.isoformat(),
                    "records_processed": processed,
                    "records_archived": archived,
                    "records_deleted": deleted,
                },
                created_at=self.clock(),
            )
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            self.observer.exception(exc, target=target.value)
            return CleanupResult(
                success=False,
                target=target.value,
                duration=time.monotonic() - started,
                error=str(exc),
            )

        logger.info(
            "Cleanup %s: processed=%s archived=%s deleted=%s",
            target.value, processed, archived, deleted,
        )
        self.observer.event(
            "cleanup_executed",
            target=target.value,
            records_processed=processed,
            records_archived=archived,
            records_deleted=deleted,
        )
        return CleanupResult(
            success=True,
            target=target.value,
            records_processed=processed,
            records_archived=archived,
            records_deleted=deleted,
            duration=duration,
        )

    async def run_sweep(self, *, pause_seconds: float | None = None) -> list[CleanupResult]:
        """Run every target in turn with a pause between them."""
        pause = settings.CLEANUP_SWEEP_PAUSE_SECONDS if pause_seconds is None else pause_seconds
        now = self.clock()
        results: list[CleanupResult] = []
        targets = list(retention_days().items())
        for idx, (target, days) in enumerate(targets):
            if idx > 0 and pause > 0:
                await asyncio.sleep(pause)
            results.append(
                self.process(CleanupJob(target=target, older_than=now - timedelta(days=days)))
            )
        return results

    def _archive_audit_logs(self, older_than: datetime) -> int:
        now = self.clock()
        entries = (
            self.db.query(AuditLog)
            .filter(AuditLog.created_at < older_than, AuditLog.archived_at.is_(None))
            .all()
        )
        for entry in entries:
            entry.archived_at = now
        return len(entries)

    def _clean_message_queue(self, older_than: datetime) -> tuple[int, int]:
        now = self.clock()
        aged = (
            self.db.query(MessageQueueEntry)
            .filter(
                MessageQueueEntry.created_at < older_than,
                MessageQueueEntry.archived_at.is_(None),
                MessageQueueEntry.status.in_(ARCHIVE_QUEUE_STATUSES + DELETE_QUEUE_STATUSES),
            )
            .all()
        )
        archived = deleted = 0
        for entry in aged:
            if entry.status in ARCHIVE_QUEUE_STATUSES:
                entry.archived_at = now
                archived += 1
            else:
                self.db.delete(entry)
                deleted += 1
        return archived, deleted

    def _delete_temp_files(self, older_than: datetime) -> int:
        root = os.path.abspath(self.temp_dir)
        if not os.path.isdir(root):
            return 0
        cutoff = older_than.replace(tzinfo=timezone.utc).timestamp()
        deleted = 0
        for dirpath, _dirnames, filenames in os.walk(root, topdown=False):
            for name in filenames:
                path = os.path.join(dirpath, name)
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
                    deleted += 1
            if dirpath != root and not os.listdir(dirpath):
                os.rmdir(dirpath)
        return deleted

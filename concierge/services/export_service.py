"""Compliance exports of the message audit trail (CSV/JSON).

Exports are requested synchronously (row + audit event + queued job in one
transaction) and produced by ``ExportProcessor`` in the worker. Message
text is redacted unless full content was explicitly requested for a JSON
export; CSV always carries the redacted preview.
"""

from __future__ import annotations

import csv
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from concierge.core.clock import Clock, utcnow
from concierge.core.config import settings
from concierge.core.exceptions import PermissionDeniedError
from concierge.core.observability import Observer, default_observer
from concierge.core.permissions import Actor, require_any_role, role_name
from concierge.db.enums import AuditEventType, ExportFormat, ExportStatus, Role
from concierge.db.models import AuditExport, AuditLog, User
from concierge.schemas.compliance import ExportFilters
from concierge.schemas.jobs import ExportJob
from concierge.services import audit_service
from concierge.services.queue_producer import QueueProducer

logger = logging.getLogger(__name__)

EXPORT_ROLES = (Role.AUDITOR, Role.ADMIN)

CSV_COLUMNS = (
    "timestamp",
    "user_email",
    "user_role",
    "patient_name",
    "action_type",
    "delivery_status",
    "content_preview",
    "content_hash",
    "ai_model",
    "tokens_consumed",
    "ip_address",
    "review_status",
)

CSV_DANGEROUS_PREFIXES = ("=", "+", "-", "@")


def _csv_safe(value: str) -> str:
    if value and value.startswith(CSV_DANGEROUS_PREFIXES):
        return f"'{value}"
    return value


def _serialize_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def export_filename(file_format: ExportFormat, now: datetime) -> str:
    return f"audit_logs_{now.strftime('%Y-%m-%d')}.{ExportFormat(file_format).value}"


def effective_limit(filters: ExportFilters) -> int:
    """Requested page size, never above EXPORT_MAX_RECORDS."""
    return min(filters.limit or settings.EXPORT_DEFAULT_LIMIT, settings.EXPORT_MAX_RECORDS)


def resolve_local_export_path(file_path: str) -> str:
    return os.path.join(os.path.abspath(settings.EXPORT_LOCAL_DIR), file_path)


# =============================================================================
# Requests
# =============================================================================

def request_export(
    db: Session,
    actor: Actor,
    filters: ExportFilters,
    file_format: ExportFormat | str = ExportFormat.CSV,
    include_content: bool = False,
    *,
    producer: QueueProducer | None = None,
    clock: Clock = utcnow,
    observer: Observer = default_observer,
) -> AuditExport:
    """Record an export request and queue it for the worker (auditor/admin only)."""
    try:
        require_any_role(actor, EXPORT_ROLES, "export audit logs")
    except PermissionDeniedError:
        audit_service.log_event(
            db,
            AuditEventType.PERMISSION_DENIED,
            actor_user_id=actor.user_id,
            details={"action": "export audit logs", "role": role_name(actor.role)},
            created_at=clock(),
        )
        db.commit()
        observer.event("permission_denied", user_id=str(actor.user_id), action="export")
        raise

    file_format = ExportFormat(file_format)
    producer = producer or QueueProducer(db, clock=clock, observer=observer)
    now = clock()
    export = AuditExport(
        requested_by_user_id=actor.user_id,
        format=file_format.value,
        filters=filters.model_dump(mode="json", exclude_none=True),
        include_content=include_content,
        status=ExportStatus.PENDING.value,
        created_at=now,
    )
    try:
        db.add(export)
        db.flush()
        audit_service.log_event(
            db,
            AuditEventType.EXPORT_REQUESTED,
            actor_user_id=actor.user_id,
            details={
                "export_id": str(export.id),
                "format": file_format.value,
                "include_content": include_content,
            },
            created_at=now,
        )
        producer.enqueue_export(export.id, filters, actor.user_id, file_format, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(export)
    return export


def get_export(db: Session, export_id: UUID) -> AuditExport | None:
    return db.query(AuditExport).filter(AuditExport.id == export_id).first()


# =============================================================================
# Processing
# =============================================================================

def query_audit_logs(db: Session, filters: ExportFilters) -> list[AuditLog]:
    query = db.query(AuditLog)
    if filters.start_date:
        query = query.filter(AuditLog.created_at >= filters.start_date)
    if filters.end_date:
        query = query.filter(AuditLog.created_at <= filters.end_date)
    if filters.user_id:
        query = query.filter(AuditLog.user_id == filters.user_id)
    if filters.action_type:
        query = query.filter(AuditLog.action_type == filters.action_type.value)
    if filters.delivery_status:
        query = query.filter(AuditLog.delivery_status == filters.delivery_status.value)
    if filters.patient_name:
        query = query.filter(AuditLog.patient_name.ilike(f"%{filters.patient_name}%"))
    return (
        query.order_by(AuditLog.created_at.desc(), AuditLog.id)
        .limit(effective_limit(filters))
        .all()
    )


def _resolve_users(db: Session, logs: list[AuditLog]) -> dict[UUID, User]:
    user_ids = {log.user_id for log in logs}
    if not user_ids:
        return {}
    return {user.id: user for user in db.query(User).filter(User.id.in_(user_ids)).all()}


def build_export_rows(
    db: Session, logs: list[AuditLog], *, include_content: bool = False
) -> list[dict[str, Any]]:
    users = _resolve_users(db, logs)
    rows: list[dict[str, Any]] = []
    for log in logs:
        user = users.get(log.user_id)
        text = log.final_message or log.generated_draft
        row: dict[str, Any] = {
            "timestamp": log.created_at,
            "user_email": user.email if user else "unknown",
            "user_role": user.role if user else "unknown",
            "patient_name": log.patient_name,
            "action_type": log.action_type,
            "delivery_status": log.delivery_status,
            "content_preview": audit_service.redact(text),
            "content_hash": log.content_hash,
            "ai_model": log.ai_model_used,
            "tokens_consumed": log.tokens_consumed,
            "ip_address": log.ip_address,
            "review_status": "reviewed" if log.reviewer_id else "pending",
        }
        if include_content:
            row["generated_draft"] = log.generated_draft
            row["final_message"] = log.final_message
        rows.append(row)
    return rows


def _write_csv(file_path: str, rows: list[dict[str, Any]]) -> None:
    with open(file_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for row in rows:
            writer.writerow([_csv_safe(_serialize_value(row.get(key))) for key in CSV_COLUMNS])


def _write_json(file_path: str, rows: list[dict[str, Any]]) -> None:
    with open(file_path, "w", encoding="utf-8") as f:
        f.write("[\n")
        for idx, row in enumerate(rows):
            if idx > 0:
                f.write(",\n")
            f.write(json.dumps(row, default=_serialize_value))
        f.write("\n]")


@dataclass(frozen=True)
class ExportResult:
    success: bool
    export_id: str
    record_count: int = 0
    file_path: str | None = None
    error: str | None = None


class ExportProcessor:
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

    def process(self, job: ExportJob) -> ExportResult:
        """
        Produce the export artifact for ``job``.

        Expected failures are returned (and recorded on the export row);
        nothing is raised to the worker.
        """
        export_id = str(job.export_id)
        export = get_export(self.db, job.export_id)
        if export is None:
            logger.warning("Export %s not found, skipping", export_id)
            return ExportResult(success=False, export_id=export_id, error="Export not found")
        if export.status == ExportStatus.COMPLETED.value:
            return ExportResult(
                success=True,
                export_id=export_id,
                record_count=export.record_count or 0,
                file_path=export.file_path,
            )

        export.status = ExportStatus.PROCESSING.value
        self.db.commit()

        try:
            logs = query_audit_logs(self.db, job.filters)
            include_content = export.include_content and job.format == ExportFormat.JSON
            rows = build_export_rows(self.db, logs, include_content=include_content)

            now = self.clock()
            export_dir = os.path.join(os.path.abspath(settings.EXPORT_LOCAL_DIR), export_id)
            os.makedirs(export_dir, exist_ok=True)
            file_path = os.path.join(export_dir, export_filename(job.format, now))
            if job.format == ExportFormat.CSV:
                _write_csv(file_path, rows)
            else:
                _write_json(file_path, rows)

            export.record_count = len(rows)
            export.file_path = os.path.relpath(file_path, os.path.abspath(settings.EXPORT_LOCAL_DIR))
            export.status = ExportStatus.COMPLETED.value
            export.completed_at = now
            audit_service.log_event(
                self.db,
                AuditEventType.EXPORT_COMPLETED,
                actor_user_id=job.user_id,
                details={"export_id": export_id, "record_count": len(rows)},
                created_at=now,
            )
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            self.observer.exception(exc, export_id=export_id)
            self._mark_failed(job.export_id, str(exc))
            return ExportResult(success=False, export_id=export_id, error=str(exc))

        logger.info("Export %s completed with %s records", export_id, export.record_count)
        self.observer.event("export_completed", export_id=export_id, record_count=export.record_count)
        return ExportResult(
            success=True,
            export_id=export_id,
            record_count=export.record_count,
            file_path=export.file_path,
        )

    def _mark_failed(self, export_id: UUID, error: str) -> None:
        export = get_export(self.db, export_id)
        if export is None:
            return
        export.status = ExportStatus.FAILED.value
        export.error_message = error[:1000]
        export.completed_at = self.clock()
        self.db.commit()

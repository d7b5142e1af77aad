import csv
import json
import os
import uuid
from datetime import timedelta

import pytest

from concierge.core.config import settings
from concierge.core.exceptions import PermissionDeniedError
from concierge.db.enums import (
    ActionType, AuditEventType, DeliveryStatus, ExportFormat, ExportStatus, JobKind, Priority
)
from concierge.db.models import AuditEvent, AuditExport, AuditLog, Job
from concierge.schemas.compliance import ExportFilters
from concierge.schemas.jobs import ExportJob, parse_job
from concierge.services import export_service
from concierge.services.export_service import (
    CSV_COLUMNS,
    ExportProcessor,
    export_filename,
    request_export,
    resolve_local_export_path,
)


@pytest.fixture(autouse=True)
def export_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "EXPORT_LOCAL_DIR", str(tmp_path))
    return tmp_path


def _add_logs(db, actor, clock, count, **overrides):
    base = clock() - timedelta(days=1)
    logs = []
    for i in range(count):
        fields = dict(
            user_id=actor.user_id,
            patient_name=f"Patient {i}",
            request_text="follow up",
            generated_draft=f"Draft {i}",
            final_message=f"Final {i}",
            content_hash=f"{i:064d}",
            action_type=ActionType.SENT.value,
            delivery_status=DeliveryStatus.SENT.value,
            edit_history=[],
            created_at=base + timedelta(seconds=i),
            updated_at=base + timedelta(seconds=i),
        )
        fields.update(overrides)
        logs.append(AuditLog(**fields))
    db.add_all(logs)
    db.commit()
    return logs


def _request(db, actor, producer, clock, observer, filters=None, **kwargs):
    return request_export(
        db, actor, filters or ExportFilters(), producer=producer, clock=clock, observer=observer,
        **kwargs,
    )


def _export_job(db):
    record = db.query(Job).filter(Job.job_type == JobKind.EXPORT.value).one()
    return parse_job(record.payload)


def _read_csv(export_dir, export):
    with open(os.path.join(export_dir, export.file_path), newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def test_request_export_queues_low_priority_job(db, auditor, producer, clock, observer):
    export = _request(db, auditor, producer, clock, observer, file_format="json")

    assert export.status == ExportStatus.PENDING.value
    assert export.format == ExportFormat.JSON.value
    job = db.query(Job).filter(Job.job_type == JobKind.EXPORT.value).one()
    assert job.priority == Priority.LOW.value
    assert job.payload["export_id"] == str(export.id)
    event = (
        db.query(AuditEvent)
        .filter(AuditEvent.event_type == AuditEventType.EXPORT_REQUESTED.value)
        .one()
    )
    assert event.actor_user_id == auditor.user_id


def test_staff_cannot_export(db, staff, producer, clock, observer):
    with pytest.raises(PermissionDeniedError):
        _request(db, staff, producer, clock, observer)

    assert db.query(AuditExport).count() == 0
    assert db.query(Job).count() == 0
    denied = db.query(AuditEvent).one()
    assert denied.event_type == AuditEventType.PERMISSION_DENIED.value
    assert denied.audit_log_id is None


def test_export_is_capped_at_max_records(db, admin, staff, producer, clock, observer, export_dir):
    _add_logs(db, staff, clock, 6000)
    export = _request(db, admin, producer, clock, observer, filters=ExportFilters(limit=6000))

    result = ExportProcessor(db, clock=clock, observer=observer).process(_export_job(db))

    assert result.success
    assert result.record_count == 5000
    db.refresh(export)
    assert export.status == ExportStatus.COMPLETED.value
    assert export.record_count == 5000
    rows = _read_csv(export_dir, export)
    assert len(rows) == 5001
    # newest first
    assert rows[1][3] == "Patient 5999"


def test_csv_layout_and_redaction(db, auditor, staff, producer, clock, observer, export_dir):
    _add_logs(
        db,
        staff,
        clock,
        1,
        patient_name="=HYPERLINK(\"http://evil\")",
        final_message="Call 5551234567 about SSN 123-45-6789",
        reviewer_id=None,
        ai_model_used="draft-model-1",
        tokens_consumed=42,
    )
    export = _request(db, auditor, producer, clock, observer, include_content=True)

    ExportProcessor(db, clock=clock, observer=observer).process(_export_job(db))

    db.refresh(export)
    assert export.file_path == os.path.join(str(export.id), "audit_logs_2026-03-02.csv")
    header, row = _read_csv(export_dir, export)
    assert tuple(header) == CSV_COLUMNS
    record = dict(zip(header, row))
    assert record["patient_name"].startswith("'=")
    assert record["content_preview"] == "Call [PHONE] about SSN [SSN]"
    assert record["user_email"] == staff.email
    assert record["user_role"] == "staff"
    assert record["review_status"] == "pending"
    assert record["tokens_consumed"] == "42"
    with open(resolve_local_export_path(export.file_path), encoding="utf-8") as f:
        assert "5551234567" not in f.read()


def test_json_export_includes_content_when_requested(db, auditor, reviewer, producer, clock, observer, export_dir):
    _add_logs(db, reviewer, clock, 2, reviewer_id=reviewer.user_id, final_message="SSN 123-45-6789")
    export = _request(
        db, auditor, producer, clock, observer, file_format=ExportFormat.JSON, include_content=True
    )

    result = ExportProcessor(db, clock=clock, observer=observer).process(_export_job(db))

    assert result.record_count == 2
    db.refresh(export)
    with open(os.path.join(export_dir, export.file_path), encoding="utf-8") as f:
        rows = json.load(f)
    assert rows[0]["final_message"] == "SSN 123-45-6789"
    assert rows[0]["content_preview"] == "SSN [SSN]"
    assert rows[0]["review_status"] == "reviewed"
    assert "generated_draft" in rows[0]


def test_json_export_is_redacted_by_default(db, auditor, staff, producer, clock, observer, export_dir):
    _add_logs(db, staff, clock, 1)
    export = _request(db, auditor, producer, clock, observer, file_format=ExportFormat.JSON)

    ExportProcessor(db, clock=clock, observer=observer).process(_export_job(db))

    db.refresh(export)
    with open(os.path.join(export_dir, export.file_path), encoding="utf-8") as f:
        rows = json.load(f)
    assert "final_message" not in rows[0]
    assert "generated_draft" not in rows[0]


def test_filters_limit_rows(db, staff, doctor, clock):
    _add_logs(db, staff, clock, 3)
    _add_logs(db, doctor, clock, 2, patient_name="Ana Lopez", delivery_status=DeliveryStatus.DELIVERED.value)

    by_user = export_service.query_audit_logs(db, ExportFilters(user_id=doctor.user_id))
    assert len(by_user) == 2
    by_name = export_service.query_audit_logs(db, ExportFilters(patient_name="lopez"))
    assert len(by_name) == 2
    by_status = export_service.query_audit_logs(
        db, ExportFilters(delivery_status=DeliveryStatus.SENT)
    )
    assert len(by_status) == 3
    assert len(export_service.query_audit_logs(db, ExportFilters(limit=1))) == 1


def test_write_failure_marks_export_failed(db, auditor, producer, clock, observer, monkeypatch):
    export = _request(db, auditor, producer, clock, observer)

    def disk_full(*_args):
        raise OSError("No space left on device")

    monkeypatch.setattr(export_service, "_write_csv", disk_full)
    result = ExportProcessor(db, clock=clock, observer=observer).process(_export_job(db))

    assert not result.success
    db.refresh(export)
    assert export.status == ExportStatus.FAILED.value
    assert "No space left" in export.error_message
    assert observer.exceptions


def test_completed_export_is_not_rebuilt(db, auditor, producer, clock, observer):
    _request(db, auditor, producer, clock, observer)
    processor = ExportProcessor(db, clock=clock, observer=observer)
    job = _export_job(db)

    first = processor.process(job)
    second = processor.process(job)
    assert second.success
    assert second.file_path == first.file_path
    completed = (
        db.query(AuditEvent)
        .filter(AuditEvent.event_type == AuditEventType.EXPORT_COMPLETED.value)
        .count()
    )
    assert completed == 1


def test_unknown_export_is_reported(db, clock, observer, auditor):
    job = ExportJob(export_id=uuid.uuid4(), user_id=auditor.user_id)
    result = ExportProcessor(db, clock=clock, observer=observer).process(job)
    assert not result.success
    assert result.error == "Export not found"


def test_export_filename(clock):
    assert export_filename(ExportFormat.JSON, clock()) == "audit_logs_2026-03-02.json"

import uuid
from datetime import timedelta

import pytest

from concierge.db.enums import (
    CleanupTarget, DeliveryMethod, ExportFormat, JobKind, JobStatus, Priority, QueueStatus
)
from concierge.db.models import Job, MessageQueueEntry
from concierge.schemas.compliance import ExportFilters
from concierge.schemas.jobs import CleanupJob, EmailJob, SMSJob, parse_job
from concierge.services import job_service
from concierge.services.queue_producer import build_delivery_job, delivery_dedup_id


def _email_job(priority=Priority.NORMAL, message_id=None):
    return EmailJob(
        message_id=message_id or uuid.uuid4(),
        recipient="jane.doe@example.com",
        subject="Medical Communication - 2026-03-02",
        content="Your results are ready.",
        priority=priority,
    )


@pytest.mark.parametrize(
    "priority,seconds",
    [
        (Priority.URGENT, 0),
        (Priority.HIGH, 0),
        (Priority.NORMAL, 1),
        (Priority.LOW, 5),
    ],
)
def test_priority_sets_default_delay(producer, clock, priority, seconds):
    result = producer.enqueue(_email_job(priority))
    assert result.run_at == clock() + timedelta(seconds=seconds)
    assert not result.deduplicated


def test_explicit_delay_overrides_priority(db, producer, clock):
    result = producer.enqueue(_email_job(Priority.URGENT), delay=30)
    job = db.get(Job, result.job_id)
    assert job.run_at == clock() + timedelta(seconds=30)
    assert job.priority == Priority.URGENT.value


def test_payload_round_trips_through_job_record(db, producer):
    original = _email_job(Priority.HIGH)
    result = producer.enqueue(original)
    job = db.get(Job, result.job_id)
    assert job.job_type == JobKind.EMAIL.value
    assert parse_job(job.payload) == original


def test_dedup_returns_outstanding_job(db, producer, observer):
    first = producer.enqueue(_email_job(), dedup_id="delivery:abc")
    second = producer.enqueue(_email_job(), dedup_id="delivery:abc")

    assert second.deduplicated
    assert second.job_id == first.job_id
    assert db.query(Job).count() == 1
    assert "job_deduplicated" in observer.names()


def test_dedup_id_is_reusable_after_completion(db, producer, clock):
    first = producer.enqueue(_email_job(), dedup_id="delivery:abc")
    job_service.mark_job_completed(db, db.get(Job, first.job_id), clock())

    again = producer.enqueue(_email_job(), dedup_id="delivery:abc")
    assert not again.deduplicated
    assert again.job_id != first.job_id


def test_enqueue_batch_is_all_or_nothing(db, producer, monkeypatch):
    results = producer.enqueue_batch([_email_job(), _email_job(Priority.LOW)])
    assert len(results) == 2
    assert db.query(Job).count() == 2

    calls = []
    real_schedule = job_service.schedule_job

    def flaky_schedule(*args, **kwargs):
        calls.append(1)
        if len(calls) == 2:
            raise RuntimeError("database unavailable")
        return real_schedule(*args, **kwargs)

    monkeypatch.setattr(job_service, "schedule_job", flaky_schedule)
    with pytest.raises(RuntimeError):
        producer.enqueue_batch([_email_job(), _email_job()])
    assert db.query(Job).count() == 2


def test_send_later_runs_at_send_time(producer, clock):
    send_at = clock() + timedelta(hours=2)
    result = producer.enqueue_send_later(_email_job(Priority.URGENT), send_at)
    assert result.run_at == send_at


def test_send_later_in_the_past_runs_now(producer, clock):
    result = producer.enqueue_send_later(_email_job(), clock() - timedelta(minutes=5))
    assert result.run_at == clock()


def test_export_jobs_are_low_priority(db, producer, clock, auditor):
    export_id = uuid.uuid4()
    result = producer.enqueue_export(
        export_id, ExportFilters(), auditor.user_id, ExportFormat.JSON
    )
    job = db.get(Job, result.job_id)
    assert job.priority == Priority.LOW.value
    assert job.run_at == clock() + timedelta(seconds=5)
    assert job.idempotency_key == f"export:{export_id}"
    assert job.payload["format"] == "json"


def test_cleanup_waits_a_minute(db, producer, clock):
    cutoff = clock() - timedelta(days=30)
    result = producer.enqueue_cleanup(CleanupTarget.MESSAGE_QUEUE, cutoff)
    job = db.get(Job, result.job_id)
    assert job.run_at == clock() + timedelta(seconds=60)
    assert parse_job(job.payload) == CleanupJob(target=CleanupTarget.MESSAGE_QUEUE, older_than=cutoff)


def test_retention_sweep_schedules_each_target_once(db, producer, clock):
    producer.enqueue_retention_sweep()
    producer.enqueue_retention_sweep()

    jobs = db.query(Job).filter(Job.job_type == JobKind.CLEANUP.value).all()
    targets = {parse_job(job.payload).target: parse_job(job.payload) for job in jobs}
    assert len(jobs) == 3
    assert targets[CleanupTarget.AUDIT_LOGS].older_than == clock() - timedelta(days=365)
    assert targets[CleanupTarget.MESSAGE_QUEUE].older_than == clock() - timedelta(days=30)
    assert targets[CleanupTarget.TEMP_FILES].older_than == clock() - timedelta(days=7)


def test_build_delivery_job_per_method(db, sent_message):
    entry = sent_message.queue_entry
    job = build_delivery_job(entry)
    assert isinstance(job, EmailJob)
    assert job.message_id == entry.id
    assert job.recipient == "jane.doe@example.com"
    assert job.metadata["audit_log_id"] == str(sent_message.id)

    entry.delivery_method = DeliveryMethod.SMS.value
    entry.recipient_phone = "+15555550123"
    assert isinstance(build_delivery_job(entry), SMSJob)

    entry.delivery_method = DeliveryMethod.PORTAL.value
    with pytest.raises(ValueError):
        build_delivery_job(entry)


def test_reconcile_requeues_entries_without_jobs(db, producer, sent_message, clock):
    entry = db.query(MessageQueueEntry).one()
    assert producer.reconcile_deliveries() == 0

    db.query(Job).delete()
    db.commit()

    assert producer.reconcile_deliveries() == 1
    job = db.query(Job).one()
    assert job.idempotency_key == delivery_dedup_id(entry.id)
    assert job.status == JobStatus.PENDING.value
    assert producer.reconcile_deliveries() == 0


def test_reconcile_skips_entries_waiting_for_retry(db, producer, sent_message, clock):
    entry = db.query(MessageQueueEntry).one()
    db.query(Job).delete()
    entry.next_retry_at = clock() + timedelta(minutes=4)
    db.commit()

    assert producer.reconcile_deliveries() == 0

    clock.advance(minutes=5)
    assert producer.reconcile_deliveries() == 1
    assert entry.status == QueueStatus.QUEUED.value

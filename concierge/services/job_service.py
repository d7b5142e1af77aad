"""Job service - durable queue records for background work."""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from concierge.core.clock import utcnow
from concierge.db.enums import OUTSTANDING_JOB_STATUSES, JobKind, JobStatus, Priority
from concierge.db.models import Job


def schedule_job(
    db: Session,
    kind: JobKind,
    payload: dict,
    *,
    priority: Priority = Priority.NORMAL,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    max_attempts: int = 3,
    commit: bool = True,
) -> Job:
    """
    Schedule a new background job.

    If run_at is None, the job runs immediately.
    With commit=False the job is only flushed, so it lands in the caller's
    transaction. An idempotency key that is already outstanding fails with
    IntegrityError (caller should check find_outstanding_job first).
    """
    job = Job(
        job_type=kind.value,
        payload=payload,
        priority=priority.value,
        run_at=run_at or utcnow(),
        status=JobStatus.PENDING.value,
        max_attempts=max_attempts,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job


def find_outstanding_job(db: Session, idempotency_key: str) -> Job | None:
    """Pending or running job holding this idempotency key, if any."""
    return (
        db.query(Job)
        .filter(
            Job.idempotency_key == idempotency_key,
            Job.status.in_(OUTSTANDING_JOB_STATUSES),
        )
        .first()
    )


def get_pending_jobs(db: Session, limit: int = 10, now: datetime | None = None) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    return (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= (now or utcnow()),
        )
        .order_by(Job.run_at, Job.created_at)
        .limit(limit)
        .all()
    )


def claim_pending_jobs(db: Session, limit: int = 10, now: datetime | None = None) -> list[Job]:
    """
    Claim due jobs for this worker (status=running, attempts+1, claimed_at=now).

    Rows are locked with SKIP LOCKED on PostgreSQL so concurrent workers
    never claim the same job.
    """
    now = now or utcnow()
    jobs = (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at, Job.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in jobs:
        job.status = JobStatus.RUNNING.value
        job.attempts += 1
        job.claimed_at = now
    db.commit()
    return jobs


def get_job(db: Session, job_id: UUID) -> Job | None:
    return db.query(Job).filter(Job.id == job_id).first()


def mark_job_completed(db: Session, job: Job, now: datetime | None = None) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = now or utcnow()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str, *, retry: bool = True) -> Job:
    """
    Mark a job as failed.

    If retry is allowed and attempts < max_attempts, reset to pending.
    """
    job.last_error = error
    if retry and job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
    else:
        job.status = JobStatus.FAILED.value
    db.commit()
    db.refresh(job)
    return job


def reschedule_job(db: Session, job: Job, run_at: datetime, error: str | None = None) -> Job:
    """Put a job back in the queue to run again at run_at (delivery backoff)."""
    job.status = JobStatus.PENDING.value
    job.run_at = run_at
    job.last_error = error
    db.commit()
    db.refresh(job)
    return job


def release_stale_jobs(db: Session, timeout: timedelta, now: datetime | None = None) -> int:
    """
    Reclaim running jobs whose worker never settled them.

    A job claimed longer than ``timeout`` ago goes back to pending, or to
    failed once its attempts are used up. Returns the number of jobs touched.
    """
    now = now or utcnow()
    stale = (
        db.query(Job)
        .filter(
            Job.status == JobStatus.RUNNING.value,
            Job.claimed_at <= now - timeout,
        )
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in stale:
        job.last_error = "Worker claim expired"
        job.claimed_at = None
        if job.attempts < job.max_attempts:
            job.status = JobStatus.PENDING.value
            job.run_at = now
        else:
            job.status = JobStatus.FAILED.value
    db.commit()
    return len(stale)

"""
Background worker for processing queued jobs.

Usage:
    python -m concierge.worker

The worker polls the jobs table for due work, dispatches each job to its
handler, and re-enqueues deliveries that lost their job. Run it as a
separate process next to the API.
"""

import asyncio
import logging
from datetime import timedelta

from pydantic import ValidationError
from sqlalchemy.orm import Session

from concierge.core.clock import Clock, utcnow
from concierge.core.config import settings
from concierge.core.observability import Observer, default_observer, init_sentry
from concierge.core.structured_logging import build_log_context
from concierge.db.models import Job as JobRecord
from concierge.db.session import SessionLocal
from concierge.jobs.context import JobContext
from concierge.jobs.registry import resolve_job_handler
from concierge.schemas.jobs import parse_job
from concierge.services import job_service
from concierge.services.delivery_providers import DeliveryProvider, build_delivery_provider
from concierge.services.queue_producer import QueueProducer

logger = logging.getLogger(__name__)


async def process_job(ctx: JobContext, record: JobRecord) -> None:
    """Run one claimed job and settle its record. Never raises."""
    db = ctx.db
    log_context = build_log_context(job_id=str(record.id), job_kind=record.job_type)
    logger.info(
        "Processing job %s (type=%s, attempt=%s)",
        record.id, record.job_type, record.attempts,
        extra=log_context,
    )

    try:
        job = parse_job(record.payload)
    except ValidationError as exc:
        logger.error("Job %s has an invalid payload", record.id, extra=log_context)
        job_service.mark_job_failed(db, record, f"Invalid payload: {exc}", retry=False)
        return

    try:
        handler = resolve_job_handler(job.kind)
        result = await handler(ctx, job)
    except Exception as exc:
        db.rollback()
        ctx.observer.exception(exc, job_id=str(record.id), job_kind=record.job_type)
        job_service.mark_job_failed(db, record, str(exc) or type(exc).__name__)
        logger.error("Job %s failed: %s", record.id, type(exc).__name__, extra=log_context)
        return

    if result.retry_at is not None:
        job_service.reschedule_job(db, record, result.retry_at, result.error)
        logger.info("Job %s rescheduled for %s", record.id, result.retry_at.isoformat(), extra=log_context)
    elif result.failed:
        job_service.mark_job_failed(db, record, result.error or "Job failed", retry=False)
        logger.warning("Job %s failed permanently", record.id, extra=log_context)
    else:
        job_service.mark_job_completed(db, record, ctx.clock())
        logger.info("Job %s completed successfully", record.id, extra=log_context)


async def run_once(
    db: Session,
    *,
    provider: DeliveryProvider,
    clock: Clock = utcnow,
    observer: Observer = default_observer,
    batch_size: int | None = None,
) -> int:
    """Reclaim stale jobs, reconcile deliveries, then claim and run one batch of due jobs."""
    try:
        released = job_service.release_stale_jobs(
            db, timedelta(seconds=settings.JOB_CLAIM_TIMEOUT_SECONDS), now=clock()
        )
        if released:
            logger.warning("Reclaimed %s stale running jobs", released)
    except Exception as exc:
        db.rollback()
        observer.exception(exc, stage="release_stale_jobs")

    try:
        QueueProducer(db, clock=clock, observer=observer).reconcile_deliveries()
    except Exception as exc:
        db.rollback()
        observer.exception(exc, stage="reconcile")

    jobs = job_service.claim_pending_jobs(
        db, limit=batch_size or settings.WORKER_BATCH_SIZE, now=clock()
    )
    if jobs:
        logger.info("Found %s pending jobs", len(jobs))

    ctx = JobContext(db=db, provider=provider, clock=clock, observer=observer)
    for record in jobs:
        await process_job(ctx, record)
    return len(jobs)


async def worker_loop() -> None:
    """Main worker loop - polls for and processes pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s)",
        settings.WORKER_POLL_INTERVAL,
        settings.WORKER_BATCH_SIZE,
    )
    provider = build_delivery_provider()

    while True:
        with SessionLocal() as db:
            try:
                await run_once(db, provider=provider)
            except Exception as e:
                logger.exception("Error in worker loop: %s", type(e).__name__)
                default_observer.exception(e, stage="worker_loop")

        await asyncio.sleep(settings.WORKER_POLL_INTERVAL)


def main() -> None:
    """Entry point for the worker."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    init_sentry()
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()

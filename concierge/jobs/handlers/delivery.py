"""Email and SMS delivery job handlers."""

from __future__ import annotations

import logging

from concierge.jobs.context import JobContext, JobResult
from concierge.jobs.utils import mask_email, mask_phone
from concierge.schemas.jobs import EmailJob, SMSJob
from concierge.services.delivery_processor import (
    DeliveryOutcome, EmailDeliveryProcessor, SMSDeliveryProcessor
)

logger = logging.getLogger(__name__)


def _job_result(outcome: DeliveryOutcome) -> JobResult:
    if outcome.success or outcome.skipped:
        return JobResult()
    if outcome.retry_at is not None:
        return JobResult(retry_at=outcome.retry_at, error=outcome.error)
    return JobResult(failed=True, error=outcome.error)


async def process_email(ctx: JobContext, job: EmailJob) -> JobResult:
    """Deliver one queued email."""
    logger.info(
        "Processing email for queue entry %s recipient=%s",
        job.message_id,
        mask_email(job.recipient),
    )
    processor = EmailDeliveryProcessor(
        ctx.db, ctx.provider, clock=ctx.clock, observer=ctx.observer
    )
    return _job_result(await processor.process(job))


async def process_sms(ctx: JobContext, job: SMSJob) -> JobResult:
    """Deliver one queued SMS."""
    logger.info(
        "Processing SMS for queue entry %s recipient=%s",
        job.message_id,
        mask_phone(job.recipient),
    )
    processor = SMSDeliveryProcessor(
        ctx.db, ctx.provider, clock=ctx.clock, observer=ctx.observer
    )
    return _job_result(await processor.process(job))

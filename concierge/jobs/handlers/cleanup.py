"""Retention cleanup job handlers."""

from __future__ import annotations

from concierge.jobs.context import JobContext, JobResult
from concierge.schemas.jobs import CleanupJob
from concierge.services.cleanup_service import CleanupProcessor


async def process_cleanup(ctx: JobContext, job: CleanupJob) -> JobResult:
    result = CleanupProcessor(ctx.db, clock=ctx.clock, observer=ctx.observer).process(job)
    if not result.success:
        return JobResult(failed=True, error=result.error)
    return JobResult()

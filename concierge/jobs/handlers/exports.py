"""Export job handlers."""

from __future__ import annotations

from concierge.jobs.context import JobContext, JobResult
from concierge.schemas.jobs import ExportJob
from concierge.services.export_service import ExportProcessor


async def process_export(ctx: JobContext, job: ExportJob) -> JobResult:
    """Produce a compliance export artifact."""
    result = ExportProcessor(ctx.db, clock=ctx.clock, observer=ctx.observer).process(job)
    if not result.success:
        return JobResult(failed=True, error=result.error)
    return JobResult()

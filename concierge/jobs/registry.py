"""Job handler registry."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping

from concierge.db.enums import JobKind
from concierge.jobs.context import JobContext, JobResult
from concierge.jobs.handlers import cleanup, delivery, exports

JobHandler = Callable[[JobContext, Any], Awaitable[JobResult]]

JOB_HANDLERS: Mapping[JobKind, JobHandler] = {
    JobKind.EMAIL: delivery.process_email,
    JobKind.SMS: delivery.process_sms,
    JobKind.EXPORT: exports.process_export,
    JobKind.CLEANUP: cleanup.process_cleanup,
}

# Every job kind must have a handler; fail at import, not at dispatch
_unhandled = set(JobKind) - set(JOB_HANDLERS)
if _unhandled:
    raise RuntimeError(
        f"No handler registered for job kinds: {sorted(kind.value for kind in _unhandled)}"
    )


def resolve_job_handler(kind: JobKind | str) -> JobHandler:
    try:
        return JOB_HANDLERS[JobKind(kind)]
    except ValueError:
        raise ValueError(f"Unknown job type: {kind}")

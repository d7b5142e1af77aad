"""Job variants placed on the durable queue.

``Job`` is a tagged union discriminated by ``kind``; the payload stored in
the jobs table is ``job.model_dump(mode="json")`` and is parsed back with
``parse_job``.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter

from concierge.db.enums import CleanupTarget, ExportFormat, JobKind, Priority
from concierge.schemas.compliance import ExportFilters


class EmailJob(BaseModel):
    kind: Literal["email"] = "email"
    message_id: UUID  # message_queue entry id
    recipient: str
    subject: str
    content: str
    priority: Priority = Priority.NORMAL
    metadata: dict[str, Any] = Field(default_factory=dict)


class SMSJob(BaseModel):
    kind: Literal["sms"] = "sms"
    message_id: UUID  # message_queue entry id
    recipient: str
    content: str
    priority: Priority = Priority.NORMAL
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExportJob(BaseModel):
    kind: Literal["export"] = "export"
    export_id: UUID
    filters: ExportFilters = Field(default_factory=ExportFilters)
    user_id: UUID
    format: ExportFormat = ExportFormat.CSV


class CleanupJob(BaseModel):
    kind: Literal["cleanup"] = "cleanup"
    target: CleanupTarget
    older_than: datetime


Job = Annotated[
    Union[EmailJob, SMSJob, ExportJob, CleanupJob],
    Field(discriminator="kind"),
]

_job_adapter: TypeAdapter[Job] = TypeAdapter(Job)


def parse_job(payload: dict) -> Job:
    return _job_adapter.validate_python(payload)


def job_kind(job: Job) -> JobKind:
    return JobKind(job.kind)


def job_priority(job: Job) -> Priority:
    """Delivery jobs carry their own priority; maintenance work is always low."""
    if isinstance(job, (EmailJob, SMSJob)):
        return job.priority
    return Priority.LOW

"""Dependencies and outcome shared by every job handler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from concierge.core.clock import Clock, utcnow
from concierge.core.observability import Observer, default_observer
from concierge.services.delivery_providers import DeliveryProvider


@dataclass
class JobContext:
    db: Session
    provider: DeliveryProvider
    clock: Clock = utcnow
    observer: Observer = default_observer


@dataclass(frozen=True)
class JobResult:
    """
    What the worker should do with the job record.

    Default is "completed". ``retry_at`` reschedules the same job;
    ``failed`` ends it without retry.
    """

    retry_at: datetime | None = None
    failed: bool = False
    error: str | None = None

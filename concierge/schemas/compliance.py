"""Schemas for compliance exports."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from concierge.db.enums import ActionType, DeliveryStatus


class ExportFilters(BaseModel):
    """Filters applied to audit logs; limit is capped by EXPORT_MAX_RECORDS."""
    start_date: datetime | None = None
    end_date: datetime | None = None
    user_id: UUID | None = None
    action_type: ActionType | None = None
    delivery_status: DeliveryStatus | None = None
    patient_name: str | None = Field(default=None, max_length=255)
    limit: int | None = Field(default=None, ge=1)


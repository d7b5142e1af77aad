"""Inbound delivery-confirmation webhook payload."""

from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class DeliveryWebhookPayload(BaseModel):
    """Provider callback: identify the message by id or provider external id."""
    message_id: UUID | None = None
    external_id: str | None = Field(default=None, max_length=255)
    status: Literal["sent", "delivered", "failed"]
    failure_reason: str | None = Field(default=None, max_length=2000)
    provider: str | None = Field(default=None, max_length=50)
    data: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _require_reference(self) -> "DeliveryWebhookPayload":
        if not self.message_id and not self.external_id:
            raise ValueError("message_id or external_id is required")
        return self

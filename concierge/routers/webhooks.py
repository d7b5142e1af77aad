"""Webhooks router - delivery confirmations from providers."""

import json
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from concierge.core.config import settings
from concierge.core.deps import get_db
from concierge.core.exceptions import (
    InvalidTransitionError, WebhookVerificationError, WorkflowValidationError
)
from concierge.core.rate_limit import limiter, webhook_client_key, webhook_limits
from concierge.db.models import AuditLog, MessageQueueEntry
from concierge.schemas.webhooks import DeliveryWebhookPayload
from concierge.services.webhook_security import get_signature_header, verify_webhook_signature
from concierge.services.workflow_service import WorkflowEngine

router = APIRouter()
logger = logging.getLogger(__name__)


def _resolve_message_id(db: Session, payload: DeliveryWebhookPayload) -> UUID | None:
    """Message (audit log) id from a message id, queue entry id or provider id."""
    if payload.message_id:
        entry = db.query(AuditLog.id).filter(AuditLog.id == payload.message_id).first()
        if entry:
            return entry.id
        queued = (
            db.query(MessageQueueEntry.audit_log_id)
            .filter(MessageQueueEntry.id == payload.message_id)
            .first()
        )
        if queued:
            return queued.audit_log_id
    if payload.external_id:
        queued = (
            db.query(MessageQueueEntry.audit_log_id)
            .filter(MessageQueueEntry.external_id == payload.external_id)
            .first()
        )
        if queued:
            return queued.audit_log_id
    return None


@router.post("/delivery")
@limiter.limit(webhook_limits)
async def receive_delivery_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Receive a delivery confirmation.

    Security:
    - Per-client rate limits (minute and hour) run before anything else
    - Payload size is bounded
    - HMAC-SHA256 signature, with timestamp tolerance when ``t=`` is present

    Duplicate confirmations are accepted and change nothing.
    """
    # 1. Check payload size
    content_length = request.headers.get("content-length", "0")
    try:
        if int(content_length) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
            raise HTTPException(413, "Payload too large")
    except ValueError:
        pass
    body = await request.body()
    if len(body) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
        raise HTTPException(413, "Payload too large")

    # 2. Verify signature
    try:
        verify_webhook_signature(
            body,
            get_signature_header(request.headers),
            settings.WEBHOOK_SECRET,
            tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
        )
    except WebhookVerificationError as exc:
        logger.warning(
            "Delivery webhook rejected: %s (client=%s)", exc.reason, webhook_client_key(request)
        )
        raise HTTPException(401, "Invalid signature")

    # 3. Parse payload
    try:
        payload = DeliveryWebhookPayload.model_validate(json.loads(body))
    except (json.JSONDecodeError, ValidationError):
        raise HTTPException(400, "Invalid payload")

    # 4. Resolve the message
    message_id = _resolve_message_id(db, payload)
    if message_id is None:
        logger.info("Delivery webhook for unknown message (provider=%s)", payload.provider)
        raise HTTPException(404, "Message not found")

    # 5. Apply the status
    engine = WorkflowEngine(db)
    try:
        entry = engine.update_delivery_status(
            message_id,
            payload.status,
            failure_reason=payload.failure_reason,
            provider_data=payload.data,
        )
    except InvalidTransitionError as exc:
        raise HTTPException(409, str(exc))
    except WorkflowValidationError as exc:
        raise HTTPException(400, str(exc))

    return {"status": "ok", "message_id": str(entry.id), "delivery_status": entry.delivery_status}

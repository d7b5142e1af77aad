"""SQLAlchemy ORM models for messages, the delivery queue, jobs and compliance."""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, ForeignKey, Index, Integer, String, Text, func, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from concierge.core.clock import utcnow
from concierge.db.base import Base
from concierge.db.enums import (
    ActionType, DeliveryStatus, ExportStatus, JobStatus, Priority, QueueStatus
)


# =============================================================================
# Users
# =============================================================================

class User(Base):
    """
    Clinical staff member.

    Identity and role resolution happen upstream; this table only mirrors
    what exports need (email and role).
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )


# =============================================================================
# Messages & Audit Trail
# =============================================================================

class AuditLog(Base):
    """
    One patient communication and its full lifecycle.

    - generated_draft is never overwritten once recorded
    - content_hash is set when final_message is first persisted and never changes
    - edit_history is append-only (reassign a new list, never mutate in place)
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_status_created", "delivery_status", "created_at"),
        Index("idx_audit_logs_user_created", "user_id", "created_at"),
        Index("idx_audit_logs_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), nullable=False
    )

    # Patient reference
    patient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    patient_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Content
    request_text: Mapped[str] = mapped_column(Text, nullable=False)
    generated_draft: Mapped[str] = mapped_column(Text, nullable=False)
    final_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Workflow
    action_type: Mapped[str] = mapped_column(
        String(40), default=ActionType.DRAFT_GENERATED.value, nullable=False
    )
    delivery_status: Mapped[str] = mapped_column(
        String(20), default=DeliveryStatus.DRAFT.value, nullable=False
    )

    # Delivery details captured at submission
    delivery_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    priority: Mapped[str] = mapped_column(
        String(10), default=Priority.NORMAL.value, nullable=False
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Review
    reviewer_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Request metadata
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    edit_history: Mapped[list] = mapped_column(default=list, nullable=False)

    # AI metadata (informational only)
    ai_model_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tokens_consumed: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)

    author: Mapped["User"] = relationship(foreign_keys=[user_id])
    reviewer: Mapped["User | None"] = relationship(foreign_keys=[reviewer_id])
    queue_entry: Mapped["MessageQueueEntry | None"] = relationship(
        back_populates="audit_log", uselist=False
    )


class AuditEvent(Base):
    """
    Hash-chained audit trail event.

    Every workflow transition writes exactly one event. System events
    (exports, cleanup) have no audit_log_id. Rows are never updated.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_events_log", "audit_log_id", "created_at"),
        Index("idx_audit_events_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # Position in the chain; unique so concurrent writers cannot fork it
    sequence: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    audit_log_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("audit_logs.id"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    details: Mapped[dict | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    # Hash chain
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)


# =============================================================================
# Delivery Queue
# =============================================================================

class MessageQueueEntry(Base):
    """
    Outstanding delivery work for one message.

    Invariant: attempts <= max_attempts, and an entry whose last attempt
    failed at max_attempts is failed, never queued.
    """

    __tablename__ = "message_queue"
    __table_args__ = (
        Index("idx_message_queue_status_retry", "status", "next_retry_at"),
        Index("idx_message_queue_external", "external_id"),
        Index("idx_message_queue_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    audit_log_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("audit_logs.id"), unique=True, nullable=False
    )

    delivery_method: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(
        String(10), default=Priority.NORMAL.value, nullable=False
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=QueueStatus.QUEUED.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # [{timestamp, error, attempt_number, provider}] - reassign, never mutate
    error_log: Mapped[list] = mapped_column(default=list, nullable=False)

    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delivery_confirmed: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    webhook_data: Mapped[dict | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)

    audit_log: Mapped["AuditLog"] = relationship(back_populates="queue_entry")


# =============================================================================
# Jobs
# =============================================================================

class Job(Base):
    """
    Durable queue record for one Job variant.

    Worker polls for pending jobs whose run_at has passed. An idempotency
    key is unique among outstanding (pending/running) jobs only, so the same
    logical message can be scheduled again once its previous job finished.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_pending", "status", "run_at"),
        Index(
            "uq_job_outstanding_idempotency",
            "idempotency_key",
            unique=True,
            postgresql_where=text(
                "idempotency_key IS NOT NULL AND status IN ('pending', 'running')"
            ),
            sqlite_where=text(
                "idempotency_key IS NOT NULL AND status IN ('pending', 'running')"
            ),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    job_type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(default=dict, nullable=False)
    priority: Mapped[str] = mapped_column(
        String(10), default=Priority.NORMAL.value, nullable=False
    )
    run_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.PENDING.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)


# =============================================================================
# Compliance
# =============================================================================

class AuditExport(Base):
    """Requested compliance export and its produced artifact."""

    __tablename__ = "audit_exports"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    requested_by_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"), nullable=False
    )
    format: Mapped[str] = mapped_column(String(10), nullable=False)
    filters: Mapped[dict] = mapped_column(default=dict, nullable=False)
    include_content: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ExportStatus.PENDING.value, nullable=False
    )
    record_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    requested_by: Mapped["User"] = relationship()

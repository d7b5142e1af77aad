"""Enums for database columns and job payloads."""

from enum import Enum


class Role(str, Enum):
    """User roles, ordered from least to most privileged (see ROLE_RANK)."""
    STAFF = "staff"
    REVIEWER = "reviewer"
    DOCTOR = "doctor"
    AUDITOR = "auditor"
    ADMIN = "admin"


ROLE_RANK: dict[Role, int] = {
    Role.STAFF: 1,
    Role.REVIEWER: 2,
    Role.DOCTOR: 3,
    Role.AUDITOR: 4,
    Role.ADMIN: 5,
}


class ActionType(str, Enum):
    """Last action recorded on a message audit log."""
    DRAFT_GENERATED = "draft_generated"
    SUBMITTED_FOR_REVIEW = "submitted_for_review"
    REVIEWED = "reviewed"
    SENT = "sent"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    DELIVERY_FAILED = "delivery_failed"
    MESSAGE_SENT = "message_sent"


class DeliveryStatus(str, Enum):
    """Workflow state of a message."""
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    REJECTED = "rejected"


class ReviewAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class DeliveryMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PORTAL = "portal"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class QueueStatus(str, Enum):
    """Status of a message_queue entry."""
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    """Tagged variants of queued work."""
    EMAIL = "email"
    SMS = "sms"
    EXPORT = "export"
    CLEANUP = "cleanup"


class JobStatus(str, Enum):
    """Status of background jobs."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


OUTSTANDING_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


class ExportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CleanupTarget(str, Enum):
    AUDIT_LOGS = "audit_logs"
    MESSAGE_QUEUE = "message_queue"
    TEMP_FILES = "temp_files"


class AuditEventType(str, Enum):
    """Hash-chained audit trail events."""
    # Message lifecycle
    MESSAGE_DRAFTED = "message_drafted"
    MESSAGE_SUBMITTED = "message_submitted"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_APPROVED = "message_approved"
    MESSAGE_REJECTED = "message_rejected"
    MESSAGE_SENT = "message_sent"
    MESSAGE_ACCEPTED_BY_PROVIDER = "message_accepted_by_provider"
    MESSAGE_DELIVERED = "message_delivered"
    MESSAGE_DELIVERY_FAILED = "message_delivery_failed"

    # Compliance
    EXPORT_REQUESTED = "export_requested"
    EXPORT_COMPLETED = "export_completed"
    CLEANUP_EXECUTED = "cleanup_executed"
    INTEGRITY_VIOLATION = "integrity_violation"

    # Rejected requests
    PERMISSION_DENIED = "permission_denied"

"""Initial schema - messages, audit events, delivery queue, jobs and exports

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
OUTSTANDING_JOB_FILTER = "idempotency_key IS NOT NULL AND status IN ('pending', 'running')"


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(timezone=False), server_default=sa.func.now(), nullable=False)
        for name in names
    ]


def upgrade() -> None:
    """Create all tables."""

    # ==========================================================================
    # Users
    # ==========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        *_timestamps('created_at'),
    )

    # ==========================================================================
    # Messages (audit logs)
    # ==========================================================================
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('patient_name', sa.String(255), nullable=False),
        sa.Column('patient_id', sa.String(100)),
        sa.Column('request_text', sa.Text(), nullable=False),
        sa.Column('generated_draft', sa.Text(), nullable=False),
        sa.Column('final_message', sa.Text()),
        sa.Column('content_hash', sa.String(64)),
        sa.Column('action_type', sa.String(40), nullable=False),
        sa.Column('delivery_status', sa.String(20), nullable=False),
        sa.Column('delivery_method', sa.String(20)),
        sa.Column('recipient_email', sa.String(255)),
        sa.Column('recipient_phone', sa.String(50)),
        sa.Column('priority', sa.String(10), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=False)),
        sa.Column('delivered_at', sa.DateTime(timezone=False)),
        sa.Column('failure_reason', sa.Text()),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_retry_at', sa.DateTime(timezone=False)),
        sa.Column('reviewer_id', sa.Uuid(), sa.ForeignKey('users.id')),
        sa.Column('review_notes', sa.Text()),
        sa.Column('reviewed_at', sa.DateTime(timezone=False)),
        sa.Column('ip_address', sa.String(64)),
        sa.Column('user_agent', sa.String(500)),
        sa.Column('edit_history', JSONType, nullable=False),
        sa.Column('ai_model_used', sa.String(100)),
        sa.Column('tokens_consumed', sa.Integer()),
        *_timestamps('created_at', 'updated_at'),
        sa.Column('archived_at', sa.DateTime(timezone=False)),
    )
    op.create_index('idx_audit_logs_status_created', 'audit_logs', ['delivery_status', 'created_at'])
    op.create_index('idx_audit_logs_user_created', 'audit_logs', ['user_id', 'created_at'])
    op.create_index('idx_audit_logs_created', 'audit_logs', ['created_at'])

    # ==========================================================================
    # Hash-chained audit events
    # ==========================================================================
    op.create_table(
        'audit_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('sequence', sa.Integer(), nullable=False, unique=True),
        sa.Column('audit_log_id', sa.Uuid(), sa.ForeignKey('audit_logs.id')),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('from_status', sa.String(20)),
        sa.Column('to_status', sa.String(20)),
        sa.Column('actor_user_id', sa.Uuid()),
        sa.Column('details', JSONType),
        *_timestamps('created_at'),
        sa.Column('prev_hash', sa.String(64)),
        sa.Column('entry_hash', sa.String(64)),
    )
    op.create_index('idx_audit_events_log', 'audit_events', ['audit_log_id', 'created_at'])
    op.create_index('idx_audit_events_created', 'audit_events', ['created_at'])

    # ==========================================================================
    # Delivery queue
    # ==========================================================================
    op.create_table(
        'message_queue',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('audit_log_id', sa.Uuid(), sa.ForeignKey('audit_logs.id'), nullable=False, unique=True),
        sa.Column('delivery_method', sa.String(20), nullable=False),
        sa.Column('recipient_email', sa.String(255)),
        sa.Column('recipient_phone', sa.String(50)),
        sa.Column('subject', sa.String(255)),
        sa.Column('message_content', sa.Text(), nullable=False),
        sa.Column('priority', sa.String(10), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=False)),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=False)),
        sa.Column('next_retry_at', sa.DateTime(timezone=False)),
        sa.Column('error_log', JSONType, nullable=False),
        sa.Column('external_id', sa.String(255)),
        sa.Column('delivery_confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('confirmed_at', sa.DateTime(timezone=False)),
        sa.Column('webhook_data', JSONType),
        *_timestamps('created_at', 'updated_at'),
        sa.Column('archived_at', sa.DateTime(timezone=False)),
    )
    op.create_index('idx_message_queue_status_retry', 'message_queue', ['status', 'next_retry_at'])
    op.create_index('idx_message_queue_external', 'message_queue', ['external_id'])
    op.create_index('idx_message_queue_created', 'message_queue', ['created_at'])

    # ==========================================================================
    # Jobs (durable queue)
    # ==========================================================================
    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('job_type', sa.String(20), nullable=False),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('priority', sa.String(10), nullable=False),
        *_timestamps('run_at'),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_error', sa.Text()),
        *_timestamps('created_at'),
        sa.Column('claimed_at', sa.DateTime(timezone=False)),
        sa.Column('completed_at', sa.DateTime(timezone=False)),
        sa.Column('idempotency_key', sa.String(255)),
    )
    op.create_index('idx_jobs_pending', 'jobs', ['status', 'run_at'])
    op.create_index(
        'uq_job_outstanding_idempotency',
        'jobs',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text(OUTSTANDING_JOB_FILTER),
        sqlite_where=sa.text(OUTSTANDING_JOB_FILTER),
    )

    # ==========================================================================
    # Compliance exports
    # ==========================================================================
    op.create_table(
        'audit_exports',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('requested_by_user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('format', sa.String(10), nullable=False),
        sa.Column('filters', JSONType, nullable=False),
        sa.Column('include_content', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('record_count', sa.Integer()),
        sa.Column('file_path', sa.String(500)),
        sa.Column('error_message', sa.Text()),
        *_timestamps('created_at'),
        sa.Column('completed_at', sa.DateTime(timezone=False)),
    )


def downgrade() -> None:
    op.drop_table('audit_exports')
    op.drop_index('uq_job_outstanding_idempotency', table_name='jobs')
    op.drop_index('idx_jobs_pending', table_name='jobs')
    op.drop_table('jobs')
    op.drop_table('message_queue')
    op.drop_table('audit_events')
    op.drop_table('audit_logs')
    op.drop_table('users')

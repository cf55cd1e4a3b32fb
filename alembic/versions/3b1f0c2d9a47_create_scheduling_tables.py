"""create_scheduling_tables

Revision ID: 3b1f0c2d9a47
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b1f0c2d9a47'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Helper for cross-dialect JSON
JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB, "postgresql")


def upgrade() -> None:
    """Create schedules, publish_events and domain_events."""

    # 1. schedules (post_variant_id / channel_connection_id point at other contexts' tables)
    op.create_table('schedules',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('post_variant_id', sa.Integer(), nullable=False),
        sa.Column('channel_connection_id', sa.Integer(), nullable=False),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('timezone', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('attempt_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('pending', 'queued', 'processing', 'success', 'failed', 'cancelled')",
            name='ck_schedules_status'
        ),
        sa.CheckConstraint('attempt_count >= 0', name='ck_schedules_attempt_count')
    )
    op.create_index('idx_schedules_status', 'schedules', ['status'], unique=False)
    op.create_index('idx_schedules_run_at', 'schedules', ['run_at'], unique=False)
    op.create_index('idx_schedules_status_run_at', 'schedules', ['status', 'run_at'], unique=False)
    op.create_index('idx_schedules_post_variant_id', 'schedules', ['post_variant_id'], unique=False)
    op.create_index('idx_schedules_channel_connection_id', 'schedules', ['channel_connection_id'], unique=False)

    # 2. publish_events
    op.create_table('publish_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('schedule_id', sa.Integer(), nullable=False),
        sa.Column('attempt_index', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('external_post_id', sa.String(100), nullable=True),
        sa.Column('external_url', sa.String(500), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('raw_response', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['schedule_id'], ['schedules.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('schedule_id', 'attempt_index', name='uq_publish_events_schedule_attempt'),
        sa.CheckConstraint(
            "status IN ('success', 'failed', 'retried', 'cancelled')",
            name='ck_publish_events_status'
        )
    )
    op.create_index('idx_publish_events_schedule_id', 'publish_events', ['schedule_id'], unique=False)
    op.create_index('idx_publish_events_timestamp', 'publish_events', ['timestamp'], unique=False)
    op.create_index('idx_publish_events_status', 'publish_events', ['status'], unique=False)

    # 3. domain_events (outbox)
    op.create_table('domain_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('event_name', sa.String(100), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.String(100), nullable=True),
        sa.Column('principal_id', sa.String(100), nullable=True),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_domain_events_entity', 'domain_events', ['entity_type', 'entity_id'], unique=False)
    op.create_index('idx_domain_events_name_created', 'domain_events', ['event_name', 'created_at'], unique=False)


def downgrade() -> None:
    """Drop the scheduling tables."""
    op.drop_index('idx_domain_events_name_created', table_name='domain_events')
    op.drop_index('idx_domain_events_entity', table_name='domain_events')
    op.drop_table('domain_events')

    op.drop_index('idx_publish_events_status', table_name='publish_events')
    op.drop_index('idx_publish_events_timestamp', table_name='publish_events')
    op.drop_index('idx_publish_events_schedule_id', table_name='publish_events')
    op.drop_table('publish_events')

    op.drop_index('idx_schedules_channel_connection_id', table_name='schedules')
    op.drop_index('idx_schedules_post_variant_id', table_name='schedules')
    op.drop_index('idx_schedules_status_run_at', table_name='schedules')
    op.drop_index('idx_schedules_run_at', table_name='schedules')
    op.drop_index('idx_schedules_status', table_name='schedules')
    op.drop_table('schedules')

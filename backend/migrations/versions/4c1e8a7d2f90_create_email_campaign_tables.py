"""create_email_campaign_tables

Revision ID: 4c1e8a7d2f90
Revises:
Create Date: 2026-02-24 12:00:19.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4c1e8a7d2f90'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


campaign_type = sa.Enum('preorder-conversion', 'lifecycle', 'promotional', name='email_campaign_type')
campaign_status = sa.Enum(
    'draft', 'scheduled', 'sending', 'paused', 'completed', 'failed', 'cancelled',
    name='email_campaign_status',
)
recipient_status = sa.Enum(
    'pending', 'sent', 'failed', 'bounced', 'unsubscribed-excluded',
    name='email_recipient_status',
)
campaign_action = sa.Enum(
    'created', 'updated', 'scheduled', 'started', 'paused', 'resumed', 'cancelled',
    'completed', 'failed', 'stalled_detected', 'test_sent', 'ab_test_created',
    'ab_test_deleted', 'recipients_rebuilt', 'duplicated',
    name='email_campaign_action',
)
job_status = sa.Enum('pending', 'processing', 'done', 'failed', name='job_status')


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'email_campaigns',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('subject', sa.String(length=998), nullable=False),
        sa.Column('campaign_type', campaign_type, nullable=False),
        sa.Column('status', campaign_status, nullable=False, server_default='draft'),
        sa.Column('template_id', sa.Integer(), nullable=True),
        sa.Column('html_content', sa.Text(), nullable=True),
        sa.Column('params', postgresql.JSONB(), nullable=False, server_default='{}',
                  comment='Global merge parameters passed to every recipient'),
        sa.Column('target_filter', postgresql.JSONB(), nullable=False, server_default='{}',
                  comment='Audience filter, shape depends on campaign_type'),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_recipients', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sent_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.String(length=64), nullable=False),
        sa.Column('updated_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('template_id IS NULL OR html_content IS NULL', name='email_campaigns_content_check'),
    )
    op.create_index('ix_email_campaigns_campaign_type', 'email_campaigns', ['campaign_type'])
    op.create_index('ix_email_campaigns_status', 'email_campaigns', ['status'])
    op.create_index('ix_email_campaigns_scheduled_at', 'email_campaigns', ['scheduled_at'])

    op.create_table(
        'email_ab_variants',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('campaign_id', sa.Uuid(), sa.ForeignKey('email_campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('variant_label', sa.String(length=32), nullable=False),
        sa.Column('subject', sa.String(length=998), nullable=True),
        sa.Column('template_id', sa.Integer(), nullable=True),
        sa.Column('html_content', sa.Text(), nullable=True),
        sa.Column('params', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('recipient_percentage', sa.Integer(), nullable=True,
                  comment='Share of recipients; NULL for an even split'),
        sa.Column('assigned_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('campaign_id', 'variant_label', name='email_ab_variants_unique_label'),
    )
    op.create_index('ix_email_ab_variants_campaign_id', 'email_ab_variants', ['campaign_id'])

    op.create_table(
        'email_campaign_recipients',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('campaign_id', sa.Uuid(), sa.ForeignKey('email_campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('params', postgresql.JSONB(), nullable=False, server_default='{}',
                  comment='Per-recipient merge parameters'),
        sa.Column('status', recipient_status, nullable=False, server_default='pending'),
        sa.Column('variant_id', sa.Uuid(), sa.ForeignKey('email_ab_variants.id', ondelete='SET NULL'), nullable=True),
        sa.Column('provider_message_id', sa.String(length=255), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('clicked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('campaign_id', 'email', name='email_campaign_recipients_unique_email'),
    )
    op.create_index('ix_email_campaign_recipients_campaign_id', 'email_campaign_recipients', ['campaign_id'])
    op.create_index('ix_email_campaign_recipients_variant_id', 'email_campaign_recipients', ['variant_id'])
    op.create_index(
        'ix_email_campaign_recipients_provider_message_id', 'email_campaign_recipients', ['provider_message_id']
    )
    op.create_index('idx_ecr_campaign_status_seq', 'email_campaign_recipients', ['campaign_id', 'status', 'seq'])

    op.create_table(
        'email_campaign_history',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('campaign_id', sa.Uuid(), sa.ForeignKey('email_campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', campaign_action, nullable=False),
        sa.Column('changed_by', sa.String(length=64), nullable=False,
                  comment='Staff user id or the reserved system identity'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_email_campaign_history_campaign_id', 'email_campaign_history', ['campaign_id'])
    op.create_index('ix_email_campaign_history_action', 'email_campaign_history', ['action'])
    op.create_index('ix_email_campaign_history_created_at', 'email_campaign_history', ['created_at'])

    op.create_table(
        'email_unsubscribes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(length=320), nullable=False, unique=True,
                  comment='Stored lower-cased and stripped'),
        sa.Column('source', sa.String(length=32), nullable=False, comment='webhook, admin, link'),
        sa.Column('campaign_id', sa.Uuid(), nullable=True,
                  comment='Campaign that triggered the unsubscribe, if any'),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('unsubscribed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'job_leases',
        sa.Column('name', sa.String(length=128), primary_key=True, comment='email-cron or campaign:<id>'),
        sa.Column('holder', sa.String(length=64), nullable=True),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('run_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_status', job_status, nullable=False, server_default='pending'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_job_leases_locked_until', 'job_leases', ['locked_until'])

    op.create_table(
        'email_monthly_usage',
        sa.Column('month', sa.Date(), primary_key=True, comment='First day of the month'),
        sa.Column('campaign_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('transactional_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('monthly_limit', sa.Integer(), nullable=False, server_default='5000'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('email_monthly_usage')
    op.drop_index('ix_job_leases_locked_until', table_name='job_leases')
    op.drop_table('job_leases')
    op.drop_table('email_unsubscribes')
    op.drop_table('email_campaign_history')
    op.drop_table('email_campaign_recipients')
    op.drop_table('email_ab_variants')
    op.drop_table('email_campaigns')

    bind = op.get_bind()
    for enum_type in (job_status, campaign_action, recipient_status, campaign_status, campaign_type):
        enum_type.drop(bind, checkfirst=True)

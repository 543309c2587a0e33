"""Create billing tables (orgs, sites, subscriptions, webhook_events, audit_logs)

Revision ID: 001
Revises:
Create Date: 2026-10-16 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tables may already exist if Base.metadata.create_all ran first
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'orgs' not in existing_tables:
        op.create_table(
            'orgs',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_orgs_stripe_customer_id', 'orgs', ['stripe_customer_id'], unique=True)

    if 'sites' not in existing_tables:
        op.create_table(
            'sites',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('org_id', sa.String(length=64), nullable=False),
            sa.Column('slug', sa.String(length=255), nullable=False),
            sa.Column('plan', sa.String(length=20), nullable=False, server_default='free'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['org_id'], ['orgs.id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('slug')
        )
        op.create_index('ix_sites_org_id', 'sites', ['org_id'])

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('org_id', sa.String(length=64), nullable=False),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('plan', sa.String(length=20), nullable=False, server_default='free'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('dunning_stage', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_payment_failed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("plan IN ('free', 'paid')", name='ck_subscriptions_plan'),
            sa.CheckConstraint(
                "status IN ('active', 'past_due', 'canceled', 'unpaid', 'trialing', 'paused')",
                name='ck_subscriptions_status'
            ),
            sa.CheckConstraint('dunning_stage BETWEEN 0 AND 60', name='ck_subscriptions_dunning_stage'),
            sa.ForeignKeyConstraint(['org_id'], ['orgs.id']),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscriptions_org_id', 'subscriptions', ['org_id'], unique=True)
        op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])
        op.create_index('ix_subscriptions_stripe_subscription_id', 'subscriptions', ['stripe_subscription_id'])

    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('provider', sa.String(length=32), nullable=False),
            sa.Column('event_id', sa.String(length=500), nullable=False),
            sa.Column('event_type', sa.String(length=200), nullable=False),
            sa.Column('org_id', sa.String(length=64), nullable=True),
            sa.Column('payload_hash', sa.String(length=128), nullable=True),
            sa.Column('payload_pointer', sa.String(length=2048), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='received'),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event')
        )
        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
        op.create_index('ix_webhook_events_org_id', 'webhook_events', ['org_id'])
        op.create_index('ix_webhook_events_status_created', 'webhook_events', ['status', 'created_at'])

    if 'audit_logs' not in existing_tables:
        op.create_table(
            'audit_logs',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('org_id', sa.String(length=64), nullable=False),
            sa.Column('actor_id', sa.String(length=64), nullable=True),
            sa.Column('action', sa.String(length=100), nullable=False),
            sa.Column('target_type', sa.String(length=100), nullable=True),
            sa.Column('target_id', sa.String(length=500), nullable=True),
            sa.Column('metadata_json', sa.JSON(), nullable=True),
            sa.Column('request_id', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_audit_logs_org_created', 'audit_logs', ['org_id', 'created_at'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'audit_logs' in existing_tables:
        op.drop_index('ix_audit_logs_org_created', table_name='audit_logs')
        op.drop_table('audit_logs')
    if 'webhook_events' in existing_tables:
        op.drop_index('ix_webhook_events_status_created', table_name='webhook_events')
        op.drop_index('ix_webhook_events_org_id', table_name='webhook_events')
        op.drop_index('ix_webhook_events_event_type', table_name='webhook_events')
        op.drop_table('webhook_events')
    if 'subscriptions' in existing_tables:
        op.drop_index('ix_subscriptions_stripe_subscription_id', table_name='subscriptions')
        op.drop_index('ix_subscriptions_stripe_customer_id', table_name='subscriptions')
        op.drop_index('ix_subscriptions_org_id', table_name='subscriptions')
        op.drop_table('subscriptions')
    if 'sites' in existing_tables:
        op.drop_index('ix_sites_org_id', table_name='sites')
        op.drop_table('sites')
    if 'orgs' in existing_tables:
        op.drop_index('ix_orgs_stripe_customer_id', table_name='orgs')
        op.drop_table('orgs')

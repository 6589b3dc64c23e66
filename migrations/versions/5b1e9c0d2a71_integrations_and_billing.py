"""integrations and billing tables

Revision ID: 5b1e9c0d2a71
Revises:
Create Date: 2026-10-18 12:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '5b1e9c0d2a71'
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade():
    op.create_table(
        'user_integrations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('provider_user_id', sa.String(length=255), nullable=True),
        sa.Column('provider_email', sa.String(length=255), nullable=True),
        sa.Column('provider_data', JSON, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'provider', name='uq_user_integrations_user_provider'),
    )
    op.create_index('ix_user_integrations_user_id', 'user_integrations', ['user_id'])
    op.create_index('ix_user_integrations_provider', 'user_integrations', ['provider'])

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('billing_customer_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_customers_user_id', 'customers', ['user_id'], unique=True)
    op.create_index('ix_customers_billing_customer_id', 'customers', ['billing_customer_id'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('billing_subscription_id', sa.String(length=64), nullable=False),
        sa.Column('billing_customer_id', sa.String(length=64), nullable=False),
        sa.Column('price_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default=sa.text("'incomplete'")),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_billing_subscription_id', 'subscriptions', ['billing_subscription_id'], unique=True)
    op.create_index('ix_subscriptions_billing_customer_id', 'subscriptions', ['billing_customer_id'])
    op.create_index('ix_subscriptions_price_id', 'subscriptions', ['price_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_current_period_end', 'subscriptions', ['current_period_end'])

    op.create_table(
        'billing_event_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_billing_event_logs_stripe_event_id', 'billing_event_logs', ['stripe_event_id'], unique=True)
    op.create_index('ix_billing_event_logs_type', 'billing_event_logs', ['type'])

    op.create_table(
        'usage_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('feature', sa.String(length=64), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_usage_records_user_id', 'usage_records', ['user_id'])
    op.create_index('ix_usage_records_period', 'usage_records', ['period_start', 'period_end'])

    # Owned by the editor service; created here only when absent
    bind = op.get_bind()
    existing = set(sa.inspect(bind).get_table_names())
    for table in ('workflows', 'contexts'):
        if table in existing:
            continue
        op.create_table(
            table,
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index(f'ix_{table}_user_id', table, ['user_id'])


def downgrade():
    op.drop_index('ix_usage_records_period', table_name='usage_records')
    op.drop_index('ix_usage_records_user_id', table_name='usage_records')
    op.drop_table('usage_records')

    op.drop_index('ix_billing_event_logs_type', table_name='billing_event_logs')
    op.drop_index('ix_billing_event_logs_stripe_event_id', table_name='billing_event_logs')
    op.drop_table('billing_event_logs')

    op.drop_index('ix_subscriptions_current_period_end', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_price_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_billing_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_billing_subscription_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')

    op.drop_index('ix_customers_billing_customer_id', table_name='customers')
    op.drop_index('ix_customers_user_id', table_name='customers')
    op.drop_table('customers')

    op.drop_index('ix_user_integrations_provider', table_name='user_integrations')
    op.drop_index('ix_user_integrations_user_id', table_name='user_integrations')
    op.drop_table('user_integrations')
    # workflows / contexts belong to the editor service and are left in place

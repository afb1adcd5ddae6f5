"""initial subscription schema

Revision ID: 4b1e2f7a9c10
Revises:
Create Date: 2026-10-17 09:12:44.381205

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4b1e2f7a9c10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


CURRENT_STATUS_SQL = "status IN ('pending', 'active', 'pending_cancellation')"


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('created_date', sa.TIMESTAMP(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_by', sa.Uuid(), nullable=True),
        sa.Column('updated_date', sa.TIMESTAMP(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'tbl_users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('password_hash', sa.Text(), nullable=True),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'tbl_mstr_plans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('monthly_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('token_limit', sa.Integer(), nullable=True),
        sa.Column('features', sa.Text(), nullable=True),
        sa.Column('yearly_discount_rate', sa.Numeric(4, 2), server_default=sa.text('0'), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
        sa.UniqueConstraint('name'),
        sa.CheckConstraint('monthly_price >= 0', name='ck_plans_price_non_negative'),
        sa.CheckConstraint('token_limit IS NULL OR token_limit >= 0', name='ck_plans_token_limit'),
    )

    op.create_table(
        'tbl_subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('plan_name', sa.String(length=128), nullable=False),
        sa.Column('billing_period', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('start_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('end_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('token_usage', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('token_limit', sa.Integer(), nullable=True),
        sa.Column('features', sa.Text(), nullable=True),
        sa.Column('period_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('credit_amount', sa.Numeric(10, 2), server_default=sa.text('0'), nullable=False),
        sa.Column('amount_due', sa.Numeric(10, 2), nullable=False),
        sa.Column('payment_provider', sa.String(length=64), nullable=True),
        sa.Column('provider_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=32), nullable=True),
        sa.Column('replaces_subscription_id', sa.Uuid(), nullable=True),
        sa.Column('scheduled_plan_id', sa.Uuid(), nullable=True),
        sa.Column('scheduled_billing_period', sa.String(length=32), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['tbl_users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['plan_id'], ['tbl_mstr_plans.id']),
        sa.ForeignKeyConstraint(['scheduled_plan_id'], ['tbl_mstr_plans.id']),
        sa.ForeignKeyConstraint(['replaces_subscription_id'], ['tbl_subscriptions.id']),
        sa.CheckConstraint('token_usage >= 0', name='ck_subscriptions_token_usage'),
    )
    op.create_index('ix_subscriptions_user', 'tbl_subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan', 'tbl_subscriptions', ['plan_id'])
    op.create_index(
        'uq_subscriptions_user_current',
        'tbl_subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text(CURRENT_STATUS_SQL),
        sqlite_where=sa.text(CURRENT_STATUS_SQL),
    )

    op.create_table(
        'tbl_payment_confirmations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('provider_transaction_id', sa.String(length=255), nullable=False),
        sa.Column('billing_period', sa.String(length=32), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['tbl_subscriptions.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('subscription_id', 'provider_transaction_id', name='uq_payment_confirmation_subscription_txn'),
    )

    op.create_table(
        'tbl_usage_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('timestamp', sa.TIMESTAMP(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['tbl_subscriptions.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_usage_events_subscription', 'tbl_usage_events', ['subscription_id'])

    op.create_table(
        'tbl_activity_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('actor_user_id', sa.Uuid(), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('target_type', sa.String(length=64), nullable=True),
        sa.Column('target_id', sa.String(length=64), nullable=True),
        sa.Column('metadata', sa.Text(), nullable=True),
        *_audit_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['actor_user_id'], ['tbl_users.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_activity_logs_target', 'tbl_activity_logs', ['target_type', 'target_id'])
    op.create_index('ix_activity_logs_actor', 'tbl_activity_logs', ['actor_user_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_activity_logs_actor', table_name='tbl_activity_logs')
    op.drop_index('ix_activity_logs_target', table_name='tbl_activity_logs')
    op.drop_table('tbl_activity_logs')
    op.drop_index('ix_usage_events_subscription', table_name='tbl_usage_events')
    op.drop_table('tbl_usage_events')
    op.drop_table('tbl_payment_confirmations')
    op.drop_index('uq_subscriptions_user_current', table_name='tbl_subscriptions')
    op.drop_index('ix_subscriptions_plan', table_name='tbl_subscriptions')
    op.drop_index('ix_subscriptions_user', table_name='tbl_subscriptions')
    op.drop_table('tbl_subscriptions')
    op.drop_table('tbl_mstr_plans')
    op.drop_table('tbl_users')

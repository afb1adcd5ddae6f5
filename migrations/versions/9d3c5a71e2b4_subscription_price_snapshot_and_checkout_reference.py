"""subscription price snapshot and checkout reference

Revision ID: 9d3c5a71e2b4
Revises: 4b1e2f7a9c10
Create Date: 2026-10-17 15:40:12.902117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '9d3c5a71e2b4'
down_revision: Union[str, Sequence[str], None] = '4b1e2f7a9c10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column('tbl_subscriptions', sa.Column('monthly_price', sa.Numeric(10, 2), nullable=True))
    op.execute(
        "UPDATE tbl_subscriptions SET monthly_price = ("
        "SELECT tbl_mstr_plans.monthly_price FROM tbl_mstr_plans "
        "WHERE tbl_mstr_plans.id = tbl_subscriptions.plan_id)"
    )
    with op.batch_alter_table('tbl_subscriptions') as batch_op:
        batch_op.alter_column('monthly_price', existing_type=sa.Numeric(10, 2), nullable=False)

    op.add_column('tbl_payment_confirmations', sa.Column('provider_reference', sa.String(length=255), nullable=True))
    op.create_index(
        'ix_payment_confirmations_reference',
        'tbl_payment_confirmations',
        ['subscription_id', 'provider_reference'],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_payment_confirmations_reference', table_name='tbl_payment_confirmations')
    with op.batch_alter_table('tbl_payment_confirmations') as batch_op:
        batch_op.drop_column('provider_reference')
    with op.batch_alter_table('tbl_subscriptions') as batch_op:
        batch_op.drop_column('monthly_price')

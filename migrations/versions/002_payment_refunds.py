"""payment refunds

Revision ID: 002_payment_refunds
Revises: 001_payment_core
Create Date: 2026-10-19 14:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_payment_refunds'
down_revision: Union[str, Sequence[str], None] = '001_payment_core'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema - add refunds against succeeded intents."""
    op.create_table('payment_refunds',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('intent_id', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('refund_ref', sa.String(length=64), nullable=True),
        sa.Column('provider_refund_id', sa.String(length=64), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['intent_id'], ['payment_intents.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_payment_refunds_intent_id'), 'payment_refunds', ['intent_id'], unique=False)


def downgrade() -> None:
    """Downgrade schema - drop refunds."""
    op.drop_index(op.f('ix_payment_refunds_intent_id'), table_name='payment_refunds')
    op.drop_table('payment_refunds')

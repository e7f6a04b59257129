"""payment core schema

Revision ID: 001_payment_core
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_payment_core'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema - create payment tables."""
    # Orders (owned by the order subsystem; created here only when missing)
    bind = op.get_bind()
    if not sa.inspect(bind).has_table('orders'):
        op.create_table('orders',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('total', sa.BigInteger(), nullable=False),
            sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )

    # Payment intents
    op.create_table('payment_intents',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='VND'),
        sa.Column('method', sa.String(length=24), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='created'),
        sa.Column('active_key', sa.String(length=96), nullable=True),
        sa.Column('provider_ref', sa.String(length=64), nullable=True),
        sa.Column('provider_txn_id', sa.String(length=64), nullable=True),
        sa.Column('redirect_url', sa.Text(), nullable=True),
        sa.Column('qr_payload', sa.Text(), nullable=True),
        sa.Column('deeplink', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_key'),
        sa.UniqueConstraint('method', 'provider_ref', name='uq_payment_intents_method_provider_ref')
    )
    op.create_index(op.f('ix_payment_intents_order_id'), 'payment_intents', ['order_id'], unique=False)
    op.create_index(op.f('ix_payment_intents_provider_ref'), 'payment_intents', ['provider_ref'], unique=False)
    op.create_index('ix_payment_intents_status_expires_at', 'payment_intents', ['status', 'expires_at'], unique=False)

    # Payment ledger (append-only)
    op.create_table('payment_ledger',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('intent_id', sa.String(length=32), nullable=False),
        sa.Column('from_status', sa.String(length=24), nullable=True),
        sa.Column('to_status', sa.String(length=24), nullable=False),
        sa.Column('cause', sa.String(length=24), nullable=False),
        sa.Column('anomaly', sa.String(length=48), nullable=True),
        sa.Column('provider_txn_id', sa.String(length=64), nullable=True),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['intent_id'], ['payment_intents.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_payment_ledger_anomaly'), 'payment_ledger', ['anomaly'], unique=False)
    op.create_index('ix_payment_ledger_intent_applied', 'payment_ledger', ['intent_id', 'applied_at', 'id'], unique=False)

    # Webhook events
    op.create_table('webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='received'),
        sa.Column('disposition', sa.String(length=32), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_events_provider'), 'webhook_events', ['provider'], unique=False)

    # Ledger rows are never updated or deleted
    if bind.dialect.name == 'postgresql':
        op.execute("""
            CREATE OR REPLACE FUNCTION payment_ledger_immutable() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'payment_ledger rows are append-only';
            END;
            $$ LANGUAGE plpgsql;
        """)
        op.execute("""
            CREATE TRIGGER payment_ledger_no_mutation
            BEFORE UPDATE OR DELETE ON payment_ledger
            FOR EACH ROW EXECUTE FUNCTION payment_ledger_immutable();
        """)


def downgrade() -> None:
    """Downgrade schema - drop payment tables (orders are left in place)."""
    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        op.execute("DROP TRIGGER IF EXISTS payment_ledger_no_mutation ON payment_ledger")
        op.execute("DROP FUNCTION IF EXISTS payment_ledger_immutable()")

    op.drop_index(op.f('ix_webhook_events_provider'), table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_payment_ledger_intent_applied', table_name='payment_ledger')
    op.drop_index(op.f('ix_payment_ledger_anomaly'), table_name='payment_ledger')
    op.drop_table('payment_ledger')
    op.drop_index('ix_payment_intents_status_expires_at', table_name='payment_intents')
    op.drop_index(op.f('ix_payment_intents_provider_ref'), table_name='payment_intents')
    op.drop_index(op.f('ix_payment_intents_order_id'), table_name='payment_intents')
    op.drop_table('payment_intents')

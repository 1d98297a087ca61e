"""Credit ledger schema.

Revision ID: 0001_credit_ledger
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from typing import Sequence, Union

# revision identifiers, used by Alembic.
revision: str = '0001_credit_ledger'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'user_balances',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('wallet_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_recharged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_consumed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('balance >= 0', name='ck_user_balances_balance_non_negative'),
        sa.CheckConstraint('wallet_balance >= 0', name='ck_user_balances_wallet_non_negative'),
        sa.CheckConstraint('total_recharged >= 0', name='ck_user_balances_recharged_non_negative'),
        sa.CheckConstraint('total_consumed >= 0', name='ck_user_balances_consumed_non_negative'),
    )
    op.create_index(op.f('ix_user_balances_user_id'), 'user_balances', ['user_id'], unique=True)

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=20), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('related_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('balance_after >= 0', name='ck_credit_transactions_balance_after_non_negative'),
        sa.CheckConstraint('amount <> 0', name='ck_credit_transactions_amount_non_zero'),
        sa.UniqueConstraint('transaction_type', 'idempotency_key', name='uq_credit_transactions_type_key'),
    )
    op.create_index(op.f('ix_credit_transactions_user_id'), 'credit_transactions', ['user_id'], unique=False)
    op.create_index(op.f('ix_credit_transactions_related_subscription_id'), 'credit_transactions',
                    ['related_subscription_id'], unique=False)
    op.create_index(op.f('ix_credit_transactions_idempotency_key'), 'credit_transactions',
                    ['idempotency_key'], unique=False)
    op.create_index('ix_credit_transactions_user_created', 'credit_transactions',
                    ['user_id', 'created_at'], unique=False)

    op.create_table(
        'subscription_credits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('subscription_id', sa.String(length=255), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('remaining_credits', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('credits > 0', name='ck_subscription_credits_credits_positive'),
        sa.CheckConstraint('remaining_credits >= 0 AND remaining_credits <= credits',
                           name='ck_subscription_credits_remaining_in_range'),
        sa.CheckConstraint('end_date > start_date', name='ck_subscription_credits_period_order'),
        sa.UniqueConstraint('subscription_id', 'start_date', 'end_date', name='uq_subscription_credits_period'),
    )
    op.create_index(op.f('ix_subscription_credits_user_id'), 'subscription_credits', ['user_id'], unique=False)
    op.create_index(op.f('ix_subscription_credits_subscription_id'), 'subscription_credits',
                    ['subscription_id'], unique=False)
    op.create_index('ix_subscription_credits_user_status_end', 'subscription_credits',
                    ['user_id', 'status', 'end_date'], unique=False)

    op.create_table(
        'stripe_customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('match_method', sa.String(length=50), nullable=False),
        sa.Column('confidence', sa.String(length=10), nullable=False, server_default='high'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_stripe_customers_stripe_customer_id'), 'stripe_customers',
                    ['stripe_customer_id'], unique=True)
    op.create_index(op.f('ix_stripe_customers_user_id'), 'stripe_customers', ['user_id'], unique=False)

    op.create_table(
        'webhook_events',
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('state', sa.String(length=40), nullable=False),
        sa.Column('outcome', sa.String(length=100), nullable=True),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('match_confidence', sa.String(length=10), nullable=True),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('delivery_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('first_received_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('last_received_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('event_id'),
    )
    op.create_index(op.f('ix_webhook_events_user_id'), 'webhook_events', ['user_id'], unique=False)
    op.create_index(op.f('ix_webhook_events_needs_review'), 'webhook_events', ['needs_review'], unique=False)

    op.create_table(
        'face_swap_histories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('result_image_path', sa.String(length=512), nullable=False),
        sa.Column('origin_image_url', sa.String(length=1024), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('credit_transaction_id', sa.Integer(), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_face_swap_histories_user_id'), 'face_swap_histories', ['user_id'], unique=False)
    op.create_index(op.f('ix_face_swap_histories_credit_transaction_id'), 'face_swap_histories',
                    ['credit_transaction_id'], unique=False)


def downgrade() -> None:
    op.drop_table('face_swap_histories')
    op.drop_table('webhook_events')
    op.drop_table('stripe_customers')
    op.drop_table('subscription_credits')
    op.drop_table('credit_transactions')
    op.drop_table('user_balances')

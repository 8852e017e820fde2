"""Create wallet, payment, catalog and subscription tables

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'token_wallets',
        sa.Column('wallet_id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('organization_id', sa.String(length=255), nullable=True),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=20), nullable=False, server_default='AI_TOKEN'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('balance >= 0', name='ck_token_wallets_balance_non_negative'),
    )
    op.create_index('ix_token_wallets_user_id', 'token_wallets', ['user_id'])
    op.create_index('ix_token_wallets_organization_id', 'token_wallets', ['organization_id'])

    op.create_table(
        'token_wallet_transactions',
        sa.Column('transaction_id', sa.String(length=36), primary_key=True),
        sa.Column('wallet_id', sa.String(length=36), sa.ForeignKey('token_wallets.wallet_id', ondelete='CASCADE'), nullable=False),
        sa.Column('transaction_type', sa.String(length=50), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after_txn', sa.Integer(), nullable=False),
        sa.Column('recorded_by_user_id', sa.String(length=255), nullable=True),
        sa.Column('related_entity_id', sa.String(length=255), nullable=True),
        sa.Column('related_entity_type', sa.String(length=100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('related_entity_id', 'related_entity_type', name='uq_token_wallet_txn_related_entity'),
    )
    op.create_index('ix_token_wallet_transactions_wallet_id', 'token_wallet_transactions', ['wallet_id'])
    op.create_index('ix_token_wallet_transactions_created_at', 'token_wallet_transactions', ['created_at'])
    op.create_index('ix_token_wallet_txn_wallet_created', 'token_wallet_transactions', ['wallet_id', 'created_at'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('organization_id', sa.String(length=255), nullable=True),
        sa.Column('target_wallet_id', sa.String(length=36), sa.ForeignKey('token_wallets.wallet_id'), nullable=False),
        sa.Column('payment_gateway_id', sa.String(length=50), nullable=False, server_default='stripe'),
        sa.Column('gateway_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('purchase_mode', sa.String(length=30), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='PENDING'),
        sa.Column('amount_requested_fiat', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency_requested_fiat', sa.String(length=10), nullable=True),
        sa.Column('tokens_to_award', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('gateway_transaction_id', 'payment_gateway_id', name='uq_payment_txn_gateway_ref'),
    )
    op.create_index('ix_payment_transactions_user_id', 'payment_transactions', ['user_id'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index('ix_payment_transactions_target_wallet_id', 'payment_transactions', ['target_wallet_id'])
    op.create_index('ix_payment_transactions_user_created', 'payment_transactions', ['user_id', 'created_at'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('stripe_price_id', sa.String(length=255), nullable=False),
        sa.Column('stripe_product_id', sa.String(length=255), nullable=True),
        sa.Column('item_id_internal', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.JSON(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=10), nullable=True),
        sa.Column('interval', sa.String(length=20), nullable=True),
        sa.Column('interval_count', sa.Integer(), nullable=True),
        sa.Column('plan_type', sa.String(length=30), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('tokens_to_award', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_subscription_plans_stripe_price_id', 'subscription_plans', ['stripe_price_id'], unique=True)
    op.create_index('ix_subscription_plans_stripe_product_id', 'subscription_plans', ['stripe_product_id'])
    op.create_index('ix_subscription_plans_item_id_internal', 'subscription_plans', ['item_id_internal'])

    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('organization_id', sa.String(length=255), nullable=True),
        sa.Column('plan_id', sa.String(length=36), sa.ForeignKey('subscription_plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index('ix_user_subscriptions_stripe_subscription_id', 'user_subscriptions', ['stripe_subscription_id'], unique=True)
    op.create_index('ix_user_subscriptions_stripe_customer_id', 'user_subscriptions', ['stripe_customer_id'])

    op.create_table(
        'stripe_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('outcome', sa.String(length=30), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('delivery_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_stripe_events_id', 'stripe_events', ['id'])
    op.create_index('ix_stripe_events_event_id', 'stripe_events', ['event_id'], unique=True)
    op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])


def downgrade() -> None:
    op.drop_table('stripe_events')
    op.drop_table('user_subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('payment_transactions')
    op.drop_table('token_wallet_transactions')
    op.drop_table('token_wallets')

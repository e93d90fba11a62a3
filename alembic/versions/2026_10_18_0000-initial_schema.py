"""initial ledger schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(12, 2)
GENERATION_STATUSES = (
    "'creating', 'queued', 'waiting_invite', 'running', "
    "'completed', 'error', 'expired', 'cancelled'"
)


def upgrade() -> None:
    """Create the ledger schema."""

    # ========================================================================
    # Wallets and their journal
    # ========================================================================
    op.create_table(
        'wallets',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('balance', MONEY, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
    )

    op.create_table(
        'wallet_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('wallet_id', UUID(as_uuid=True), sa.ForeignKey('wallets.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('credits', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('balance_after', MONEY, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('amount > 0', name='ck_wallet_tx_amount_positive'),
        sa.CheckConstraint("type IN ('deposit', 'debit')", name='ck_wallet_tx_type'),
    )
    op.create_index('idx_wallet_tx_wallet_created', 'wallet_transactions', ['wallet_id', 'created_at'])
    op.create_index('idx_wallet_tx_reference', 'wallet_transactions', ['wallet_id', 'reference_id'])
    op.create_index(
        'uq_wallet_tx_deposit_reference',
        'wallet_transactions',
        ['wallet_id', 'reference_id'],
        unique=True,
        postgresql_where=sa.text("type = 'deposit' AND reference_id IS NOT NULL"),
    )

    # ========================================================================
    # Admin-issued tokens
    # ========================================================================
    op.create_table(
        'tokens',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('token', sa.String(64), nullable=False, unique=True),
        sa.Column('client_name', sa.String(255), nullable=False),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('credits_per_use', sa.Integer(), nullable=False),
        sa.Column('total_limit', sa.Integer(), nullable=True),
        sa.Column('daily_limit', sa.Integer(), nullable=True),
        sa.Column('cooldown_minutes', sa.Integer(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('warning_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('credits_per_use > 0', name='ck_token_credits_per_use_positive'),
        sa.CheckConstraint('total_limit IS NULL OR total_limit > 0', name='ck_token_total_limit_positive'),
        sa.CheckConstraint('daily_limit IS NULL OR daily_limit > 0', name='ck_token_daily_limit_positive'),
    )

    op.create_table(
        'token_usages',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('token_id', UUID(as_uuid=True), sa.ForeignKey('tokens.id', ondelete='CASCADE'), nullable=False),
        sa.Column('farm_id', sa.String(255), nullable=True),
        sa.Column('credits_requested', sa.Integer(), nullable=False),
        sa.Column('credits_earned', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('client_ip', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_token_usages_token_farm', 'token_usages', ['token_id', 'farm_id'])

    # ========================================================================
    # Reseller client tokens
    # ========================================================================
    op.create_table(
        'client_tokens',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('token', sa.String(64), nullable=False, unique=True),
        sa.Column('owner_id', UUID(as_uuid=True), nullable=False),
        sa.Column('total_credits', sa.Integer(), nullable=False),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('total_credits > 0', name='ck_client_token_total_positive'),
        sa.CheckConstraint('credits_used >= 0', name='ck_client_token_used_non_negative'),
        sa.CheckConstraint('credits_used <= total_credits', name='ck_client_token_used_within_total'),
    )
    op.create_index('idx_client_tokens_owner', 'client_tokens', ['owner_id'])

    # ========================================================================
    # Generations
    # ========================================================================
    op.create_table(
        'generations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('farm_id', sa.String(255), nullable=False, unique=True),
        sa.Column('previous_farm_id', sa.String(255), nullable=True),
        sa.Column('client_name', sa.String(255), nullable=False),
        sa.Column('credits_requested', sa.Integer(), nullable=False),
        sa.Column('credits_earned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='creating'),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('waiting_since', sa.DateTime(timezone=True), nullable=True),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('token_id', UUID(as_uuid=True), sa.ForeignKey('tokens.id', ondelete='RESTRICT'), nullable=True),
        sa.Column(
            'client_token_id',
            UUID(as_uuid=True),
            sa.ForeignKey('client_tokens.id', ondelete='RESTRICT'),
            nullable=True,
        ),
        sa.Column('master_email', sa.String(255), nullable=True),
        sa.Column('workspace_name', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('client_ip', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('credits_requested > 0', name='ck_generation_requested_positive'),
        sa.CheckConstraint(
            'credits_earned >= 0 AND credits_earned <= credits_requested',
            name='ck_generation_earned_within_requested',
        ),
        sa.CheckConstraint(f'status IN ({GENERATION_STATUSES})', name='ck_generation_status'),
        sa.CheckConstraint(
            'num_nonnulls(user_id, token_id, client_token_id) = 1',
            name='ck_generation_single_owner',
        ),
    )
    op.create_index('idx_generations_status_created', 'generations', ['status', 'created_at'])
    op.create_index(
        'idx_generations_unsettled',
        'generations',
        ['status', 'updated_at'],
        postgresql_where=sa.text('settled_at IS NULL'),
    )
    op.create_index('idx_generations_previous_farm_id', 'generations', ['previous_farm_id'])
    op.create_index('idx_generations_user', 'generations', ['user_id'])
    op.create_index('idx_generations_token', 'generations', ['token_id', 'created_at'])
    op.create_index('idx_generations_client_token', 'generations', ['client_token_id'])

    # ========================================================================
    # Products, coupons and PIX orders
    # ========================================================================
    op.create_table(
        'products',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('credits_per_use', sa.Integer(), nullable=False),
        sa.Column('total_limit', sa.Integer(), nullable=True),
        sa.Column('daily_limit', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_table(
        'coupons',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('code', sa.String(64), nullable=False, unique=True),
        sa.Column('discount_type', sa.String(20), nullable=False, server_default='percentage'),
        sa.Column('discount_value', MONEY, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('times_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint("discount_type IN ('percentage', 'fixed')", name='ck_coupon_discount_type'),
        sa.CheckConstraint('discount_value > 0', name='ck_coupon_discount_positive'),
        sa.CheckConstraint('times_used >= 0', name='ck_coupon_times_used_non_negative'),
    )

    op.create_table(
        'orders',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('transaction_id', sa.String(255), nullable=True, unique=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('order_type', sa.String(30), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('discount_amount', MONEY, nullable=True),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('coupon_id', UUID(as_uuid=True), sa.ForeignKey('coupons.id', ondelete='SET NULL'), nullable=True),
        sa.Column('product_id', UUID(as_uuid=True), sa.ForeignKey('products.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('token_id', UUID(as_uuid=True), sa.ForeignKey('tokens.id', ondelete='SET NULL'), nullable=True),
        sa.Column('upgrade_increment', sa.Integer(), nullable=True),
        sa.Column('customer_name', sa.String(255), nullable=False),
        sa.Column('customer_email', sa.String(255), nullable=False),
        sa.Column('customer_document', sa.String(20), nullable=False),
        sa.Column('pix_code', sa.Text(), nullable=True),
        sa.Column('pix_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('amount > 0', name='ck_order_amount_positive'),
        sa.CheckConstraint("status IN ('pending', 'paid')", name='ck_order_status'),
        sa.CheckConstraint(
            "order_type IN ('deposit', 'upgrade_daily', 'upgrade_per_use', 'token_purchase')",
            name='ck_order_type',
        ),
    )
    op.create_index('idx_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index('idx_orders_user', 'orders', ['user_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('orders')
    op.drop_table('coupons')
    op.drop_table('products')
    op.drop_table('generations')
    op.drop_table('client_tokens')
    op.drop_table('token_usages')
    op.drop_table('tokens')
    op.drop_table('wallet_transactions')
    op.drop_table('wallets')

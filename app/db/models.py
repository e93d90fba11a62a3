"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

import secrets
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_token_secret() -> str:
    """Opaque bearer string for tokens and client tokens."""
    return secrets.token_urlsafe(24)


MONEY = Numeric(12, 2)

_GENERATION_STATUSES = (
    "'creating', 'queued', 'waiting_invite', 'running', "
    "'completed', 'error', 'expired', 'cancelled'"
)


class Wallet(Base):
    """
    ORM model for wallets table.

    One per user. balance is only mutated by LedgerService together with a
    WalletTransaction row.
    """

    __tablename__ = "wallets"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Wallet(id={self.id}, user_id={self.user_id}, balance={self.balance})>"


class WalletTransaction(Base):
    """
    ORM model for wallet_transactions table.

    Immutable ledger line. Deposits are unique per (wallet, reference_id),
    which makes credit_wallet idempotent at the database level.
    """

    __tablename__ = "wallet_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    wallet_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("wallets.id", ondelete="RESTRICT"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    credits: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_tx_amount_positive"),
        CheckConstraint("type IN ('deposit', 'debit')", name="ck_wallet_tx_type"),
        Index("idx_wallet_tx_wallet_created", "wallet_id", "created_at"),
        Index("idx_wallet_tx_reference", "wallet_id", "reference_id"),
        Index(
            "uq_wallet_tx_deposit_reference",
            "wallet_id",
            "reference_id",
            unique=True,
            postgresql_where=text("type = 'deposit' AND reference_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<WalletTransaction(id={self.id}, type={self.type}, amount={self.amount}, "
            f"reference_id={self.reference_id})>"
        )


class Token(Base):
    """
    ORM model for tokens table (admin-issued access tokens).

    A rate/quota policy, not a balance: consumption is summed from the
    token's generations.
    """

    __tablename__ = "tokens"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    token: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, default=generate_token_secret
    )
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    credits_per_use: Mapped[int] = mapped_column(Integer, nullable=False)
    total_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cooldown_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    warning_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_per_use > 0", name="ck_token_credits_per_use_positive"),
        CheckConstraint(
            "total_limit IS NULL OR total_limit > 0", name="ck_token_total_limit_positive"
        ),
        CheckConstraint(
            "daily_limit IS NULL OR daily_limit > 0", name="ck_token_daily_limit_positive"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Token(id={self.id}, client_name={self.client_name}, "
            f"active={self.is_active})>"
        )


class TokenUsage(Base):
    """
    ORM model for token_usages table.

    Journal of generations started through an admin token. farm_id follows
    the generation through placeholder renames.
    """

    __tablename__ = "token_usages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    token_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("tokens.id", ondelete="CASCADE"),
        nullable=False,
    )
    farm_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credits_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_earned: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_token_usages_token_farm", "token_id", "farm_id"),
    )


class ClientToken(Base):
    """
    ORM model for client_tokens table (reseller sub-tokens).

    A prepaid credit balance: remaining = total_credits - credits_used.
    """

    __tablename__ = "client_tokens"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    token: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, default=generate_token_secret
    )
    owner_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    total_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("total_credits > 0", name="ck_client_token_total_positive"),
        CheckConstraint("credits_used >= 0", name="ck_client_token_used_non_negative"),
        CheckConstraint(
            "credits_used <= total_credits", name="ck_client_token_used_within_total"
        ),
        Index("idx_client_tokens_owner", "owner_id"),
    )

    @property
    def remaining(self) -> int:
        return self.total_credits - self.credits_used

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ClientToken(id={self.id}, used={self.credits_used}/{self.total_credits}, "
            f"active={self.is_active})>"
        )


class Generation(Base):
    """
    ORM model for generations table.

    One request-to-delivery unit of work. settled_at goes NULL -> non-NULL
    exactly once, via SettlementService's conditional UPDATE.
    """

    __tablename__ = "generations"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    farm_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    previous_farm_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)

    credits_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="creating")
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when the row enters waiting_invite; the invite timeout counts from here
    waiting_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Owner - exactly one is set
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    token_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("tokens.id", ondelete="RESTRICT"), nullable=True
    )
    client_token_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("client_tokens.id", ondelete="RESTRICT"),
        nullable=True,
    )

    master_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    workspace_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_requested > 0", name="ck_generation_requested_positive"),
        CheckConstraint(
            "credits_earned >= 0 AND credits_earned <= credits_requested",
            name="ck_generation_earned_within_requested",
        ),
        CheckConstraint(f"status IN ({_GENERATION_STATUSES})", name="ck_generation_status"),
        CheckConstraint(
            "num_nonnulls(user_id, token_id, client_token_id) = 1",
            name="ck_generation_single_owner",
        ),
        Index("idx_generations_status_created", "status", "created_at"),
        Index(
            "idx_generations_unsettled",
            "status",
            "updated_at",
            postgresql_where=(settled_at.is_(None)),
        ),
        Index("idx_generations_previous_farm_id", "previous_farm_id"),
        Index("idx_generations_user", "user_id"),
        Index("idx_generations_token", "token_id", "created_at"),
        Index("idx_generations_client_token", "client_token_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Generation(id={self.id}, farm_id={self.farm_id}, status={self.status}, "
            f"earned={self.credits_earned}/{self.credits_requested}, "
            f"settled={self.settled_at is not None})>"
        )


class Product(Base):
    """ORM model for products table (token plans sold via PIX)."""

    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    credits_per_use: Mapped[int] = mapped_column(Integer, nullable=False)
    total_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("price > 0", name="ck_product_price_positive"),)


class Coupon(Base):
    """ORM model for coupons table."""

    __tablename__ = "coupons"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False, default="percentage")
    discount_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    times_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "discount_type IN ('percentage', 'fixed')", name="ck_coupon_discount_type"
        ),
        CheckConstraint("discount_value > 0", name="ck_coupon_discount_positive"),
        CheckConstraint("times_used >= 0", name="ck_coupon_times_used_non_negative"),
    )


class Order(Base):
    """
    ORM model for orders table (PIX payment records).

    status goes pending -> paid exactly once via a conditional UPDATE; only
    the caller that wins that update applies the order's side effect.
    """

    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    order_type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    discount_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)

    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    coupon_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True
    )
    product_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="RESTRICT"), nullable=True
    )
    token_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("tokens.id", ondelete="SET NULL"), nullable=True
    )
    upgrade_increment: Mapped[int | None] = mapped_column(Integer, nullable=True)

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_document: Mapped[str] = mapped_column(String(20), nullable=False)

    pix_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    pix_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_order_amount_positive"),
        CheckConstraint("status IN ('pending', 'paid')", name="ck_order_status"),
        CheckConstraint(
            "order_type IN ('deposit', 'upgrade_daily', 'upgrade_per_use', 'token_purchase')",
            name="ck_order_type",
        ),
        Index("idx_orders_status_created", "status", "created_at"),
        Index("idx_orders_user", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Order(id={self.id}, type={self.order_type}, status={self.status}, "
            f"amount={self.amount})>"
        )

"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class GenerationStatus(str, Enum):
    """Generation state machine values."""

    CREATING = "creating"
    QUEUED = "queued"
    WAITING_INVITE = "waiting_invite"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[GenerationStatus] = frozenset(
    {
        GenerationStatus.COMPLETED,
        GenerationStatus.ERROR,
        GenerationStatus.EXPIRED,
        GenerationStatus.CANCELLED,
    }
)

# Reserved but not yet delivering
PENDING_STATUSES: frozenset[GenerationStatus] = frozenset(
    {
        GenerationStatus.CREATING,
        GenerationStatus.QUEUED,
        GenerationStatus.WAITING_INVITE,
    }
)


class TokenUsageStatus(str, Enum):
    """Per-token usage journal status."""

    ACTIVE = "active"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class WalletTransactionType(str, Enum):
    """Wallet ledger line type."""

    DEPOSIT = "deposit"
    DEBIT = "debit"


class OrderStatus(str, Enum):
    """Payment order status."""

    PENDING = "pending"
    PAID = "paid"


class OrderType(str, Enum):
    """What a paid order does once confirmed."""

    DEPOSIT = "deposit"
    UPGRADE_DAILY = "upgrade_daily"
    UPGRADE_PER_USE = "upgrade_per_use"
    TOKEN_PURCHASE = "token_purchase"


class DiscountType(str, Enum):
    """Coupon discount kind."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class LedgerErrorCode(str, Enum):
    """Expected business failures returned in result bodies (never raised)."""

    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_INACTIVE = "TOKEN_INACTIVE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOTAL_LIMIT_REACHED = "TOTAL_LIMIT_REACHED"
    DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    ACTIVE_GENERATION_EXISTS = "ACTIVE_GENERATION_EXISTS"
    GENERATION_NOT_FOUND = "GENERATION_NOT_FOUND"
    ALREADY_EARNED = "ALREADY_EARNED"
    ALREADY_STARTED = "ALREADY_STARTED"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    GENERATION_IN_PROGRESS = "GENERATION_IN_PROGRESS"
    INVALID_COUPON = "INVALID_COUPON"
    ORDER_NOT_CLAIMABLE = "ORDER_NOT_CLAIMABLE"


def _validate_credit_step(v: int) -> int:
    if v % 5 != 0:
        raise ValueError("credits must be a multiple of 5")
    return v


# ============================================================================
# Generation Models
# ============================================================================


class GenerateRequest(BaseModel):
    """POST /v1/generate request body (wallet-funded)."""

    credits: int = Field(..., ge=5, le=10000, description="Credits to deliver (multiple of 5)")

    @field_validator("credits")
    @classmethod
    def validate_step(cls, v: int) -> int:
        return _validate_credit_step(v)


class ClientGenerateRequest(BaseModel):
    """POST /v1/client-tokens/{token}/generate request body."""

    credits: int = Field(..., ge=5, description="Credits to deliver (multiple of 5)")

    @field_validator("credits")
    @classmethod
    def validate_step(cls, v: int) -> int:
        return _validate_credit_step(v)


class TokenGenerateRequest(BaseModel):
    """POST /v1/tokens/{token}/generate request body.

    Omitted credits means the token's credits_per_use.
    """

    credits: int | None = Field(None, gt=0)


class GenerateResponse(BaseModel):
    """Result of any front-door generate call."""

    success: bool
    farm_id: str | None = None
    generation_id: UUID | None = None
    credits: int | None = None
    queued: bool = False
    queue_position: int | None = None
    master_email: str | None = None
    message: str | None = None
    error: LedgerErrorCode | None = None
    balance: Decimal | None = None
    required: Decimal | None = None
    remaining: int | None = None
    existing_farm_id: str | None = None


class StatusUpdateRequest(BaseModel):
    """Owner/admin push of a generation status."""

    status: str = Field(..., min_length=1, max_length=32)
    credits_earned: int | None = Field(None, ge=0)
    master_email: str | None = Field(None, max_length=255)
    workspace_name: str | None = Field(None, max_length=255)
    error_message: str | None = Field(None, max_length=1000)


class FarmStatusResponse(BaseModel):
    """Status proxy response (what a polling client sees)."""

    farm_id: str
    status: str
    credits: int | None = None
    credits_earned: int = 0
    queue_position: int | None = None
    new_farm_id: str | None = None
    master_email: str | None = None
    workspace_name: str | None = None
    settled: bool = False


class ActionResponse(BaseModel):
    """Generic outcome for cancel / refund-expired / status push."""

    success: bool
    error: LedgerErrorCode | None = None
    message: str | None = None
    refund_amount: Decimal | None = None
    refunded_credits: int | None = None


class CapacityInfo(BaseModel):
    """Local concurrency accounting."""

    max_concurrent: int
    active: int
    running: int
    waiting: int
    creating: int
    queued: int
    available: int


class StockResponse(BaseModel):
    """GET /v1/farm/stock response."""

    upstream_total: int | None = None
    upstream_active: int | None = None
    capacity: CapacityInfo


# ============================================================================
# Wallet Models
# ============================================================================


class WalletTransactionItem(BaseModel):
    """Single wallet ledger line."""

    id: UUID
    type: WalletTransactionType
    amount: Decimal
    credits: int | None = None
    description: str
    reference_id: str | None = None
    created_at: datetime


class WalletResponse(BaseModel):
    """GET /v1/wallet response."""

    user_id: UUID
    balance: Decimal
    estimated_credits: int
    transactions: list[WalletTransactionItem] = Field(default_factory=list)


class DepositRequest(BaseModel):
    """POST /v1/wallet/deposits request body."""

    amount: Decimal = Field(..., ge=5, le=10000, decimal_places=2)
    coupon_code: str | None = Field(None, min_length=1, max_length=64)
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: str = Field(..., min_length=3, max_length=255)
    customer_document: str = Field(..., min_length=11, max_length=20)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: str | None) -> str | None:
        return v.strip().upper() if v else v


class PixChargeResponse(BaseModel):
    """Pending PIX order created for the caller."""

    order_id: UUID
    order_type: OrderType
    transaction_id: str
    pix_code: str
    expires_at: datetime | None = None
    amount: Decimal
    discount_amount: Decimal = Decimal("0")


class OrderRequest(BaseModel):
    """POST /v1/orders request body (token purchase or upgrade)."""

    order_type: OrderType
    product_id: UUID | None = None
    token_id: UUID | None = None
    upgrade_increment: int | None = Field(None, gt=0, multiple_of=1000)
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: str = Field(..., min_length=3, max_length=255)
    customer_document: str = Field(..., min_length=11, max_length=20)

    @field_validator("order_type")
    @classmethod
    def reject_deposit(cls, v: OrderType) -> OrderType:
        if v == OrderType.DEPOSIT:
            raise ValueError("deposits are created via /v1/wallet/deposits")
        return v


class OrderResponse(BaseModel):
    """GET /v1/orders/{order_id} response."""

    order_id: UUID
    order_type: OrderType
    status: OrderStatus
    amount: Decimal
    transaction_id: str | None = None
    paid_at: datetime | None = None
    token_id: UUID | None = None


class ClaimDepositResponse(BaseModel):
    """POST /v1/wallet/deposits/{order_id}/claim response."""

    success: bool
    error: LedgerErrorCode | None = None
    amount: Decimal | None = None
    new_balance: Decimal | None = None
    already_credited: bool = False


class WebhookResponse(BaseModel):
    """Webhook acknowledgement."""

    ok: bool = True
    message: str | None = None
    order_type: OrderType | None = None


# ============================================================================
# Token Models
# ============================================================================


class TokenInfo(BaseModel):
    """Public view of an admin-issued token policy."""

    id: UUID
    client_name: str
    credits_per_use: int
    total_limit: int | None = None
    daily_limit: int | None = None
    expires_at: datetime | None = None
    is_active: bool
    cooldown_minutes: int | None = None


class TokenValidateResponse(BaseModel):
    """GET /v1/tokens/{token} response."""

    valid: bool
    error: LedgerErrorCode | None = None
    token: TokenInfo | None = None
    remaining_total: int | None = None
    remaining_daily: int | None = None
    daily_limit_reached: bool = False
    warning_message: str | None = None


class CreateTokenRequest(BaseModel):
    """POST /v1/admin/tokens request body."""

    client_name: str = Field(..., min_length=1, max_length=255)
    credits_per_use: int = Field(..., gt=0, le=10000)
    total_limit: int | None = Field(None, gt=0)
    daily_limit: int | None = Field(None, gt=0)
    expires_at: datetime | None = None
    cooldown_minutes: int | None = Field(None, ge=0)
    warning_message: str | None = Field(None, max_length=500)


class TokenResponse(TokenInfo):
    """Admin view of a token including its secret."""

    token: str
    created_at: datetime


class ClientTokenCreateRequest(BaseModel):
    """POST /v1/client-tokens request body."""

    credits: int = Field(..., ge=5, le=100000)

    @field_validator("credits")
    @classmethod
    def validate_step(cls, v: int) -> int:
        return _validate_credit_step(v)


class ClientTokenResponse(BaseModel):
    """Reseller sub-token view."""

    id: UUID
    token: str
    total_credits: int
    credits_used: int
    remaining: int
    is_active: bool
    created_at: datetime


class ClientTokenCreateResponse(BaseModel):
    """Outcome of minting a client token."""

    success: bool
    error: LedgerErrorCode | None = None
    client_token: ClientTokenResponse | None = None
    cost: Decimal | None = None
    balance: Decimal | None = None
    required: Decimal | None = None


class ClientTokenValidateResponse(BaseModel):
    """GET /v1/client-tokens/{token} response."""

    valid: bool
    error: LedgerErrorCode | None = None
    remaining: int = 0
    total_credits: int = 0
    has_active_generation: bool = False
    active_farm_id: str | None = None


class ClientTokenDeactivateResponse(BaseModel):
    """POST /v1/client-tokens/{id}/deactivate response."""

    success: bool
    error: LedgerErrorCode | None = None
    message: str | None = None
    settled_generations: int = 0
    refund_amount: Decimal = Decimal("0")
    refunded_credits: int = 0


# ============================================================================
# Job / Operator Models
# ============================================================================


class StaleSweepResponse(BaseModel):
    """POST /v1/jobs/stale-sweep response."""

    forced_cancelled: int
    settled_terminal: int
    settled_completed: int
    failed_dispatch: int
    failures: int
    dequeued: int


class PaymentReconcileResponse(BaseModel):
    """POST /v1/jobs/payment-reconcile response."""

    checked: int
    confirmed: int
    still_pending: int
    failures: int


class AnomalyItem(BaseModel):
    """One read-only integrity finding."""

    kind: str
    generation_id: UUID | None = None
    wallet_id: UUID | None = None
    farm_id: str | None = None
    expected: Decimal | None = None
    actual: Decimal | None = None
    detail: str


class AnomalyReportResponse(BaseModel):
    """GET /v1/admin/anomalies response."""

    generated_at: datetime
    anomalies: list[AnomalyItem] = Field(default_factory=list)


# ============================================================================
# Health / Errors
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str


class ErrorDetail(BaseModel):
    """Error detail for validation errors."""

    detail: str


class ValidationErrorDetail(BaseModel):
    """Single validation error entry."""

    loc: list[str | int]
    msg: str
    type: str


class ValidationErrorResponse(BaseModel):
    """422 response body."""

    detail: list[ValidationErrorDetail]

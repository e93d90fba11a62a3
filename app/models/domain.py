"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.

Ledger primitives report expected business failures through these result
types (``success=False`` plus an error code) instead of raising, so callers
can branch and show the right UI (e.g. open a deposit flow).
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from app.models.api import GenerationStatus, LedgerErrorCode, OrderType


# ============================================================================
# Ledger Primitive Results
# ============================================================================


@dataclass(frozen=True)
class DebitResult:
    """Outcome of debit_wallet."""

    success: bool
    balance: Decimal | None = None
    new_balance: Decimal | None = None
    error: LedgerErrorCode | None = None
    transaction_id: UUID | None = None

    def __post_init__(self) -> None:
        """Validate result consistency."""
        if self.success and self.new_balance is None:
            raise ValueError("Successful debit must report new_balance")
        if not self.success and self.error is None:
            raise ValueError("Failed debit must carry an error code")


@dataclass(frozen=True)
class CreditResult:
    """Outcome of credit_wallet. already_credited marks an idempotent no-op."""

    new_balance: Decimal
    already_credited: bool = False
    transaction_id: UUID | None = None


@dataclass(frozen=True)
class ReserveResult:
    """Outcome of reserve_credits against an admin token policy."""

    success: bool
    generation_id: UUID | None = None
    error: LedgerErrorCode | None = None
    remaining_total: int | None = None
    remaining_daily: int | None = None


@dataclass(frozen=True)
class TokenCreditsResult:
    """Outcome of use/refund on a client token."""

    success: bool
    remaining: int | None = None
    error: LedgerErrorCode | None = None


@dataclass(frozen=True)
class TokenUsageSnapshot:
    """Consumption of an admin token derived from its generations."""

    used_total: int
    reserved_total: int
    used_daily: int
    reserved_daily: int
    remaining_total: int | None
    remaining_daily: int | None

    @property
    def remaining(self) -> int | None:
        """Tightest remaining cap, or None when unlimited."""
        caps = [c for c in (self.remaining_total, self.remaining_daily) if c is not None]
        return min(caps) if caps else None


# ============================================================================
# Farm Contract
# ============================================================================


@dataclass(frozen=True)
class FarmCreateResult:
    """Farm create response."""

    farm_id: str
    queued: bool
    master_email: str | None = None
    queue_position: int | None = None
    message: str | None = None

    def __post_init__(self) -> None:
        if not self.farm_id:
            raise ValueError("farm_id cannot be empty")


@dataclass(frozen=True)
class FarmStatusReport:
    """Normalized farm status poll.

    status is already mapped to local vocabulary; raw_status keeps the
    upstream value for logging.
    """

    farm_id: str
    status: str
    raw_status: str
    credits_earned: int
    master_email: str | None = None
    workspace_name: str | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        if self.credits_earned < 0:
            raise ValueError(f"credits_earned cannot be negative: {self.credits_earned}")


@dataclass(frozen=True)
class FarmStock:
    """Upstream stock figures."""

    total: int
    active: int


# ============================================================================
# Admission
# ============================================================================


@dataclass(frozen=True)
class CapacitySnapshot:
    """Ghost-filtered active counts plus queue depth."""

    running: int
    waiting: int
    creating: int
    queued: int
    ceiling: int

    @property
    def active(self) -> int:
        return self.running + self.waiting + self.creating

    @property
    def available(self) -> int:
        return max(self.ceiling - self.active, 0)

    @property
    def at_capacity(self) -> bool:
        return self.active >= self.ceiling


@dataclass(frozen=True)
class AdmissionResult:
    """Where a generation landed after admission."""

    generation_id: UUID
    farm_id: str
    status: GenerationStatus
    queued: bool
    queue_position: int | None = None
    master_email: str | None = None
    message: str | None = None


# ============================================================================
# Settlement
# ============================================================================


@dataclass(frozen=True)
class ClaimedGeneration:
    """Row state returned by a successful settlement claim."""

    generation_id: UUID
    farm_id: str
    status: GenerationStatus
    previous_status: GenerationStatus
    credits_requested: int
    credits_earned: int
    user_id: UUID | None
    token_id: UUID | None
    client_token_id: UUID | None


@dataclass(frozen=True)
class PaidOrder:
    """Order state returned by a successful pending -> paid claim."""

    order_id: UUID
    order_type: OrderType
    amount: Decimal
    user_id: UUID | None
    coupon_id: UUID | None
    product_id: UUID | None
    token_id: UUID | None
    upgrade_increment: int | None
    customer_name: str


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of one settlement attempt."""

    generation_id: UUID
    settled: bool
    already_settled: bool = False
    final_status: GenerationStatus | None = None
    delivered: int = 0
    shortfall: int = 0
    refund_amount: Decimal = Decimal("0")
    refunded_credits: int = 0

    @classmethod
    def noop(cls, generation_id: UUID) -> "SettlementOutcome":
        """Another caller already owns this settlement."""
        return cls(generation_id=generation_id, settled=False, already_settled=True)


# ============================================================================
# Sweeps / Payments
# ============================================================================


@dataclass(frozen=True)
class StaleSweepResult:
    """Counts from one stale-state sweep."""

    forced_cancelled: int = 0
    settled_terminal: int = 0
    settled_completed: int = 0
    failed_dispatch: int = 0
    failures: int = 0
    dequeued: int = 0

    @property
    def settled_any(self) -> bool:
        return (
            self.forced_cancelled
            + self.settled_terminal
            + self.settled_completed
            + self.failed_dispatch
        ) > 0


@dataclass(frozen=True)
class PaymentReconcileResult:
    """Counts from one payment reconciliation pass."""

    checked: int = 0
    confirmed: int = 0
    still_pending: int = 0
    failures: int = 0


@dataclass(frozen=True)
class PaymentConfirmation:
    """Outcome of confirming one paid order."""

    order_id: UUID
    claimed: bool
    order_type: OrderType
    new_balance: Decimal | None = None
    already_credited: bool = False
    token_id: UUID | None = None


@dataclass(frozen=True)
class PixCharge:
    """A created PIX charge."""

    transaction_id: str
    pix_code: str
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")


@dataclass(frozen=True)
class PaymentStatus:
    """Provider-side payment status."""

    transaction_id: str
    status: str
    paid_flag: bool = False

    PAID_STATUSES = frozenset({"paid", "completed", "approved"})

    @property
    def is_paid(self) -> bool:
        return self.paid_flag or self.status.lower() in self.PAID_STATUSES


@dataclass(frozen=True)
class LedgerAnomaly:
    """Read-only integrity finding for the operator view."""

    kind: str
    detail: str
    generation_id: UUID | None = None
    wallet_id: UUID | None = None
    farm_id: str | None = None
    expected: Decimal | None = None
    actual: Decimal | None = None


@dataclass(frozen=True)
class DeactivationResult:
    """Outcome of deactivating a client token."""

    success: bool
    error: LedgerErrorCode | None = None
    settled_generations: int = 0
    refunded_credits: int = 0
    refund_amount: Decimal = Decimal("0")
    blocking_farm_ids: tuple[str, ...] = field(default_factory=tuple)


# ============================================================================
# Lifecycle
# ============================================================================


@dataclass(frozen=True)
class GenerationView:
    """What a polling client sees for one farm id."""

    farm_id: str
    status: str
    credits: int
    credits_earned: int = 0
    queue_position: int | None = None
    new_farm_id: str | None = None
    master_email: str | None = None
    workspace_name: str | None = None
    settled: bool = False


@dataclass(frozen=True)
class ActionOutcome:
    """Outcome of cancel / refund-expired / status push on a generation."""

    success: bool
    error: LedgerErrorCode | None = None
    settlement: SettlementOutcome | None = None

    @property
    def refund_amount(self) -> Decimal:
        return self.settlement.refund_amount if self.settlement else Decimal("0")

    @property
    def refunded_credits(self) -> int:
        return self.settlement.refunded_credits if self.settlement else 0


@dataclass(frozen=True)
class GenerateOutcome:
    """Outcome of a front-door generate call."""

    success: bool
    error: LedgerErrorCode | None = None
    admission: AdmissionResult | None = None
    credits: int | None = None
    balance: Decimal | None = None
    required: Decimal | None = None
    remaining: int | None = None
    existing_farm_id: str | None = None

    def __post_init__(self) -> None:
        """Validate result consistency."""
        if self.success and self.admission is None:
            raise ValueError("Successful generate must carry an admission result")
        if not self.success and self.error is None:
            raise ValueError("Failed generate must carry an error code")

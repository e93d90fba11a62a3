"""
Pricing Engine - credits to currency via piecewise-linear unit-price tiers.

Pure and deterministic: the debit that creates a generation and the refund
that settles it both call price(), so any drift between calls would be a
financial bug. All arithmetic is Decimal, rounded half-up to cents.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
CREDIT_STEP = 5
BALANCE_SEARCH_CEILING = 500_000


@dataclass(frozen=True)
class PriceTier:
    """Anchor point: buying exactly `credits` costs `price`."""

    credits: int
    price: Decimal

    def __post_init__(self) -> None:
        if self.credits <= 0:
            raise ValueError(f"Tier credits must be positive: {self.credits}")
        if self.price <= 0:
            raise ValueError(f"Tier price must be positive: {self.price}")

    @property
    def unit_rate(self) -> Decimal:
        return self.price / Decimal(self.credits)


# Anchor prices (with 30% discount applied)
TIERS: tuple[PriceTier, ...] = (
    PriceTier(100, Decimal("5.36")),
    PriceTier(1000, Decimal("37.50")),
    PriceTier(5000, Decimal("160.71")),
    PriceTier(10000, Decimal("300.00")),
)


def to_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _unit_rate(credits: int, tiers: tuple[PriceTier, ...]) -> Decimal:
    lowest, highest = tiers[0], tiers[-1]
    if credits <= lowest.credits:
        return lowest.unit_rate
    if credits >= highest.credits:
        return highest.unit_rate

    for low, high in zip(tiers, tiers[1:]):
        if low.credits <= credits <= high.credits:
            t = Decimal(credits - low.credits) / Decimal(high.credits - low.credits)
            return low.unit_rate + t * (high.unit_rate - low.unit_rate)

    raise ValueError(f"Tiers are not ordered by credits: {tiers}")


def price(credits: int, tiers: tuple[PriceTier, ...] = TIERS) -> Decimal:
    """
    Cost of `credits` credits.

    Below the lowest and above the highest anchor the price is linear through
    the origin at that anchor's unit rate; between anchors the unit rate is
    interpolated by position and multiplied by credits.
    """
    if credits <= 0:
        return Decimal("0.00")
    return to_money(Decimal(credits) * _unit_rate(credits, tiers))


def price_per_100(credits: int) -> Decimal:
    """Effective price per 100 credits at this quantity (display only)."""
    if credits <= 0:
        return Decimal("0.00")
    return to_money(price(credits) / Decimal(credits) * 100)


def refund_for_shortfall(credits_requested: int, credits_delivered: int) -> Decimal:
    """
    Money owed back when only part of a wallet-funded generation was delivered.

    This is the cost differential, not a linear per-credit refund, because
    the unit rate depends on quantity.
    """
    delivered = min(max(credits_delivered, 0), credits_requested)
    return to_money(price(credits_requested) - price(delivered))


def credits_from_balance(balance: Decimal) -> int:
    """
    Largest multiple of 5 credits whose price fits in `balance`.

    UI estimate only; never used for settlement.
    """
    if balance <= 0:
        return 0

    lo, hi = 0, BALANCE_SEARCH_CEILING
    while lo + CREDIT_STEP < hi:
        mid = ((lo + hi) // 2 // CREDIT_STEP) * CREDIT_STEP
        if mid <= 0:
            lo = 0
            break
        if price(mid) <= balance:
            lo = mid
        else:
            hi = mid
    return lo


@dataclass(frozen=True)
class CreditPackage:
    """Fixed package shown on the storefront."""

    name: str
    credits: int
    price: Decimal
    discount: str | None


FIXED_PACKAGES: tuple[CreditPackage, ...] = tuple(
    CreditPackage(name=str(credits), credits=credits, price=price(credits), discount=discount)
    for credits, discount in (
        (100, None),
        (500, "10% off"),
        (1000, "20% off"),
        (2000, "30% off"),
        (5000, "40% off"),
        (10000, "44% off"),
    )
)


# ============================================================================
# Token upgrades
# ============================================================================

UPGRADE_STEP = 1000
DAILY_UPGRADE_RATE = Decimal("7.50")  # per 1000 credits of daily limit
PER_USE_UPGRADE_RATE = Decimal("15.00")  # per 1000 credits per use

# (minimum increment, discount percent), checked top-down
_DAILY_DISCOUNTS = ((30001, 25), (16000, 20), (9000, 15), (6000, 10), (3000, 5))
_PER_USE_DISCOUNTS = ((15000, 25), (10001, 20), (9000, 15), (6000, 10), (3000, 5))


def _discount_percent(increment: int, table: tuple[tuple[int, int], ...]) -> int:
    for threshold, percent in table:
        if increment >= threshold:
            return percent
    return 0


def upgrade_price(increment: int, daily: bool) -> Decimal:
    """Price of raising a token's daily_limit (daily=True) or credits_per_use by `increment`."""
    if increment <= 0 or increment % UPGRADE_STEP != 0:
        raise ValueError(f"Upgrade increment must be a positive multiple of {UPGRADE_STEP}")
    rate, table = (
        (DAILY_UPGRADE_RATE, _DAILY_DISCOUNTS) if daily else (PER_USE_UPGRADE_RATE, _PER_USE_DISCOUNTS)
    )
    gross = Decimal(increment) * rate / Decimal(UPGRADE_STEP)
    discount = Decimal(100 - _discount_percent(increment, table)) / Decimal(100)
    return to_money(gross * discount)

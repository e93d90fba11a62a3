"""
Order Service - PIX orders and their exactly-once side effects.

An order moves pending -> paid through one guarded UPDATE. Only the caller
that wins it applies the side effect (wallet credit, token upgrade or new
token); if that side effect fails the order is put back to pending so the
next webhook or reconciliation run retries. The wallet credit is keyed on
the order id, so even a replay after a crash credits once.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import Coupon, Order, Product, Token, utc_now
from app.exceptions import DataIntegrityError, ResourceNotFoundError
from app.models.api import DiscountType, LedgerErrorCode, OrderStatus, OrderType
from app.models.domain import CreditResult, PaidOrder, PaymentConfirmation, PixCharge
from app.observability.metrics import metrics
from app.services.ledger import LedgerService
from app.services.payment_provider import PaymentProvider, PixCustomer
from app.services.pricing import to_money, upgrade_price

logger = get_logger(__name__)

MIN_PIX_AMOUNT = Decimal("5.00")


@dataclass(frozen=True)
class OrderCreation:
    """A pending order with its PIX charge, or why it was refused."""

    success: bool
    order: Order | None = None
    charge: PixCharge | None = None
    error: LedgerErrorCode | None = None
    message: str | None = None


@dataclass(frozen=True)
class DepositClaim:
    """Outcome of attaching an anonymous paid deposit to a user."""

    success: bool
    error: LedgerErrorCode | None = None
    amount: Decimal | None = None
    credit: CreditResult | None = None


def apply_coupon(amount: Decimal, coupon: Coupon) -> Decimal:
    """Discount granted by a coupon, never more than the amount itself."""
    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        return to_money(amount * coupon.discount_value / Decimal(100))
    return to_money(min(coupon.discount_value, amount))


class OrderService:
    """Creates PIX orders and confirms them exactly once."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        self.session = session
        self.provider = provider
        self.ledger = LedgerService(session)

    # ========================================================================
    # Order creation
    # ========================================================================

    async def create_deposit(
        self,
        amount: Decimal,
        customer: PixCustomer,
        user_id: UUID | None = None,
        coupon_code: str | None = None,
    ) -> OrderCreation:
        """Create a wallet deposit charge; anonymous deposits are claimed later."""
        amount = to_money(amount)
        discount = Decimal("0.00")
        coupon_id: UUID | None = None

        if coupon_code:
            coupon = await self._find_usable_coupon(coupon_code)
            if coupon is None:
                return OrderCreation(
                    success=False,
                    error=LedgerErrorCode.INVALID_COUPON,
                    message="Coupon is invalid, expired or exhausted",
                )
            discount = apply_coupon(amount, coupon)
            if amount - discount < MIN_PIX_AMOUNT:
                return OrderCreation(
                    success=False,
                    error=LedgerErrorCode.INVALID_COUPON,
                    message=f"With this coupon the minimum deposit is {MIN_PIX_AMOUNT + discount}",
                )
            coupon_id = coupon.id

        final_amount = amount - discount
        order_id = uuid4()
        charge = await self.provider.create_pix_payment(final_amount, customer, f"deposit_{order_id}")

        order = Order(
            id=order_id,
            transaction_id=charge.transaction_id,
            status=OrderStatus.PENDING.value,
            order_type=OrderType.DEPOSIT.value,
            amount=final_amount,
            discount_amount=discount if discount > 0 else None,
            user_id=user_id,
            coupon_id=coupon_id,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_document=customer.document,
            pix_code=charge.pix_code,
            pix_expires_at=charge.expires_at,
        )
        await self._persist(order)

        logger.info(
            "deposit_order_created",
            order_id=str(order_id),
            user_id=str(user_id) if user_id else None,
            amount=str(final_amount),
            discount=str(discount),
        )
        return OrderCreation(success=True, order=order, charge=charge)

    async def create_order(
        self,
        order_type: OrderType,
        customer: PixCustomer,
        user_id: UUID | None = None,
        product_id: UUID | None = None,
        token_id: UUID | None = None,
        upgrade_increment: int | None = None,
    ) -> OrderCreation:
        """Create a token purchase or token upgrade charge."""
        if order_type == OrderType.TOKEN_PURCHASE:
            product = await self.session.get(Product, product_id) if product_id else None
            if product is None or not product.is_active:
                raise ResourceNotFoundError("Product", str(product_id))
            amount = product.price
        elif order_type in (OrderType.UPGRADE_DAILY, OrderType.UPGRADE_PER_USE):
            token = await self.session.get(Token, token_id) if token_id else None
            if token is None:
                raise ResourceNotFoundError("Token", str(token_id))
            if not upgrade_increment:
                raise ValueError("upgrade_increment is required for upgrade orders")
            amount = upgrade_price(upgrade_increment, daily=order_type == OrderType.UPGRADE_DAILY)
        else:
            raise ValueError(f"Use create_deposit for {order_type.value} orders")

        order_id = uuid4()
        charge = await self.provider.create_pix_payment(amount, customer, f"order_{order_id}")

        order = Order(
            id=order_id,
            transaction_id=charge.transaction_id,
            status=OrderStatus.PENDING.value,
            order_type=order_type.value,
            amount=amount,
            user_id=user_id,
            product_id=product_id if order_type == OrderType.TOKEN_PURCHASE else None,
            token_id=token_id if order_type != OrderType.TOKEN_PURCHASE else None,
            upgrade_increment=upgrade_increment if order_type != OrderType.TOKEN_PURCHASE else None,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_document=customer.document,
            pix_code=charge.pix_code,
            pix_expires_at=charge.expires_at,
        )
        await self._persist(order)

        logger.info(
            "order_created",
            order_id=str(order_id),
            order_type=order_type.value,
            amount=str(amount),
        )
        return OrderCreation(success=True, order=order, charge=charge)

    # ========================================================================
    # Confirmation
    # ========================================================================

    async def confirm_payment(self, order_id: UUID, source: str) -> PaymentConfirmation:
        """
        Mark an order paid and apply its side effect, exactly once.

        Losing the pending -> paid race is a success no-op (claimed=False).
        """
        paid_at = utc_now()
        row = (
            await self.session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
                .values(status=OrderStatus.PAID.value, paid_at=paid_at)
                .returning(
                    Order.order_type,
                    Order.amount,
                    Order.user_id,
                    Order.coupon_id,
                    Order.product_id,
                    Order.token_id,
                    Order.upgrade_increment,
                    Order.customer_name,
                )
                .execution_options(synchronize_session=False)
            )
        ).one_or_none()

        if row is None:
            await self.session.rollback()
            existing = await self.session.get(Order, order_id)
            order_type = OrderType(existing.order_type) if existing else OrderType.DEPOSIT
            logger.info("payment_already_confirmed", order_id=str(order_id), source=source)
            return PaymentConfirmation(order_id=order_id, claimed=False, order_type=order_type)

        await self.session.commit()
        paid = PaidOrder(
            order_id=order_id,
            order_type=OrderType(row.order_type),
            amount=row.amount,
            user_id=row.user_id,
            coupon_id=row.coupon_id,
            product_id=row.product_id,
            token_id=row.token_id,
            upgrade_increment=row.upgrade_increment,
            customer_name=row.customer_name,
        )
        order_type = paid.order_type

        try:
            confirmation = await self._apply_side_effect(paid)
        except Exception as e:
            await self._revert_claim(order_id, paid_at)
            metrics.record_error(type(e).__name__, "payment_side_effect")
            logger.error(
                "payment_side_effect_failed",
                order_id=str(order_id),
                order_type=order_type.value,
                source=source,
                error=str(e),
            )
            raise

        metrics.record_payment_confirmed(source, order_type.value)
        logger.info(
            "payment_confirmed",
            order_id=str(order_id),
            order_type=order_type.value,
            amount=str(paid.amount),
            source=source,
        )
        return confirmation

    async def confirm_by_transaction(self, transaction_id: str, source: str) -> PaymentConfirmation | None:
        """Re-verify with the provider, then confirm; None for unknown or unpaid orders."""
        order = (
            await self.session.execute(select(Order).where(Order.transaction_id == transaction_id))
        ).scalar_one_or_none()
        if order is None:
            logger.warning("payment_order_not_found", transaction_id=transaction_id, source=source)
            return None
        if order.status == OrderStatus.PAID.value:
            return PaymentConfirmation(
                order_id=order.id, claimed=False, order_type=OrderType(order.order_type)
            )

        status = await self.provider.get_payment_status(transaction_id)
        if not status.is_paid:
            logger.warning(
                "payment_not_confirmed_by_provider",
                transaction_id=transaction_id,
                status=status.status,
                source=source,
            )
            return None
        return await self.confirm_payment(order.id, source)

    async def refresh_status(self, order_id: UUID) -> Order:
        """Order status, confirming on the spot if the provider says it is paid."""
        order = await self.session.get(Order, order_id)
        if order is None:
            raise ResourceNotFoundError("Order", str(order_id))

        if order.status == OrderStatus.PENDING.value and order.transaction_id:
            status = await self.provider.get_payment_status(order.transaction_id)
            if status.is_paid:
                await self.confirm_payment(order_id, source="status_check")
                order = await self.session.get(Order, order_id, populate_existing=True)
                if order is None:
                    raise DataIntegrityError(f"Order {order_id} vanished after payment confirmation")
        return order

    async def claim_deposit(self, order_id: UUID, user_id: UUID) -> DepositClaim:
        """Attach a paid anonymous deposit to a user and credit their wallet."""
        amount = (
            await self.session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.user_id.is_(None),
                    Order.status == OrderStatus.PAID.value,
                    Order.order_type == OrderType.DEPOSIT.value,
                )
                .values(user_id=user_id)
                .returning(Order.amount)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()

        if amount is None:
            await self.session.rollback()
            return DepositClaim(success=False, error=LedgerErrorCode.ORDER_NOT_CLAIMABLE)
        await self.session.commit()

        credit = await self.ledger.credit_wallet(
            user_id, amount, description="PIX deposit (claimed)", reference_id=str(order_id)
        )
        logger.info(
            "deposit_claimed",
            order_id=str(order_id),
            user_id=str(user_id),
            amount=str(amount),
            already_credited=credit.already_credited,
        )
        return DepositClaim(success=True, amount=amount, credit=credit)

    async def list_reconcilable(self) -> list[Order]:
        """Pending orders past the webhook grace period but not too old to chase."""
        now = utc_now()
        result = await self.session.execute(
            select(Order)
            .where(
                Order.status == OrderStatus.PENDING.value,
                Order.transaction_id.is_not(None),
                Order.created_at < now - timedelta(minutes=settings.payment_grace_minutes),
                Order.created_at > now - timedelta(days=settings.payment_max_age_days),
            )
            .order_by(Order.created_at)
            .limit(settings.payment_reconcile_batch_size)
        )
        return list(result.scalars().all())

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _persist(self, order: Order) -> None:
        self.session.add(order)
        await self.session.flush()
        verified = await self.session.get(Order, order.id)
        if verified is None:
            raise DataIntegrityError(f"Order {order.id} not found after insert")
        await self.session.commit()

    async def _find_usable_coupon(self, code: str) -> Coupon | None:
        coupon = (
            await self.session.execute(
                select(Coupon).where(Coupon.code == code.strip().upper(), Coupon.is_active.is_(True))
            )
        ).scalar_one_or_none()
        if coupon is None:
            return None
        if coupon.expires_at is not None and coupon.expires_at < utc_now():
            return None
        if coupon.max_uses is not None and coupon.times_used >= coupon.max_uses:
            return None
        return coupon

    async def _apply_side_effect(self, paid: PaidOrder) -> PaymentConfirmation:
        order_id = paid.order_id
        order_type = paid.order_type
        if order_type == OrderType.DEPOSIT:
            credit: CreditResult | None = None
            if paid.user_id is not None:
                credit = await self.ledger.credit_wallet(
                    paid.user_id,
                    paid.amount,
                    description="PIX deposit",
                    reference_id=str(order_id),
                )
            if paid.coupon_id is not None:
                await self.session.execute(
                    update(Coupon)
                    .where(Coupon.id == paid.coupon_id)
                    .values(times_used=Coupon.times_used + 1)
                    .execution_options(synchronize_session=False)
                )
                await self.session.commit()
            return PaymentConfirmation(
                order_id=order_id,
                claimed=True,
                order_type=order_type,
                new_balance=credit.new_balance if credit else None,
                already_credited=credit.already_credited if credit else False,
            )

        if order_type in (OrderType.UPGRADE_DAILY, OrderType.UPGRADE_PER_USE):
            if paid.token_id is None or not paid.upgrade_increment:
                raise DataIntegrityError(f"Upgrade order {order_id} missing token or increment")
            column = Token.daily_limit if order_type == OrderType.UPGRADE_DAILY else Token.credits_per_use
            updated = (
                await self.session.execute(
                    update(Token)
                    .where(Token.id == paid.token_id)
                    .values({column: func.coalesce(column, 0) + paid.upgrade_increment})
                    .returning(Token.id)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one_or_none()
            if updated is None:
                raise DataIntegrityError(f"Token {paid.token_id} not found for upgrade")
            await self.session.commit()
            return PaymentConfirmation(
                order_id=order_id, claimed=True, order_type=order_type, token_id=updated
            )

        product = await self.session.get(Product, paid.product_id)
        if product is None:
            raise DataIntegrityError(f"Product {paid.product_id} not found for order {order_id}")
        token = Token(
            id=uuid4(),
            client_name=paid.customer_name,
            credits_per_use=product.credits_per_use,
            total_limit=product.total_limit,
            daily_limit=product.daily_limit,
            is_active=True,
            expires_at=utc_now() + timedelta(days=settings.token_purchase_validity_days),
        )
        self.session.add(token)
        await self.session.flush()
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(token_id=token.id)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return PaymentConfirmation(
            order_id=order_id, claimed=True, order_type=order_type, token_id=token.id
        )

    async def _revert_claim(self, order_id: UUID, paid_at: datetime) -> None:
        """Put a claimed order back to pending so the next run retries."""
        await self.session.rollback()
        await self.session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PAID.value,
                Order.paid_at == paid_at,
            )
            .values(status=OrderStatus.PENDING.value, paid_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        logger.warning("payment_claim_reverted", order_id=str(order_id))

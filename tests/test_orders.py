"""
Tests for OrderService: PIX orders, coupons and exactly-once confirmation.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.db.models import Order, Token
from app.exceptions import DataIntegrityError, ResourceNotFoundError
from app.models.api import LedgerErrorCode, OrderStatus, OrderType
from app.models.domain import CreditResult, PaidOrder, PaymentStatus
from app.services.orders import OrderService, apply_coupon
from app.services.pricing import upgrade_price
from conftest import (
    create_mock_coupon,
    create_mock_order,
    create_mock_product,
    create_mock_token,
    make_result,
)


def paid_row(
    order_type: OrderType = OrderType.DEPOSIT,
    amount: Decimal = Decimal("50.00"),
    user_id: UUID | None = None,
    coupon_id: UUID | None = None,
    product_id: UUID | None = None,
    token_id: UUID | None = None,
    upgrade_increment: int | None = None,
) -> SimpleNamespace:
    """Row returned by the pending -> paid claim."""
    return SimpleNamespace(
        order_type=order_type.value,
        amount=amount,
        user_id=user_id,
        coupon_id=coupon_id,
        product_id=product_id,
        token_id=token_id,
        upgrade_increment=upgrade_increment,
        customer_name="Maria Silva",
    )


@pytest.fixture
def orders(db_session: AsyncMock, payment_provider: MagicMock) -> OrderService:
    db_session.get = AsyncMock(return_value=MagicMock(spec=Order))
    return OrderService(db_session, payment_provider)


class TestApplyCoupon:
    def test_percentage(self):
        assert apply_coupon(Decimal("50.00"), create_mock_coupon(discount_value=Decimal("10"))) == Decimal("5.00")

    def test_fixed_capped_at_amount(self):
        coupon = create_mock_coupon(discount_type="fixed", discount_value=Decimal("20"))
        assert apply_coupon(Decimal("15.00"), coupon) == Decimal("15.00")
        assert apply_coupon(Decimal("50.00"), coupon) == Decimal("20.00")


class TestCreateDeposit:
    """Wallet deposits."""

    async def test_deposit_without_coupon(
        self, orders: OrderService, payment_provider: MagicMock, customer, db_session: AsyncMock
    ):
        user_id = uuid4()

        creation = await orders.create_deposit(Decimal("50"), customer, user_id=user_id)

        assert creation.success is True
        assert creation.charge.transaction_id == "tx_123"
        amount, payer, external_id = payment_provider.create_pix_payment.await_args.args
        assert amount == Decimal("50.00")
        assert payer is customer
        assert external_id == f"deposit_{creation.order.id}"
        assert creation.order.user_id == user_id
        assert creation.order.status == OrderStatus.PENDING.value
        db_session.commit.assert_awaited_once()

    async def test_coupon_discount_is_charged(self, orders: OrderService, payment_provider: MagicMock, customer):
        coupon = create_mock_coupon(discount_value=Decimal("10"))
        with patch.object(orders, "_find_usable_coupon", new_callable=AsyncMock, return_value=coupon):
            creation = await orders.create_deposit(Decimal("50"), customer, coupon_code="welcome10")

        assert creation.success is True
        assert payment_provider.create_pix_payment.await_args.args[0] == Decimal("45.00")
        assert creation.order.discount_amount == Decimal("5.00")
        assert creation.order.coupon_id == coupon.id

    async def test_unknown_coupon(self, orders: OrderService, payment_provider: MagicMock, customer):
        with patch.object(orders, "_find_usable_coupon", new_callable=AsyncMock, return_value=None):
            creation = await orders.create_deposit(Decimal("50"), customer, coupon_code="NOPE")

        assert creation.success is False
        assert creation.error == LedgerErrorCode.INVALID_COUPON
        payment_provider.create_pix_payment.assert_not_awaited()

    async def test_coupon_below_minimum_charge(self, orders: OrderService, payment_provider: MagicMock, customer):
        coupon = create_mock_coupon(discount_type="fixed", discount_value=Decimal("8"))
        with patch.object(orders, "_find_usable_coupon", new_callable=AsyncMock, return_value=coupon):
            creation = await orders.create_deposit(Decimal("10"), customer, coupon_code="BIG8")

        assert creation.success is False
        assert creation.error == LedgerErrorCode.INVALID_COUPON
        assert "13.00" in creation.message
        payment_provider.create_pix_payment.assert_not_awaited()


class TestFindUsableCoupon:
    async def test_exhausted(self, orders: OrderService, db_session: AsyncMock):
        coupon = create_mock_coupon(max_uses=5, times_used=5)
        db_session.execute = AsyncMock(return_value=make_result(scalar=coupon))

        assert await orders._find_usable_coupon("welcome10") is None

    async def test_expired(self, orders: OrderService, db_session: AsyncMock):
        coupon = create_mock_coupon(expires_at=datetime.now(UTC) - timedelta(days=1))
        db_session.execute = AsyncMock(return_value=make_result(scalar=coupon))

        assert await orders._find_usable_coupon("welcome10") is None

    async def test_usable(self, orders: OrderService, db_session: AsyncMock):
        coupon = create_mock_coupon(max_uses=5, times_used=4)
        db_session.execute = AsyncMock(return_value=make_result(scalar=coupon))

        assert await orders._find_usable_coupon("welcome10") is coupon


class TestCreateOrder:
    """Token purchases and upgrades."""

    async def test_token_purchase_uses_product_price(
        self, orders: OrderService, payment_provider: MagicMock, customer, db_session: AsyncMock
    ):
        product = create_mock_product(price=Decimal("99.90"))
        db_session.get = AsyncMock(side_effect=[product, MagicMock(spec=Order)])

        creation = await orders.create_order(OrderType.TOKEN_PURCHASE, customer, product_id=product.id)

        assert creation.order.amount == Decimal("99.90")
        assert creation.order.product_id == product.id
        assert payment_provider.create_pix_payment.await_args.args[2].startswith("order_")

    async def test_inactive_product(self, orders: OrderService, customer, db_session: AsyncMock):
        db_session.get = AsyncMock(return_value=create_mock_product(is_active=False))

        with pytest.raises(ResourceNotFoundError):
            await orders.create_order(OrderType.TOKEN_PURCHASE, customer, product_id=uuid4())

    async def test_upgrade_priced_server_side(self, orders: OrderService, customer, db_session: AsyncMock):
        token = create_mock_token()
        db_session.get = AsyncMock(side_effect=[token, MagicMock(spec=Order)])

        creation = await orders.create_order(
            OrderType.UPGRADE_DAILY, customer, token_id=token.id, upgrade_increment=3000
        )

        assert creation.order.amount == upgrade_price(3000, daily=True)
        assert creation.order.token_id == token.id
        assert creation.order.upgrade_increment == 3000

    async def test_upgrade_needs_increment(self, orders: OrderService, customer, db_session: AsyncMock):
        db_session.get = AsyncMock(return_value=create_mock_token())

        with pytest.raises(ValueError):
            await orders.create_order(OrderType.UPGRADE_PER_USE, customer, token_id=uuid4())

    async def test_deposit_type_rejected(self, orders: OrderService, customer):
        with pytest.raises(ValueError):
            await orders.create_order(OrderType.DEPOSIT, customer)


class TestConfirmPayment:
    """pending -> paid, exactly once."""

    async def test_deposit_credits_wallet_once(self, orders: OrderService, db_session: AsyncMock):
        order_id = uuid4()
        user_id = uuid4()
        db_session.execute = AsyncMock(return_value=make_result(one=paid_row(user_id=user_id)))

        with patch.object(
            orders.ledger,
            "credit_wallet",
            new_callable=AsyncMock,
            return_value=CreditResult(new_balance=Decimal("50.00")),
        ) as credit:
            confirmation = await orders.confirm_payment(order_id, source="webhook")

        assert confirmation.claimed is True
        assert confirmation.new_balance == Decimal("50.00")
        args, kwargs = credit.await_args
        assert args[0] == user_id
        assert args[1] == Decimal("50.00")
        assert kwargs["reference_id"] == str(order_id)

    async def test_side_effect_receives_claimed_order(self, orders: OrderService, db_session: AsyncMock):
        order_id = uuid4()
        token_id = uuid4()
        db_session.execute = AsyncMock(
            return_value=make_result(
                one=paid_row(order_type=OrderType.UPGRADE_DAILY, token_id=token_id, upgrade_increment=3000)
            )
        )

        with patch.object(orders, "_apply_side_effect", new_callable=AsyncMock) as side_effect:
            await orders.confirm_payment(order_id, source="reconcile")

        paid = side_effect.await_args.args[0]
        assert paid == PaidOrder(
            order_id=order_id,
            order_type=OrderType.UPGRADE_DAILY,
            amount=Decimal("50.00"),
            user_id=None,
            coupon_id=None,
            product_id=None,
            token_id=token_id,
            upgrade_increment=3000,
            customer_name="Maria Silva",
        )

    async def test_anonymous_deposit_waits_for_claim(self, orders: OrderService, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(one=paid_row()))

        with patch.object(orders.ledger, "credit_wallet", new_callable=AsyncMock) as credit:
            confirmation = await orders.confirm_payment(uuid4(), source="webhook")

        assert confirmation.claimed is True
        assert confirmation.new_balance is None
        credit.assert_not_awaited()

    async def test_coupon_use_counted(self, orders: OrderService, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(one=paid_row(coupon_id=uuid4())))

        await orders.confirm_payment(uuid4(), source="webhook")

        # claim + coupon counter
        assert db_session.execute.await_count == 2

    async def test_second_confirmation_is_noop(self, orders: OrderService, db_session: AsyncMock):
        existing = create_mock_order(status=OrderStatus.PAID)
        db_session.execute = AsyncMock(return_value=make_result(one=None))
        db_session.get = AsyncMock(return_value=existing)

        with patch.object(orders.ledger, "credit_wallet", new_callable=AsyncMock) as credit:
            confirmation = await orders.confirm_payment(existing.id, source="reconcile")

        assert confirmation.claimed is False
        credit.assert_not_awaited()
        db_session.rollback.assert_awaited_once()

    async def test_side_effect_failure_reverts_to_pending(self, orders: OrderService, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(one=paid_row(user_id=uuid4())))

        with patch.object(
            orders.ledger,
            "credit_wallet",
            new_callable=AsyncMock,
            side_effect=OperationalError("insert", {}, Exception("lost")),
        ):
            with pytest.raises(OperationalError):
                await orders.confirm_payment(uuid4(), source="webhook")

        # claim, then the revert UPDATE
        assert db_session.execute.await_count == 2
        db_session.rollback.assert_awaited_once()
        assert db_session.commit.await_count == 2

    async def test_upgrade_raises_token_limit(self, orders: OrderService, db_session: AsyncMock):
        token_id = uuid4()
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(
                    one=paid_row(
                        order_type=OrderType.UPGRADE_DAILY, token_id=token_id, upgrade_increment=3000
                    )
                ),
                make_result(scalar=token_id),
            ]
        )

        confirmation = await orders.confirm_payment(uuid4(), source="webhook")

        assert confirmation.claimed is True
        assert confirmation.token_id == token_id
        assert db_session.execute.await_count == 2

    async def test_token_purchase_creates_token(self, orders: OrderService, db_session: AsyncMock):
        product = create_mock_product()
        db_session.execute = AsyncMock(
            return_value=make_result(
                one=paid_row(order_type=OrderType.TOKEN_PURCHASE, product_id=product.id)
            )
        )
        db_session.get = AsyncMock(return_value=product)

        confirmation = await orders.confirm_payment(uuid4(), source="webhook")

        [token] = [c.args[0] for c in db_session.add.call_args_list if isinstance(c.args[0], Token)]
        assert token.credits_per_use == product.credits_per_use
        assert token.daily_limit == product.daily_limit
        assert token.client_name == "Maria Silva"
        assert token.expires_at is not None
        assert confirmation.token_id == token.id


class TestConfirmByTransaction:
    """Webhook entry point."""

    async def test_unknown_transaction(self, orders: OrderService, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(scalar=None))

        assert await orders.confirm_by_transaction("tx_unknown", source="webhook") is None

    async def test_already_paid(self, orders: OrderService, db_session: AsyncMock, payment_provider: MagicMock):
        order = create_mock_order(status=OrderStatus.PAID)
        db_session.execute = AsyncMock(return_value=make_result(scalar=order))

        confirmation = await orders.confirm_by_transaction("tx_123", source="webhook")

        assert confirmation.claimed is False
        payment_provider.get_payment_status.assert_not_awaited()

    async def test_provider_disagrees(self, orders: OrderService, db_session: AsyncMock, payment_provider: MagicMock):
        db_session.execute = AsyncMock(return_value=make_result(scalar=create_mock_order()))
        payment_provider.get_payment_status = AsyncMock(
            return_value=PaymentStatus(transaction_id="tx_123", status="pending")
        )

        with patch.object(orders, "confirm_payment", new_callable=AsyncMock) as confirm:
            assert await orders.confirm_by_transaction("tx_123", source="webhook") is None
        confirm.assert_not_awaited()

    async def test_verified_payment_is_confirmed(self, orders: OrderService, db_session: AsyncMock):
        order = create_mock_order()
        db_session.execute = AsyncMock(return_value=make_result(scalar=order))

        with patch.object(orders, "confirm_payment", new_callable=AsyncMock) as confirm:
            await orders.confirm_by_transaction("tx_123", source="webhook")

        confirm.assert_awaited_once_with(order.id, "webhook")


class TestRefreshStatus:
    """Order status with an on-the-spot provider check."""

    async def test_paid_order_is_reread(self, orders: OrderService, db_session: AsyncMock):
        pending = create_mock_order()
        paid = create_mock_order(order_id=pending.id, status=OrderStatus.PAID)
        db_session.get = AsyncMock(side_effect=[pending, paid])

        with patch.object(orders, "confirm_payment", new_callable=AsyncMock) as confirm:
            result = await orders.refresh_status(pending.id)

        assert result is paid
        confirm.assert_awaited_once_with(pending.id, source="status_check")

    async def test_order_gone_after_confirmation(self, orders: OrderService, db_session: AsyncMock):
        pending = create_mock_order()
        db_session.get = AsyncMock(side_effect=[pending, None])

        with patch.object(orders, "confirm_payment", new_callable=AsyncMock):
            with pytest.raises(DataIntegrityError):
                await orders.refresh_status(pending.id)


class TestClaimDeposit:
    """Attach an anonymous paid deposit."""

    async def test_claim_credits_wallet(self, orders: OrderService, db_session: AsyncMock):
        order_id = uuid4()
        user_id = uuid4()
        db_session.execute = AsyncMock(return_value=make_result(scalar=Decimal("50.00")))

        with patch.object(
            orders.ledger,
            "credit_wallet",
            new_callable=AsyncMock,
            return_value=CreditResult(new_balance=Decimal("80.00")),
        ) as credit:
            claim = await orders.claim_deposit(order_id, user_id)

        assert claim.success is True
        assert claim.amount == Decimal("50.00")
        assert credit.await_args.kwargs["reference_id"] == str(order_id)

    async def test_not_claimable(self, orders: OrderService, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(scalar=None))

        claim = await orders.claim_deposit(uuid4(), uuid4())

        assert claim.success is False
        assert claim.error == LedgerErrorCode.ORDER_NOT_CLAIMABLE
        db_session.rollback.assert_awaited_once()

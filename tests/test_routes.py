"""
Tests for API Routes.

Route handlers are exercised through the test client with the database,
farm, PIX provider and caller overridden; services are patched where the
route module imports them.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app.api.dependencies import UserIdentity
from app.exceptions import FarmServiceError, ResourceNotFoundError, WebhookVerificationError
from app.models.api import GenerationStatus, LedgerErrorCode, OrderType
from app.models.domain import (
    ActionOutcome,
    AdmissionResult,
    CapacitySnapshot,
    DeactivationResult,
    GenerateOutcome,
    GenerationView,
    PaymentConfirmation,
    PixCharge,
    SettlementOutcome,
)
from app.services.payment_provider import WebhookEvent
from conftest import create_mock_generation, create_mock_order, create_mock_wallet, make_result

CUSTOMER = {
    "customer_name": "Maria Silva",
    "customer_email": "maria@example.com",
    "customer_document": "12345678901",
}


def dispatched(credits: int = 1000) -> GenerateOutcome:
    return GenerateOutcome(
        success=True,
        admission=AdmissionResult(
            generation_id=uuid4(),
            farm_id="farm-new-001",
            status=GenerationStatus.WAITING_INVITE,
            queued=False,
            master_email="m@farm.io",
        ),
        credits=credits,
        balance=Decimal("62.50"),
    )


# ============================================================================
# Wallet-funded generation
# ============================================================================


class TestGenerateRoute:
    def test_dispatched(self, authenticated_client: TestClient, user_identity: UserIdentity):
        with patch("app.api.routes.OnDemandService") as service_cls:
            service_cls.return_value.generate = AsyncMock(return_value=dispatched())
            response = authenticated_client.post("/v1/generate", json={"credits": 1000})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["farm_id"] == "farm-new-001"
        assert data["master_email"] == "m@farm.io"
        assert Decimal(data["balance"]) == Decimal("62.50")
        assert service_cls.return_value.generate.await_args.args[:2] == (user_identity.user_id, 1000)

    def test_insufficient_balance_is_200(self, authenticated_client: TestClient):
        outcome = GenerateOutcome(
            success=False,
            error=LedgerErrorCode.INSUFFICIENT_BALANCE,
            balance=Decimal("5.00"),
            required=Decimal("37.50"),
        )
        with patch("app.api.routes.OnDemandService") as service_cls:
            service_cls.return_value.generate = AsyncMock(return_value=outcome)
            response = authenticated_client.post("/v1/generate", json={"credits": 1000})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "INSUFFICIENT_BALANCE"
        assert Decimal(data["required"]) == Decimal("37.50")

    def test_farm_failure_is_502(self, authenticated_client: TestClient):
        with patch("app.api.routes.OnDemandService") as service_cls:
            service_cls.return_value.generate = AsyncMock(
                side_effect=FarmServiceError("Farm create failed", status_code=500)
            )
            response = authenticated_client.post("/v1/generate", json={"credits": 1000})

        assert response.status_code == 502

    def test_database_failure_is_503(self, authenticated_client: TestClient):
        with patch("app.api.routes.OnDemandService") as service_cls:
            service_cls.return_value.generate = AsyncMock(
                side_effect=OperationalError("select", {}, Exception("down"))
            )
            response = authenticated_client.post("/v1/generate", json={"credits": 1000})

        assert response.status_code == 503

    @pytest.mark.parametrize("credits", [0, 7, 10005])
    def test_invalid_credits(self, authenticated_client: TestClient, credits: int):
        response = authenticated_client.post("/v1/generate", json={"credits": credits})
        assert response.status_code == 422

    def test_requires_auth(self, app, mock_db_dependency: dict):
        app.dependency_overrides.update(mock_db_dependency)
        try:
            response = TestClient(app).post("/v1/generate", json={"credits": 1000})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 401


class TestGenerationActions:
    """Cancel, refund-expired and status push on owned generations."""

    def test_cancel_own_generation(self, authenticated_client: TestClient, user_identity: UserIdentity):
        generation = create_mock_generation(user_id=user_identity.user_id)
        outcome = ActionOutcome(
            success=True,
            settlement=SettlementOutcome(
                generation_id=generation.id,
                settled=True,
                refund_amount=Decimal("18.21"),
                refunded_credits=600,
            ),
        )
        with patch("app.api.routes.GenerationLifecycle") as lifecycle_cls:
            lifecycle_cls.return_value.get_generation = AsyncMock(return_value=generation)
            lifecycle_cls.return_value.cancel = AsyncMock(return_value=outcome)
            response = authenticated_client.post(f"/v1/generate/{generation.farm_id}/cancel")

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["refund_amount"]) == Decimal("18.21")
        assert data["refunded_credits"] == 600

    def test_other_users_generation_is_404(self, authenticated_client: TestClient):
        generation = create_mock_generation(user_id=uuid4())
        with patch("app.api.routes.GenerationLifecycle") as lifecycle_cls:
            lifecycle_cls.return_value.get_generation = AsyncMock(return_value=generation)
            lifecycle_cls.return_value.cancel = AsyncMock()
            response = authenticated_client.post(f"/v1/generate/{generation.farm_id}/cancel")

        assert response.status_code == 404
        lifecycle_cls.return_value.cancel.assert_not_awaited()

    def test_unknown_generation_is_404(self, authenticated_client: TestClient):
        with patch("app.api.routes.GenerationLifecycle") as lifecycle_cls:
            lifecycle_cls.return_value.get_generation = AsyncMock(
                side_effect=ResourceNotFoundError("Generation", "farm-x")
            )
            response = authenticated_client.post("/v1/generate/farm-x/refund-expired")

        assert response.status_code == 404

    def test_refund_expired_refusal(self, authenticated_client: TestClient, user_identity: UserIdentity):
        generation = create_mock_generation(user_id=user_identity.user_id, credits_earned=200)
        with patch("app.api.routes.GenerationLifecycle") as lifecycle_cls:
            lifecycle_cls.return_value.get_generation = AsyncMock(return_value=generation)
            lifecycle_cls.return_value.refund_expired = AsyncMock(
                return_value=ActionOutcome(success=False, error=LedgerErrorCode.ALREADY_EARNED)
            )
            response = authenticated_client.post(f"/v1/generate/{generation.farm_id}/refund-expired")

        assert response.status_code == 200
        assert response.json()["error"] == "ALREADY_EARNED"

    def test_status_push(self, authenticated_client: TestClient, user_identity: UserIdentity):
        generation = create_mock_generation(user_id=user_identity.user_id)
        with patch("app.api.routes.GenerationLifecycle") as lifecycle_cls:
            lifecycle_cls.return_value.get_generation = AsyncMock(return_value=generation)
            lifecycle_cls.return_value.push_status = AsyncMock(return_value=ActionOutcome(success=True))
            response = authenticated_client.post(
                f"/v1/generate/{generation.farm_id}/status",
                json={"status": "running", "credits_earned": 150},
            )

        assert response.status_code == 200
        push = lifecycle_cls.return_value.push_status
        assert push.await_args.args[1] == "running"
        assert push.await_args.kwargs["credits_earned"] == 150


# ============================================================================
# Farm proxy
# ============================================================================


class TestFarmProxy:
    def test_status_poll(self, authenticated_client: TestClient):
        view = GenerationView(farm_id="farm-1", status="running", credits=1000, credits_earned=300)
        with patch("app.api.routes.GenerationLifecycle") as lifecycle_cls:
            lifecycle_cls.return_value.poll_status = AsyncMock(return_value=view)
            response = authenticated_client.get("/v1/farm/status/farm-1")

        assert response.status_code == 200
        assert response.json()["credits_earned"] == 300

    def test_dequeued_placeholder_reports_new_id(self, authenticated_client: TestClient):
        view = GenerationView(
            farm_id="queued-abc", status="waiting_invite", credits=500, new_farm_id="farm-real"
        )
        with patch("app.api.routes.GenerationLifecycle") as lifecycle_cls:
            lifecycle_cls.return_value.poll_status = AsyncMock(return_value=view)
            response = authenticated_client.get("/v1/farm/status/queued-abc")

        assert response.json()["new_farm_id"] == "farm-real"

    def test_unknown_farm_id(self, authenticated_client: TestClient):
        with patch("app.api.routes.GenerationLifecycle") as lifecycle_cls:
            lifecycle_cls.return_value.poll_status = AsyncMock(
                side_effect=ResourceNotFoundError("Generation", "farm-x")
            )
            response = authenticated_client.get("/v1/farm/status/farm-x")

        assert response.status_code == 404

    def test_stock_with_capacity(self, authenticated_client: TestClient):
        snapshot = CapacitySnapshot(running=3, waiting=1, creating=0, queued=2, ceiling=8)
        with patch("app.api.routes.AdmissionController") as admission_cls:
            admission_cls.return_value.capacity = AsyncMock(return_value=snapshot)
            response = authenticated_client.get("/v1/farm/stock")

        data = response.json()
        assert data["upstream_total"] == 40
        assert data["capacity"]["active"] == 4
        assert data["capacity"]["available"] == 4

    def test_stock_survives_farm_outage(self, authenticated_client: TestClient, farm: AsyncMock):
        farm.stock = AsyncMock(side_effect=FarmServiceError("down"))
        snapshot = CapacitySnapshot(running=0, waiting=0, creating=0, queued=0, ceiling=8)
        with patch("app.api.routes.AdmissionController") as admission_cls:
            admission_cls.return_value.capacity = AsyncMock(return_value=snapshot)
            response = authenticated_client.get("/v1/farm/stock")

        assert response.status_code == 200
        assert response.json()["upstream_total"] is None


# ============================================================================
# Tokens
# ============================================================================


class TestTokenRoutes:
    def test_token_generate_rejection(self, authenticated_client: TestClient):
        outcome = GenerateOutcome(success=False, error=LedgerErrorCode.COOLDOWN_ACTIVE)
        with patch("app.api.routes.AccessTokenService") as service_cls:
            service_cls.return_value.generate = AsyncMock(return_value=outcome)
            response = authenticated_client.post("/v1/tokens/tok_x/generate", json={})

        assert response.status_code == 200
        assert response.json()["error"] == "COOLDOWN_ACTIVE"

    def test_client_token_generate(self, authenticated_client: TestClient):
        with patch("app.api.routes.ClientTokenService") as service_cls:
            service_cls.return_value.generate = AsyncMock(return_value=dispatched(300))
            response = authenticated_client.post("/v1/client-tokens/ct_x/generate", json={"credits": 500})

        assert response.json()["credits"] == 300

    def test_deactivate_blocked(self, authenticated_client: TestClient):
        result = DeactivationResult(
            success=False,
            error=LedgerErrorCode.GENERATION_IN_PROGRESS,
            blocking_farm_ids=("farm-run",),
        )
        with patch("app.api.routes.ClientTokenService") as service_cls:
            service_cls.return_value.deactivate = AsyncMock(return_value=result)
            response = authenticated_client.post(f"/v1/client-tokens/{uuid4()}/deactivate")

        data = response.json()
        assert data["success"] is False
        assert "farm-run" in data["message"]

    def test_deactivate_refund(self, authenticated_client: TestClient):
        result = DeactivationResult(success=True, refund_amount=Decimal("37.50"))
        with patch("app.api.routes.ClientTokenService") as service_cls:
            service_cls.return_value.deactivate = AsyncMock(return_value=result)
            response = authenticated_client.post(f"/v1/client-tokens/{uuid4()}/deactivate")

        assert Decimal(response.json()["refund_amount"]) == Decimal("37.50")


# ============================================================================
# Wallet and payments
# ============================================================================


class TestWalletRoutes:
    def test_wallet_without_row(self, authenticated_client: TestClient, user_identity: UserIdentity):
        with patch("app.api.routes.LedgerService") as ledger_cls:
            ledger_cls.return_value.get_wallet = AsyncMock(return_value=None)
            response = authenticated_client.get("/v1/wallet")

        data = response.json()
        assert Decimal(data["balance"]) == Decimal("0")
        assert data["estimated_credits"] == 0
        assert data["transactions"] == []

    def test_wallet_estimates_credits(self, authenticated_client: TestClient, user_identity: UserIdentity):
        wallet = create_mock_wallet(user_id=user_identity.user_id, balance=Decimal("37.50"))
        with patch("app.api.routes.LedgerService") as ledger_cls:
            ledger_cls.return_value.get_wallet = AsyncMock(return_value=wallet)
            ledger_cls.return_value.list_transactions = AsyncMock(return_value=[])
            response = authenticated_client.get("/v1/wallet")

        assert response.json()["estimated_credits"] == 1000

    def test_create_deposit(self, authenticated_client: TestClient):
        order = create_mock_order(amount=Decimal("45.00"))
        order.discount_amount = Decimal("5.00")
        creation = MagicMock(success=True, order=order, charge=PixCharge("tx_123", "00020126pix"))
        with patch("app.api.routes.OrderService") as service_cls:
            service_cls.return_value.create_deposit = AsyncMock(return_value=creation)
            response = authenticated_client.post(
                "/v1/wallet/deposits",
                json={"amount": "50.00", "coupon_code": " welcome10 ", **CUSTOMER},
            )

        assert response.status_code == 201
        data = response.json()
        assert data["pix_code"] == "00020126pix"
        assert Decimal(data["discount_amount"]) == Decimal("5.00")
        assert service_cls.return_value.create_deposit.await_args.kwargs["coupon_code"] == "WELCOME10"

    def test_deposit_invalid_coupon(self, authenticated_client: TestClient):
        creation = MagicMock(success=False, message="Coupon expired")
        with patch("app.api.routes.OrderService") as service_cls:
            service_cls.return_value.create_deposit = AsyncMock(return_value=creation)
            response = authenticated_client.post(
                "/v1/wallet/deposits", json={"amount": "50.00", "coupon_code": "OLD", **CUSTOMER}
            )

        assert response.status_code == 422
        assert response.json()["detail"] == "Coupon expired"

    def test_deposit_below_minimum(self, authenticated_client: TestClient):
        response = authenticated_client.post("/v1/wallet/deposits", json={"amount": "1.00", **CUSTOMER})
        assert response.status_code == 422

    def test_order_rejects_deposit_type(self, authenticated_client: TestClient):
        response = authenticated_client.post("/v1/orders", json={"order_type": "deposit", **CUSTOMER})
        assert response.status_code == 422


class TestPixWebhook:
    """Webhook acknowledgement rules."""

    def test_bad_signature_is_401(self, authenticated_client: TestClient, payment_provider: MagicMock):
        payment_provider.verify_webhook.side_effect = WebhookVerificationError("Invalid signature")

        response = authenticated_client.post("/v1/webhooks/pix", content=b"{}")

        assert response.status_code == 401

    def test_other_events_ignored(self, authenticated_client: TestClient, payment_provider: MagicMock):
        payment_provider.verify_webhook.return_value = WebhookEvent("transaction.created", "tx_1")

        with patch("app.api.routes.OrderService") as service_cls:
            response = authenticated_client.post("/v1/webhooks/pix", content=b"{}")

        assert response.json()["message"] == "ignored"
        service_cls.assert_not_called()

    def test_unknown_order_is_noop(self, authenticated_client: TestClient, payment_provider: MagicMock):
        payment_provider.verify_webhook.return_value = WebhookEvent("transaction.paid", "tx_unknown")

        with patch("app.api.routes.OrderService") as service_cls:
            service_cls.return_value.confirm_by_transaction = AsyncMock(return_value=None)
            response = authenticated_client.post("/v1/webhooks/pix", content=b"{}")

        assert response.status_code == 200
        assert response.json()["message"] == "no-op"

    def test_paid_confirms(self, authenticated_client: TestClient, payment_provider: MagicMock):
        payment_provider.verify_webhook.return_value = WebhookEvent("transaction.paid", "tx_123")
        confirmation = PaymentConfirmation(order_id=uuid4(), claimed=True, order_type=OrderType.DEPOSIT)

        with patch("app.api.routes.OrderService") as service_cls:
            service_cls.return_value.confirm_by_transaction = AsyncMock(return_value=confirmation)
            response = authenticated_client.post(
                "/v1/webhooks/pix", content=b"{}", headers={"x-webhook-signature": "abc"}
            )

        assert response.json()["message"] == "confirmed"
        payment_provider.verify_webhook.assert_called_once_with(b"{}", "abc")
        service_cls.return_value.confirm_by_transaction.assert_awaited_once_with("tx_123", source="webhook")

    def test_replay_acknowledged(self, authenticated_client: TestClient, payment_provider: MagicMock):
        payment_provider.verify_webhook.return_value = WebhookEvent("transaction.paid", "tx_123")
        confirmation = PaymentConfirmation(order_id=uuid4(), claimed=False, order_type=OrderType.DEPOSIT)

        with patch("app.api.routes.OrderService") as service_cls:
            service_cls.return_value.confirm_by_transaction = AsyncMock(return_value=confirmation)
            response = authenticated_client.post("/v1/webhooks/pix", content=b"{}")

        assert response.json()["message"] == "already processed"


class TestHealth:
    def test_healthy(self, authenticated_client: TestClient, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(scalar=1))

        response = authenticated_client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_database_down(self, authenticated_client: TestClient, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("down")))

        response = authenticated_client.get("/health")

        assert response.status_code == 503

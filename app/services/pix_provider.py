"""
PIX Payment Provider - implementation of the PaymentProvider protocol.

Talks to the PIX gateway REST API with a bearer key and verifies webhook
HMAC signatures. Whenever a webhook secret is configured the signature is
mandatory; an unsigned request is rejected, not waved through.
"""

import hashlib
import hmac
import json
from datetime import datetime
from decimal import Decimal

import httpx
from structlog import get_logger

from app.config import settings
from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.models.domain import PaymentStatus, PixCharge
from app.services.payment_provider import PixCustomer, WebhookEvent

logger = get_logger(__name__)


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _parse_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("pix_invalid_expiry", value=value)
        return None


class PixProvider:
    """
    PIX gateway client.

    All HTTP errors surface as PaymentProviderError; callers decide whether
    to retry (the reconciliation sweep simply tries again next run).
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.pix_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.pix_api_key
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.pix_webhook_secret
        )
        self.timeout = timeout or settings.pix_api_timeout_seconds
        self._transport = transport

    async def _make_request(self, method: str, endpoint: str, **kwargs: object) -> dict[str, object]:
        """Make authenticated request to the gateway."""
        if not self.api_key:
            raise PaymentProviderError("PIX API key not configured")

        url = f"{self.base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, **kwargs)  # type: ignore[arg-type]
        except httpx.HTTPError as e:
            logger.error("pix_request_failed", endpoint=endpoint, error=str(e))
            raise PaymentProviderError(f"PIX gateway unreachable: {e}") from e

        if response.status_code == 401:
            raise PaymentProviderError("Invalid API credentials")
        elif response.status_code == 404:
            raise PaymentProviderError("Transaction not found")
        elif response.status_code >= 400:
            logger.error(
                "pix_api_error",
                status=response.status_code,
                error=response.text[:500],
            )
            raise PaymentProviderError(f"API error: {response.status_code}")

        try:
            result = response.json()
        except ValueError as e:
            raise PaymentProviderError("PIX gateway returned invalid JSON") from e
        return result if isinstance(result, dict) else {}

    async def create_pix_payment(
        self, amount: Decimal, customer: PixCustomer, external_id: str
    ) -> PixCharge:
        """Create a PIX charge for `amount`."""
        data = await self._make_request(
            "POST",
            "/payments",
            json={
                "amount": float(amount),
                "payment_method": "pix",
                "customer": {
                    "name": customer.name,
                    "email": customer.email,
                    "document": customer.document,
                },
                "external_id": external_id,
            },
        )

        transaction_id = data.get("transaction_id")
        if not transaction_id:
            error = data.get("error") or "missing transaction_id"
            logger.error("pix_charge_rejected", external_id=external_id, error=str(error))
            raise PaymentProviderError(f"Charge not created: {error}")

        pix = data.get("pix")
        pix_code = pix.get("qr_code") if isinstance(pix, dict) else None

        charge = PixCharge(
            transaction_id=str(transaction_id),
            pix_code=str(pix_code or ""),
            expires_at=_parse_datetime(data.get("expires_at")),
        )
        logger.info(
            "pix_charge_created",
            transaction_id=charge.transaction_id,
            external_id=external_id,
            amount=str(amount),
        )
        return charge

    async def get_payment_status(self, transaction_id: str) -> PaymentStatus:
        """Read a charge's status straight from the gateway."""
        data = await self._make_request("GET", f"/payments/{transaction_id}")

        inner = data.get("data")
        inner = inner if isinstance(inner, dict) else {}
        status = inner.get("status") or data.get("status") or "unknown"
        paid_flag = data.get("paid") is True or inner.get("paid") is True

        return PaymentStatus(
            transaction_id=transaction_id,
            status=str(status),
            paid_flag=paid_flag,
        )

    def verify_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """Check the HMAC (when a secret is configured) and parse the event."""
        if self.webhook_secret:
            if not signature:
                logger.warning("pix_webhook_signature_missing")
                raise WebhookVerificationError("Missing signature")
            expected = compute_signature(payload, self.webhook_secret)
            if not hmac.compare_digest(expected, signature.strip().lower()):
                logger.warning("pix_webhook_signature_invalid")
                raise WebhookVerificationError("Invalid signature")
        else:
            logger.warning("pix_webhook_unsigned", reason="no webhook secret configured")

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid JSON payload: {e}") from e
        if not isinstance(body, dict):
            raise WebhookVerificationError("Webhook payload must be an object")

        data = body.get("data")
        transaction_id = (data.get("transaction_id") if isinstance(data, dict) else None) or body.get(
            "transaction_id"
        )
        return WebhookEvent(
            event_type=str(body.get("event") or ""),
            transaction_id=str(transaction_id) if transaction_id else None,
        )

"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from app.models.domain import PaymentStatus, PixCharge


@dataclass(frozen=True)
class PixCustomer:
    """
    Payer details sent with a PIX charge.

    document is the CPF/CNPJ with punctuation stripped.
    """

    name: str
    email: str
    document: str

    def __post_init__(self) -> None:
        """Validate customer data."""
        if not self.name:
            raise ValueError("Customer name cannot be empty")
        if not self.document.isdigit():
            raise ValueError("Customer document must contain digits only")


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    Only the fields the ledger acts on are kept.
    """

    event_type: str
    transaction_id: str | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any PIX provider must implement this interface so order handling stays
    provider-agnostic.
    """

    async def create_pix_payment(
        self, amount: Decimal, customer: PixCustomer, external_id: str
    ) -> PixCharge:
        """
        Create a PIX charge with the provider.

        Args:
            amount: Amount in currency units (already discounted)
            customer: Payer details
            external_id: Our correlation id for the charge

        Returns:
            Charge with provider transaction id, copy-paste code and expiry

        Raises:
            PaymentProviderError: If charge creation fails
        """
        ...

    async def get_payment_status(self, transaction_id: str) -> PaymentStatus:
        """
        Query the provider for the current status of a charge.

        Raises:
            PaymentProviderError: If the provider cannot be reached
        """
        ...

    def verify_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        """
        Verify and parse a webhook notification.

        Args:
            payload: Raw request body, exactly as received
            signature: Signature header value, if any

        Returns:
            Parsed webhook event

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...

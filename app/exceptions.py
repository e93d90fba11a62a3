"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Expected business outcomes (insufficient balance, exhausted credits, caps
reached) are NOT exceptions - they are returned as result dataclasses from
app.models.domain. These classes cover infrastructure and integration failures.
"""

from app.config import ConfigurationError


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class WriteVerificationError(LedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class DatabaseError(LedgerError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class FarmServiceError(LedgerError):
    """Raised when the external farm API is unreachable or returns non-2xx."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        suffix = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"Farm service error: {message}{suffix}")


class PaymentProviderError(LedgerError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(LedgerError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class AuthenticationError(LedgerError):
    """Raised when authentication fails (missing or invalid bearer token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(LedgerError):
    """Raised when caller lacks required permissions."""

    def __init__(self, required_permission: str) -> None:
        self.required_permission = required_permission
        super().__init__(f"Authorization failed: missing permission {required_permission}")


class ResourceNotFoundError(LedgerError):
    """Raised when a generation, token or order does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class InvalidStatusError(LedgerError):
    """Raised when a status string is outside the generation allow-list."""

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(f"Invalid generation status: {status}")


__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "ConfigurationError",
    "DataIntegrityError",
    "DatabaseError",
    "FarmServiceError",
    "InvalidStatusError",
    "LedgerError",
    "PaymentProviderError",
    "ResourceNotFoundError",
    "WebhookVerificationError",
    "WriteVerificationError",
]

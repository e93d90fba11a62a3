"""
FastAPI Dependencies - Authentication, authorization and collaborators.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from dataclasses import dataclass
from uuid import UUID

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from app.config import settings
from app.exceptions import AuthenticationError
from app.services.farm_client import FarmClient
from app.services.payment_provider import PaymentProvider
from app.services.pix_provider import PixProvider

logger = get_logger(__name__)

ADMIN_ROLE = "admin"

# ============================================================================
# User JWT Authentication
# ============================================================================


@dataclass
class UserIdentity:
    """Authenticated caller from an HS256 bearer token."""

    user_id: UUID
    email: str | None = None
    role: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_identity(token: str) -> UserIdentity:
    """
    Verify a bearer token and extract the caller.

    The `sub` claim must be the user's UUID; `role` is optional.

    Raises:
        AuthenticationError: bad signature, expired token or malformed claims
    """
    if not settings.jwt_secret:
        raise AuthenticationError("JWT secret not configured")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}") from e

    try:
        user_id = UUID(str(payload["sub"]))
    except (KeyError, ValueError) as e:
        raise AuthenticationError("Invalid token: sub must be a user id") from e

    return UserIdentity(user_id=user_id, email=payload.get("email"), role=payload.get("role"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    Require an authenticated user.

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_identity(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("user_auth_failed", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity | None:
    """
    Optional authentication - returns None if no token provided.

    Used by anonymous deposits. A token that is present but invalid is
    still rejected.
    """
    if credentials is None:
        return None
    return await get_current_user(credentials)


async def require_admin(user: UserIdentity = Depends(get_current_user)) -> UserIdentity:
    """
    Require the admin role.

    Raises:
        HTTPException(403): If the caller is not an admin
    """
    if not user.is_admin:
        logger.warning("admin_auth_insufficient_role", user_id=str(user.user_id), role=user.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


# ============================================================================
# Cron secret OR admin JWT (for sweep endpoints)
# ============================================================================


@dataclass
class JobCaller:
    """Who triggered a sweep."""

    auth_type: str  # "cron" or "jwt"
    user: UserIdentity | None = None


async def require_cron_or_admin(
    x_cron_secret: str | None = Header(None, description="Shared sweep secret"),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> JobCaller:
    """
    Accept either the shared cron secret or an admin bearer token.

    Priority:
    1. If X-Cron-Secret header is present, compare it in constant time
    2. Otherwise require an admin JWT
    """
    if x_cron_secret:
        if settings.cron_secret and hmac.compare_digest(x_cron_secret, settings.cron_secret):
            return JobCaller(auth_type="cron")
        logger.warning("cron_secret_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )

    user = await get_current_user(credentials)
    return JobCaller(auth_type="jwt", user=await require_admin(user))


# ============================================================================
# External collaborators
# ============================================================================


def get_farm_client() -> FarmClient:
    """Farm API client built from settings (overridden in tests)."""
    return FarmClient()


def get_payment_provider() -> PaymentProvider:
    """PIX provider built from settings (overridden in tests)."""
    return PixProvider()

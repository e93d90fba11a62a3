"""
Tests for API Dependencies.

Tests JWT authentication, the admin role check and the sweep caller check.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from app.api.dependencies import (
    UserIdentity,
    decode_identity,
    get_current_user,
    get_optional_user,
    require_admin,
    require_cron_or_admin,
)
from app.config import settings
from app.exceptions import AuthenticationError


def make_token(sub: object = None, role: str | None = None, expires_in: int = 3600, secret: str | None = None) -> str:
    claims: dict[str, object] = {
        "sub": str(sub or uuid4()),
        "email": "user@example.com",
        "exp": datetime.now(UTC) + timedelta(seconds=expires_in),
    }
    if role:
        claims["role"] = role
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm="HS256")


def bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestUserIdentity:
    def test_admin_role(self):
        assert UserIdentity(user_id=uuid4(), role="admin").is_admin is True

    def test_no_role(self):
        assert UserIdentity(user_id=uuid4()).is_admin is False


class TestDecodeIdentity:
    """HS256 bearer tokens."""

    def test_valid_token(self):
        user_id = uuid4()

        identity = decode_identity(make_token(user_id, role="admin"))

        assert identity.user_id == user_id
        assert identity.email == "user@example.com"
        assert identity.is_admin is True

    def test_expired(self):
        with pytest.raises(AuthenticationError, match="expired"):
            decode_identity(make_token(expires_in=-60))

    def test_wrong_secret(self):
        with pytest.raises(AuthenticationError):
            decode_identity(make_token(secret="another-secret-that-is-long-enough-for-hs256"))

    def test_sub_must_be_uuid(self):
        with pytest.raises(AuthenticationError, match="sub"):
            decode_identity(make_token(sub="not-a-uuid"))

    def test_garbage(self):
        with pytest.raises(AuthenticationError):
            decode_identity("not.a.jwt")


class TestGetCurrentUser:
    async def test_missing_header(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None)

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    async def test_invalid_token(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(bearer("garbage"))
        assert exc_info.value.status_code == 401

    async def test_valid_token(self):
        user_id = uuid4()
        identity = await get_current_user(bearer(make_token(user_id)))
        assert identity.user_id == user_id


class TestGetOptionalUser:
    async def test_anonymous(self):
        assert await get_optional_user(None) is None

    async def test_invalid_token_still_rejected(self):
        with pytest.raises(HTTPException):
            await get_optional_user(bearer("garbage"))


class TestRequireAdmin:
    async def test_admin_passes(self, admin_identity: UserIdentity):
        assert await require_admin(admin_identity) is admin_identity

    async def test_non_admin_forbidden(self, user_identity: UserIdentity):
        with pytest.raises(HTTPException) as exc_info:
            await require_admin(user_identity)
        assert exc_info.value.status_code == 403


class TestRequireCronOrAdmin:
    """Sweep endpoints accept the cron secret or an admin JWT."""

    async def test_cron_secret(self):
        caller = await require_cron_or_admin(x_cron_secret=settings.cron_secret, credentials=None)
        assert caller.auth_type == "cron"
        assert caller.user is None

    async def test_wrong_cron_secret(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_cron_or_admin(x_cron_secret="wrong", credentials=None)
        assert exc_info.value.status_code == 401

    async def test_admin_jwt(self):
        caller = await require_cron_or_admin(
            x_cron_secret=None, credentials=bearer(make_token(role="admin"))
        )
        assert caller.auth_type == "jwt"
        assert caller.user is not None and caller.user.is_admin

    async def test_user_jwt_forbidden(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_cron_or_admin(x_cron_secret=None, credentials=bearer(make_token()))
        assert exc_info.value.status_code == 403

    async def test_nothing_supplied(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_cron_or_admin(x_cron_secret=None, credentials=None)
        assert exc_info.value.status_code == 401

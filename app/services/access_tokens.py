"""
Access Token Service - admin-issued token policies and their front door.

A Token is a quota policy, not a balance: reserve_credits derives usage by
summing the token's generations, so there is no counter to refund.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import Generation, Token, utc_now
from app.exceptions import ResourceNotFoundError, WriteVerificationError
from app.models.api import GenerationStatus, LedgerErrorCode
from app.models.domain import GenerateOutcome, TokenUsageSnapshot
from app.observability.metrics import metrics
from app.services.admission import AdmissionController, new_placeholder_farm_id
from app.services.farm_client import FarmClient
from app.services.ledger import LedgerService

logger = get_logger(__name__)

ENTRY_POINT = "admin_token"


@dataclass(frozen=True)
class TokenValidation:
    """Token lookup plus its derived usage."""

    valid: bool
    token: Token | None = None
    error: LedgerErrorCode | None = None
    usage: TokenUsageSnapshot | None = None

    @property
    def daily_limit_reached(self) -> bool:
        return self.usage is not None and self.usage.remaining_daily == 0


class AccessTokenService:
    """Validation, generation and admin management of access tokens."""

    def __init__(self, session: AsyncSession, farm: FarmClient | None = None) -> None:
        self.session = session
        self.ledger = LedgerService(session)
        self.farm = farm

    async def get_by_secret(self, secret: str) -> Token | None:
        result = await self.session.execute(select(Token).where(Token.token == secret))
        return result.scalar_one_or_none()

    async def validate(self, secret: str) -> TokenValidation:
        """Check a token and report how much of its quota is left."""
        token = await self.get_by_secret(secret)
        if token is None:
            return TokenValidation(valid=False, error=LedgerErrorCode.TOKEN_NOT_FOUND)
        if not token.is_active:
            return TokenValidation(valid=False, token=token, error=LedgerErrorCode.TOKEN_INACTIVE)

        now = utc_now()
        if token.expires_at is not None and token.expires_at <= now:
            return TokenValidation(valid=False, token=token, error=LedgerErrorCode.TOKEN_EXPIRED)

        usage = await self.ledger.token_usage(token, now)
        if usage.remaining_total == 0:
            return TokenValidation(
                valid=False, token=token, error=LedgerErrorCode.TOTAL_LIMIT_REACHED, usage=usage
            )
        return TokenValidation(valid=True, token=token, usage=usage)

    async def generate(
        self,
        secret: str,
        credits: int | None = None,
        client_ip: str | None = None,
    ) -> GenerateOutcome:
        """
        Reserve against the token policy and dispatch or queue.

        The request is capped at the token's credits_per_use and the global
        per-generation maximum.
        """
        if self.farm is None:
            raise RuntimeError("AccessTokenService.generate requires a farm client")

        token = await self.get_by_secret(secret)
        if token is None:
            metrics.record_generation(ENTRY_POINT, "rejected")
            return GenerateOutcome(success=False, error=LedgerErrorCode.TOKEN_NOT_FOUND)

        requested = min(
            credits or token.credits_per_use,
            token.credits_per_use,
            settings.max_credits_per_generation,
        )
        placeholder = new_placeholder_farm_id()

        reserve = await self.ledger.reserve_credits(
            token.id,
            placeholder,
            requested,
            status=GenerationStatus.CREATING,
            client_name=token.client_name,
            client_ip=client_ip,
        )
        if not reserve.success:
            metrics.record_generation(ENTRY_POINT, "rejected")
            logger.info(
                "token_generation_rejected",
                token_id=str(token.id),
                error=reserve.error.value if reserve.error else None,
            )
            return GenerateOutcome(
                success=False,
                error=reserve.error,
                remaining=(
                    reserve.remaining_daily
                    if reserve.error == LedgerErrorCode.DAILY_LIMIT_REACHED
                    else reserve.remaining_total
                ),
            )

        generation = await self.session.get(Generation, reserve.generation_id)
        if generation is None:
            raise WriteVerificationError(f"Generation {reserve.generation_id} vanished after reserve")

        admission = await AdmissionController(self.session, self.farm).admit_or_refund(generation)

        metrics.record_generation(ENTRY_POINT, "queued" if admission.queued else "dispatched")
        logger.info(
            "token_generation_started",
            token_id=str(token.id),
            generation_id=str(admission.generation_id),
            farm_id=admission.farm_id,
            credits=requested,
            queued=admission.queued,
        )
        remaining = [r for r in (reserve.remaining_total, reserve.remaining_daily) if r is not None]
        return GenerateOutcome(
            success=True,
            admission=admission,
            credits=requested,
            remaining=min(remaining) if remaining else None,
        )

    # ========================================================================
    # Admin management
    # ========================================================================

    async def create_token(
        self,
        client_name: str,
        credits_per_use: int,
        total_limit: int | None = None,
        daily_limit: int | None = None,
        expires_at: datetime | None = None,
        cooldown_minutes: int | None = None,
        warning_message: str | None = None,
        created_by: UUID | None = None,
    ) -> Token:
        """Issue a new token policy."""
        token = Token(
            id=uuid4(),
            client_name=client_name,
            credits_per_use=credits_per_use,
            total_limit=total_limit,
            daily_limit=daily_limit,
            expires_at=expires_at,
            cooldown_minutes=cooldown_minutes,
            warning_message=warning_message,
            created_by=created_by,
            is_active=True,
        )
        self.session.add(token)
        await self.session.flush()

        verified = await self.session.get(Token, token.id)
        if verified is None:
            raise WriteVerificationError(f"Token {token.id} not found after insert")
        await self.session.commit()

        logger.info(
            "access_token_created",
            token_id=str(token.id),
            client_name=client_name,
            credits_per_use=credits_per_use,
            created_by=str(created_by) if created_by else None,
        )
        return token

    async def toggle(self, token_id: UUID) -> Token:
        """Flip a token's active flag."""
        token = (
            await self.session.execute(
                update(Token)
                .where(Token.id == token_id)
                .values(is_active=~Token.is_active)
                .returning(Token)
                .execution_options(synchronize_session=False, populate_existing=True)
            )
        ).scalar_one_or_none()
        if token is None:
            await self.session.rollback()
            raise ResourceNotFoundError("Token", str(token_id))
        await self.session.commit()

        logger.info("access_token_toggled", token_id=str(token_id), is_active=token.is_active)
        return token

    async def list_tokens(self) -> list[Token]:
        result = await self.session.execute(select(Token).order_by(Token.created_at.desc()))
        return list(result.scalars().all())

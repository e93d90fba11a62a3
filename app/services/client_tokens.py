"""
Client Token Service - reseller sub-tokens and their front door.

A ClientToken is a prepaid credit balance bought with wallet money:
remaining = total_credits - credits_used. Generations draw from it with
use_client_token_credits and settlement returns undelivered credits.
Deactivation hands the unused value back to the reseller's wallet at
price(remaining).
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import ClientToken, Generation, utc_now
from app.exceptions import DatabaseError, FarmServiceError, ResourceNotFoundError
from app.models.api import GenerationStatus, LedgerErrorCode
from app.models.domain import (
    ActionOutcome,
    DeactivationResult,
    GenerateOutcome,
    GenerationView,
)
from app.observability.metrics import metrics
from app.services.admission import AdmissionController, is_placeholder, new_placeholder_farm_id
from app.services.farm_client import FarmClient
from app.services.generations import GenerationService
from app.services.ledger import LedgerService
from app.services.lifecycle import GenerationLifecycle
from app.services.pricing import price
from app.services.settlement import SettlementService

logger = get_logger(__name__)

ENTRY_POINT = "client_token"


@dataclass(frozen=True)
class MintResult:
    """Outcome of buying a client token with wallet balance."""

    success: bool
    error: LedgerErrorCode | None = None
    client_token: ClientToken | None = None
    cost: Decimal | None = None
    balance: Decimal | None = None


@dataclass(frozen=True)
class ClientTokenValidation:
    """Client token lookup with its remaining credits and active generation."""

    valid: bool
    error: LedgerErrorCode | None = None
    token: ClientToken | None = None
    active_farm_id: str | None = None

    @property
    def has_active_generation(self) -> bool:
        return self.active_farm_id is not None


class ClientTokenService:
    """Mint, validate, generate and deactivate reseller sub-tokens."""

    def __init__(self, session: AsyncSession, farm: FarmClient) -> None:
        self.session = session
        self.farm = farm
        self.ledger = LedgerService(session)
        self.generations = GenerationService(session)

    # ========================================================================
    # Reseller operations
    # ========================================================================

    async def mint(self, owner_id: UUID, credits: int) -> MintResult:
        """Debit price(credits) from the owner's wallet and create the token."""
        cost = price(credits)
        token_id = uuid4()

        debit = await self.ledger.debit_wallet(
            owner_id,
            cost,
            credits,
            description=f"Client link: {credits} credits",
            reference_id=f"client_token_{token_id}",
        )
        if not debit.success:
            return MintResult(
                success=False,
                error=LedgerErrorCode.INSUFFICIENT_BALANCE,
                cost=cost,
                balance=debit.balance,
            )

        token = ClientToken(
            id=token_id,
            owner_id=owner_id,
            total_credits=credits,
            credits_used=0,
            is_active=True,
        )
        self.session.add(token)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            await self.ledger.credit_wallet(
                owner_id,
                cost,
                description=f"Refund: client link of {credits} credits could not be created",
                reference_id=f"client_token_{token_id}",
            )
            logger.error("client_token_insert_failed", owner_id=str(owner_id), error=str(e))
            raise DatabaseError(f"Failed to create client token: {e}") from e

        logger.info(
            "client_token_minted",
            client_token_id=str(token_id),
            owner_id=str(owner_id),
            credits=credits,
            cost=str(cost),
        )
        return MintResult(success=True, client_token=token, cost=cost, balance=debit.new_balance)

    async def list_for_owner(self, owner_id: UUID) -> list[ClientToken]:
        result = await self.session.execute(
            select(ClientToken)
            .where(ClientToken.owner_id == owner_id)
            .order_by(ClientToken.created_at.desc())
        )
        return list(result.scalars().all())

    async def deactivate(self, owner_id: UUID, client_token_id: UUID) -> DeactivationResult:
        """
        Retire a token and refund its unused value to the owner's wallet.

        Refused while a generation is running or was only just started.
        Pending generations are settled as cancelled first, which returns
        their credits to the token before the remaining value is priced.
        """
        token = await self.session.get(ClientToken, client_token_id)
        if token is None or token.owner_id != owner_id:
            raise ResourceNotFoundError("ClientToken", str(client_token_id))
        if not token.is_active:
            return DeactivationResult(success=False, error=LedgerErrorCode.TOKEN_INACTIVE)

        now = utc_now()
        fresh_since = now - timedelta(minutes=settings.waiting_invite_timeout_minutes)
        pending = await self.generations.active_for_client_token(client_token_id)
        blocking = tuple(
            g.farm_id
            for g in pending
            if g.status == GenerationStatus.RUNNING.value
            or (
                g.status
                in (GenerationStatus.WAITING_INVITE.value, GenerationStatus.CREATING.value)
                and g.created_at > fresh_since
            )
        )
        if blocking:
            return DeactivationResult(
                success=False,
                error=LedgerErrorCode.GENERATION_IN_PROGRESS,
                blocking_farm_ids=blocking,
            )

        settlement = SettlementService(self.session)
        settled = 0
        refunded_credits = 0
        for generation_id, farm_id, status in [(g.id, g.farm_id, g.status) for g in pending]:
            if status == GenerationStatus.WAITING_INVITE.value and not is_placeholder(farm_id):
                try:
                    await self.farm.cancel(farm_id)
                except FarmServiceError as e:
                    logger.warning("client_token_farm_cancel_failed", farm_id=farm_id, error=e.message)
            outcome = await settlement.settle(
                generation_id,
                final_status=GenerationStatus.CANCELLED,
                error_message="Client link deactivated",
                reason="client_token_deactivated",
            )
            if outcome.settled:
                settled += 1
                refunded_credits += outcome.refunded_credits

        remaining = (
            await self.session.execute(
                update(ClientToken)
                .where(ClientToken.id == client_token_id, ClientToken.is_active.is_(True))
                .values(is_active=False)
                .returning(ClientToken.total_credits - ClientToken.credits_used)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if remaining is None:
            await self.session.rollback()
            return DeactivationResult(success=False, error=LedgerErrorCode.TOKEN_INACTIVE)
        await self.session.commit()

        refund_amount = price(int(remaining))
        if refund_amount > 0:
            try:
                await self.ledger.credit_wallet(
                    owner_id,
                    refund_amount,
                    description=f"Client link refund: {remaining} unused credits",
                    reference_id=f"client_token_refund_{client_token_id}",
                )
            except Exception:
                await self._reactivate(client_token_id)
                raise

        logger.info(
            "client_token_deactivated",
            client_token_id=str(client_token_id),
            owner_id=str(owner_id),
            remaining=remaining,
            refund_amount=str(refund_amount),
            settled_generations=settled,
        )
        return DeactivationResult(
            success=True,
            settled_generations=settled,
            refunded_credits=refunded_credits,
            refund_amount=refund_amount,
        )

    # ========================================================================
    # Holder operations (authenticated by the token secret)
    # ========================================================================

    async def get_by_secret(self, secret: str) -> ClientToken | None:
        result = await self.session.execute(select(ClientToken).where(ClientToken.token == secret))
        return result.scalar_one_or_none()

    async def validate(self, secret: str) -> ClientTokenValidation:
        token = await self.get_by_secret(secret)
        if token is None:
            return ClientTokenValidation(valid=False, error=LedgerErrorCode.TOKEN_NOT_FOUND)
        if not token.is_active:
            return ClientTokenValidation(valid=False, error=LedgerErrorCode.TOKEN_INACTIVE, token=token)
        if token.expires_at is not None and token.expires_at <= utc_now():
            return ClientTokenValidation(valid=False, error=LedgerErrorCode.TOKEN_EXPIRED, token=token)

        active = await self.generations.active_for_client_token(token.id)
        return ClientTokenValidation(
            valid=True,
            token=token,
            active_farm_id=active[0].farm_id if active else None,
        )

    async def generate(
        self, secret: str, credits: int, client_ip: str | None = None
    ) -> GenerateOutcome:
        """
        Spend token credits on a generation; one active generation per token.

        The request is trimmed to what the token has left.
        """
        validation = await self.validate(secret)
        if not validation.valid or validation.token is None:
            metrics.record_generation(ENTRY_POINT, "rejected")
            return GenerateOutcome(success=False, error=validation.error)

        token = validation.token
        token_id = token.id
        if validation.active_farm_id is not None:
            metrics.record_generation(ENTRY_POINT, "rejected")
            return GenerateOutcome(
                success=False,
                error=LedgerErrorCode.ACTIVE_GENERATION_EXISTS,
                existing_farm_id=validation.active_farm_id,
            )

        if token.remaining <= 0:
            metrics.record_generation(ENTRY_POINT, "rejected")
            return GenerateOutcome(
                success=False, error=LedgerErrorCode.INSUFFICIENT_CREDITS, remaining=0
            )

        actual = min(credits, token.remaining)
        used = await self.ledger.use_client_token_credits(token_id, actual)
        if not used.success:
            metrics.record_generation(ENTRY_POINT, "rejected")
            return GenerateOutcome(success=False, error=used.error, remaining=used.remaining)

        placeholder = new_placeholder_farm_id()
        generation = Generation(
            id=uuid4(),
            farm_id=placeholder,
            client_name=f"client-link-{str(token_id)[:8]}",
            credits_requested=actual,
            credits_earned=0,
            status=GenerationStatus.CREATING.value,
            client_token_id=token_id,
            client_ip=client_ip,
        )
        self.session.add(generation)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            await self.ledger.refund_client_token_credits(token_id, actual)
            logger.error("client_generation_insert_failed", client_token_id=str(token_id), error=str(e))
            raise DatabaseError(f"Failed to record generation: {e}") from e

        admission = await AdmissionController(self.session, self.farm).admit_or_refund(generation)

        metrics.record_generation(ENTRY_POINT, "queued" if admission.queued else "dispatched")
        logger.info(
            "client_generation_started",
            client_token_id=str(token_id),
            generation_id=str(admission.generation_id),
            farm_id=admission.farm_id,
            credits=actual,
            queued=admission.queued,
        )
        return GenerateOutcome(
            success=True,
            admission=admission,
            credits=actual,
            remaining=used.remaining,
        )

    async def check_queue(self, secret: str, generation_id: UUID) -> GenerationView:
        """Where a token's generation stands, following any dequeue rename."""
        generation = await self._owned_generation(secret, generation_id=generation_id)
        if generation.status == GenerationStatus.QUEUED.value:
            position = await self.generations.queue_position(generation)
        else:
            position = None
        return GenerationView(
            farm_id=generation.farm_id,
            status=generation.status,
            credits=generation.credits_requested,
            credits_earned=generation.credits_earned,
            queue_position=position,
            master_email=generation.master_email,
            workspace_name=generation.workspace_name,
            settled=generation.settled_at is not None,
        )

    async def update_status(
        self,
        secret: str,
        farm_id: str,
        raw_status: str,
        credits_earned: int | None = None,
        master_email: str | None = None,
        workspace_name: str | None = None,
        error_message: str | None = None,
    ) -> ActionOutcome:
        generation = await self._owned_generation(secret, farm_id=farm_id)
        return await GenerationLifecycle(self.session, self.farm).push_status(
            generation,
            raw_status,
            credits_earned=credits_earned,
            master_email=master_email,
            workspace_name=workspace_name,
            error_message=error_message,
        )

    async def refund_expired(self, secret: str, farm_id: str) -> ActionOutcome:
        generation = await self._owned_generation(secret, farm_id=farm_id)
        return await GenerationLifecycle(self.session, self.farm).refund_expired(generation)

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _owned_generation(
        self,
        secret: str,
        generation_id: UUID | None = None,
        farm_id: str | None = None,
    ) -> Generation:
        token = await self.get_by_secret(secret)
        if token is None:
            raise ResourceNotFoundError("ClientToken", "<secret>")

        stmt = select(Generation).where(Generation.client_token_id == token.id)
        if generation_id is not None:
            stmt = stmt.where(Generation.id == generation_id)
        else:
            stmt = stmt.where(Generation.farm_id == farm_id)
        generation = (await self.session.execute(stmt)).scalar_one_or_none()
        if generation is None:
            raise ResourceNotFoundError("Generation", str(generation_id or farm_id))
        return generation

    async def _reactivate(self, client_token_id: UUID) -> None:
        """Undo a deactivation whose wallet refund failed."""
        await self.session.rollback()
        await self.session.execute(
            update(ClientToken)
            .where(ClientToken.id == client_token_id)
            .values(is_active=True)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        logger.warning("client_token_reactivated_after_refund_failure", client_token_id=str(client_token_id))

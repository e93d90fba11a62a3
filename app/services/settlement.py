"""
Settlement Engine - exactly-once finalization of a generation.

Every trigger (status poll, explicit cancel/expiry, sweeps, token
deactivation) calls SettlementService.settle(). The first caller to flip
settled_at from NULL wins the right to refund; every other caller gets a
no-op outcome.

Refund rules by owner:
- wallet: price(requested) - price(delivered) back to the wallet, keyed on
  the farm_id so a replay cannot pay twice
- client token: the undelivered credits back to the token
- admin token: nothing to refund, the row is only marked

If the refund step fails the claim is released (settled_at back to NULL,
prior status restored) so a later trigger can retry.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Generation, TokenUsage, utc_now
from app.exceptions import DataIntegrityError
from app.models.api import GenerationStatus
from app.models.domain import ClaimedGeneration, SettlementOutcome
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.ledger import LedgerService
from app.services.pricing import refund_for_shortfall

logger = get_logger(__name__)


def _owner_kind(claimed: ClaimedGeneration) -> str:
    if claimed.client_token_id is not None:
        return "client_token"
    if claimed.user_id is not None:
        return "wallet"
    return "admin_token"


class SettlementService:
    """Claims, refunds and (on failure) releases generation settlements."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = LedgerService(session)

    async def settle(
        self,
        generation_id: UUID,
        final_status: GenerationStatus | None = None,
        credits_earned: int | None = None,
        error_message: str | None = None,
        reason: str = "terminal_status",
    ) -> SettlementOutcome:
        """
        Finalize a generation once.

        Args:
            generation_id: Generation to settle
            final_status: Status to force while claiming (None keeps the current one)
            credits_earned: Last observed delivery, merged through the monotone clamp
            error_message: Stored on the row when given
            reason: Which trigger is settling (logged)

        Returns:
            SettlementOutcome; already_settled=True when another caller won

        Raises:
            Any refund failure, after the claim has been released
        """
        with trace_operation("settle_generation", generation_id=str(generation_id), reason=reason):
            prior_status = (
                await self.session.execute(
                    select(Generation.status).where(
                        Generation.id == generation_id,
                        Generation.settled_at.is_(None),
                    )
                )
            ).scalar_one_or_none()

            if prior_status is None:
                metrics.record_settlement("already_settled", "unknown")
                logger.debug("settlement_skipped", generation_id=str(generation_id), reason=reason)
                return SettlementOutcome.noop(generation_id)

            claimed_at = utc_now()
            claimed = await self._claim(
                generation_id, prior_status, claimed_at, final_status, credits_earned, error_message
            )
            if claimed is None:
                metrics.record_settlement("already_settled", "unknown")
                logger.info("settlement_already_claimed", generation_id=str(generation_id), reason=reason)
                return SettlementOutcome.noop(generation_id)

            delivered = min(max(claimed.credits_earned, 0), claimed.credits_requested)
            shortfall = claimed.credits_requested - delivered
            owner = _owner_kind(claimed)

            try:
                refund_amount, refunded_credits = await self._refund(claimed, delivered, shortfall)
            except Exception as e:
                await self._release_claim(claimed, claimed_at)
                metrics.record_settlement("rolled_back", owner)
                metrics.record_error(type(e).__name__, "settlement_refund")
                logger.error(
                    "settlement_refund_failed",
                    generation_id=str(generation_id),
                    farm_id=claimed.farm_id,
                    owner=owner,
                    shortfall=shortfall,
                    error=str(e),
                )
                raise

            if claimed.token_id is not None:
                await self._sync_token_usage(claimed, delivered, claimed_at)

            metrics.record_settlement("settled", owner, refund_amount, refunded_credits)
            logger.info(
                "generation_settled",
                generation_id=str(generation_id),
                farm_id=claimed.farm_id,
                status=claimed.status.value,
                owner=owner,
                requested=claimed.credits_requested,
                delivered=delivered,
                refund_amount=str(refund_amount),
                refunded_credits=refunded_credits,
                reason=reason,
            )
            return SettlementOutcome(
                generation_id=generation_id,
                settled=True,
                final_status=claimed.status,
                delivered=delivered,
                shortfall=shortfall,
                refund_amount=refund_amount,
                refunded_credits=refunded_credits,
            )

    async def settle_by_farm_id(
        self,
        farm_id: str,
        final_status: GenerationStatus | None = None,
        credits_earned: int | None = None,
        error_message: str | None = None,
        reason: str = "terminal_status",
    ) -> SettlementOutcome | None:
        """settle() for callers that only know the farm id; None if unknown."""
        generation_id = (
            await self.session.execute(select(Generation.id).where(Generation.farm_id == farm_id))
        ).scalar_one_or_none()
        if generation_id is None:
            return None
        return await self.settle(generation_id, final_status, credits_earned, error_message, reason)

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _claim(
        self,
        generation_id: UUID,
        prior_status: str,
        claimed_at: datetime,
        final_status: GenerationStatus | None,
        credits_earned: int | None,
        error_message: str | None,
    ) -> ClaimedGeneration | None:
        """Compare-and-swap settled_at NULL -> now; commits on success."""
        values: dict[str, object] = {"settled_at": claimed_at}
        if final_status is not None:
            values["status"] = final_status.value
        if credits_earned is not None:
            values["credits_earned"] = func.least(
                func.greatest(Generation.credits_earned, max(credits_earned, 0)),
                Generation.credits_requested,
            )
        if error_message:
            values["error_message"] = error_message

        stmt = (
            update(Generation)
            .where(Generation.id == generation_id, Generation.settled_at.is_(None))
            .values(**values)
            .returning(
                Generation.farm_id,
                Generation.status,
                Generation.credits_requested,
                Generation.credits_earned,
                Generation.user_id,
                Generation.token_id,
                Generation.client_token_id,
            )
            .execution_options(synchronize_session=False)
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            await self.session.rollback()
            return None

        await self.session.commit()
        return ClaimedGeneration(
            generation_id=generation_id,
            farm_id=row.farm_id,
            status=GenerationStatus(row.status),
            previous_status=GenerationStatus(prior_status),
            credits_requested=row.credits_requested,
            credits_earned=row.credits_earned,
            user_id=row.user_id,
            token_id=row.token_id,
            client_token_id=row.client_token_id,
        )

    async def _refund(
        self, claimed: ClaimedGeneration, delivered: int, shortfall: int
    ) -> tuple[Decimal, int]:
        """Issue the owner-specific refund; returns (money, credits) refunded."""
        if shortfall <= 0:
            return Decimal("0.00"), 0

        if claimed.client_token_id is not None:
            result = await self.ledger.refund_client_token_credits(claimed.client_token_id, shortfall)
            if not result.success:
                raise DataIntegrityError(
                    f"Client token {claimed.client_token_id} missing for generation "
                    f"{claimed.generation_id}"
                )
            return Decimal("0.00"), shortfall

        if claimed.user_id is not None:
            amount = refund_for_shortfall(claimed.credits_requested, delivered)
            if amount <= 0:
                return Decimal("0.00"), 0
            credit = await self.ledger.credit_wallet(
                claimed.user_id,
                amount,
                description=(
                    f"Refund: {shortfall} of {claimed.credits_requested} credits not delivered"
                ),
                reference_id=claimed.farm_id,
            )
            if credit.already_credited:
                logger.warning(
                    "settlement_refund_already_present",
                    generation_id=str(claimed.generation_id),
                    farm_id=claimed.farm_id,
                )
                return Decimal("0.00"), 0
            return amount, 0

        return Decimal("0.00"), 0

    async def _release_claim(self, claimed: ClaimedGeneration, claimed_at: datetime) -> None:
        """Undo our own claim so the generation can be settled again."""
        await self.session.rollback()
        await self.session.execute(
            update(Generation)
            .where(
                Generation.id == claimed.generation_id,
                Generation.settled_at == claimed_at,
            )
            .values(settled_at=None, status=claimed.previous_status.value)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        logger.warning(
            "settlement_claim_released",
            generation_id=str(claimed.generation_id),
            restored_status=claimed.previous_status.value,
        )

    async def _sync_token_usage(
        self, claimed: ClaimedGeneration, delivered: int, completed_at: datetime
    ) -> None:
        await self.session.execute(
            update(TokenUsage)
            .where(
                TokenUsage.token_id == claimed.token_id,
                TokenUsage.farm_id == claimed.farm_id,
            )
            .values(
                status=claimed.status.value,
                credits_earned=delivered,
                completed_at=completed_at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

"""
On-demand generation - the wallet-funded front door.

Debit price(credits) from the caller's wallet, record the generation under
a placeholder farm id, then dispatch or queue it. Any failure after the
debit gives the money back before the error surfaces.
"""

from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Generation
from app.exceptions import DatabaseError
from app.models.api import GenerationStatus, LedgerErrorCode
from app.models.domain import GenerateOutcome
from app.observability.metrics import metrics
from app.services.admission import AdmissionController, new_placeholder_farm_id
from app.services.farm_client import FarmClient
from app.services.ledger import LedgerService
from app.services.pricing import price

logger = get_logger(__name__)

ENTRY_POINT = "wallet"


class OnDemandService:
    """Wallet-funded generations for authenticated users."""

    def __init__(self, session: AsyncSession, farm: FarmClient) -> None:
        self.session = session
        self.ledger = LedgerService(session)
        self.admission = AdmissionController(session, farm)

    async def generate(
        self,
        user_id: UUID,
        credits: int,
        client_name: str | None = None,
        client_ip: str | None = None,
    ) -> GenerateOutcome:
        """
        Pay for and start a generation.

        Returns INSUFFICIENT_BALANCE (with balance and required amount) when
        the wallet cannot cover price(credits). Raises FarmServiceError after
        a full refund if the farm rejects the request.
        """
        cost = price(credits)
        placeholder = new_placeholder_farm_id()

        debit = await self.ledger.debit_wallet(
            user_id,
            cost,
            credits,
            description=f"Generation: {credits} credits",
            reference_id=placeholder,
        )
        if not debit.success:
            metrics.record_generation(ENTRY_POINT, "insufficient_balance")
            return GenerateOutcome(
                success=False,
                error=LedgerErrorCode.INSUFFICIENT_BALANCE,
                balance=debit.balance,
                required=cost,
            )

        generation = Generation(
            id=uuid4(),
            farm_id=placeholder,
            client_name=client_name or "on-demand",
            credits_requested=credits,
            credits_earned=0,
            status=GenerationStatus.CREATING.value,
            user_id=user_id,
            client_ip=client_ip,
        )
        self.session.add(generation)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            await self.ledger.credit_wallet(
                user_id,
                cost,
                description=f"Refund: generation of {credits} credits could not be recorded",
                reference_id=placeholder,
            )
            metrics.record_generation(ENTRY_POINT, "db_error")
            logger.error("wallet_generation_insert_failed", user_id=str(user_id), error=str(e))
            raise DatabaseError(f"Failed to record generation: {e}") from e

        admission = await self.admission.admit_or_refund(generation)

        metrics.record_generation(ENTRY_POINT, "queued" if admission.queued else "dispatched")
        logger.info(
            "wallet_generation_started",
            user_id=str(user_id),
            generation_id=str(admission.generation_id),
            farm_id=admission.farm_id,
            credits=credits,
            cost=str(cost),
            queued=admission.queued,
        )
        return GenerateOutcome(
            success=True,
            admission=admission,
            credits=credits,
            balance=debit.new_balance,
        )

"""
Generation Lifecycle - status sync and owner actions on generations.

Status changes arrive by polling (the status proxy writes back what the farm
reports) or by an explicit push from the owner or an admin. Either way a
terminal status triggers settlement through the shared claim and then gives
the queue a chance to advance.
"""

from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Generation
from app.exceptions import InvalidStatusError, LedgerError, ResourceNotFoundError
from app.models.api import TERMINAL_STATUSES, GenerationStatus, LedgerErrorCode
from app.models.domain import (
    ActionOutcome,
    FarmStatusReport,
    GenerationView,
    SettlementOutcome,
)
from app.services.admission import AdmissionController, is_placeholder
from app.services.farm_client import FarmClient
from app.services.generations import GenerationService, normalize_status
from app.services.settlement import SettlementService

logger = get_logger(__name__)

REFUNDABLE_EXPIRY_STATUSES = frozenset(
    {
        GenerationStatus.WAITING_INVITE,
        GenerationStatus.QUEUED,
        GenerationStatus.CREATING,
        GenerationStatus.EXPIRED,
    }
)


def _view(generation: Generation, **overrides: object) -> GenerationView:
    fields: dict[str, object] = {
        "farm_id": generation.farm_id,
        "status": generation.status,
        "credits": generation.credits_requested,
        "credits_earned": generation.credits_earned,
        "master_email": generation.master_email,
        "workspace_name": generation.workspace_name,
        "settled": generation.settled_at is not None,
    }
    fields.update(overrides)
    return GenerationView(**fields)  # type: ignore[arg-type]


class GenerationLifecycle:
    """Polling proxy, status push, cancel and refund-on-expiry."""

    def __init__(self, session: AsyncSession, farm: FarmClient) -> None:
        self.session = session
        self.farm = farm
        self.generations = GenerationService(session)
        self.settlement = SettlementService(session)
        self.admission = AdmissionController(session, farm)

    async def get_generation(self, farm_id: str) -> Generation:
        generation = await self.generations.get_by_farm_id(farm_id)
        if generation is None:
            raise ResourceNotFoundError("Generation", farm_id)
        return generation

    async def poll_status(self, farm_id: str) -> GenerationView:
        """
        Report a generation's status, syncing it from the farm when possible.

        Placeholder ids never reach the farm: the local row answers, or the
        dequeue rename history yields a `dequeued` signal with the new id.
        """
        if is_placeholder(farm_id):
            return await self._placeholder_view(farm_id)

        generation = await self.get_generation(farm_id)
        report = await self.farm.status(farm_id)
        return await self.apply_report(generation, report)

    async def apply_report(self, generation: Generation, report: FarmStatusReport) -> GenerationView:
        """Write a farm report onto the row; settle and advance the queue if terminal."""
        try:
            status = normalize_status(report.status)
        except InvalidStatusError:
            logger.warning(
                "farm_status_unrecognized",
                farm_id=report.farm_id,
                raw_status=report.raw_status,
            )
            return _view(generation, status=report.raw_status or generation.status)

        updated = await self.generations.apply_status(
            report.farm_id,
            status,
            credits_earned=report.credits_earned,
            master_email=report.master_email,
            workspace_name=report.workspace_name,
            error_message=report.error_message if status == GenerationStatus.ERROR else None,
        )
        if updated is None:
            raise ResourceNotFoundError("Generation", report.farm_id)

        if status not in TERMINAL_STATUSES:
            return _view(updated)

        generation_id = updated.id
        await self._settle_quietly(
            generation_id, updated.farm_id, credits_earned=report.credits_earned, reason="status_poll"
        )
        await self.admission.process_queue()
        refreshed = await self.session.get(Generation, generation_id, populate_existing=True)
        return _view(refreshed or updated)

    async def push_status(
        self,
        generation: Generation,
        raw_status: str,
        credits_earned: int | None = None,
        master_email: str | None = None,
        workspace_name: str | None = None,
        error_message: str | None = None,
    ) -> ActionOutcome:
        """
        Apply an owner/admin status update.

        Raises InvalidStatusError for values outside the allow-list.
        """
        status = normalize_status(raw_status)
        updated = await self.generations.apply_status(
            generation.farm_id,
            status,
            credits_earned=credits_earned,
            master_email=master_email,
            workspace_name=workspace_name,
            error_message=error_message,
        )
        if updated is None:
            return ActionOutcome(success=False, error=LedgerErrorCode.GENERATION_NOT_FOUND)

        if status not in TERMINAL_STATUSES:
            return ActionOutcome(success=True)

        outcome = await self.settlement.settle(
            updated.id, credits_earned=credits_earned, error_message=error_message, reason="status_push"
        )
        await self.admission.process_queue()
        return ActionOutcome(success=True, settlement=outcome)

    async def cancel(self, generation: Generation) -> ActionOutcome:
        """
        Cancel a generation mid-flight.

        The farm is told first (placeholders never reached it); settlement
        then keeps whatever credits were observed so far.
        """
        if generation.settled_at is not None:
            return ActionOutcome(success=False, error=LedgerErrorCode.ALREADY_SETTLED)

        farm_id = generation.farm_id
        generation_id = generation.id
        is_terminal = GenerationStatus(generation.status) in TERMINAL_STATUSES

        if not is_terminal and not is_placeholder(farm_id):
            await self.farm.cancel(farm_id)

        outcome = await self.settlement.settle(
            generation_id,
            final_status=None if is_terminal else GenerationStatus.CANCELLED,
            reason="cancel",
        )
        await self.admission.process_queue()
        logger.info("generation_cancel_requested", farm_id=farm_id, settled=outcome.settled)
        return ActionOutcome(success=True, settlement=outcome)

    async def refund_expired(self, generation: Generation) -> ActionOutcome:
        """
        Settle a session that timed out before delivering anything.

        Only allowed while nothing was earned and the generation never got
        past waiting for the invite.
        """
        if generation.settled_at is not None:
            return ActionOutcome(success=False, error=LedgerErrorCode.ALREADY_SETTLED)
        if generation.credits_earned > 0:
            return ActionOutcome(success=False, error=LedgerErrorCode.ALREADY_EARNED)
        if GenerationStatus(generation.status) not in REFUNDABLE_EXPIRY_STATUSES:
            return ActionOutcome(success=False, error=LedgerErrorCode.ALREADY_STARTED)

        outcome = await self.settlement.settle(
            generation.id,
            final_status=GenerationStatus.EXPIRED,
            error_message="Session expired before the invite was accepted",
            reason="refund_expired",
        )
        if outcome.already_settled:
            return ActionOutcome(success=False, error=LedgerErrorCode.ALREADY_SETTLED, settlement=outcome)

        await self.admission.process_queue()
        return ActionOutcome(success=True, settlement=outcome)

    async def admin_sync(self, farm_id: str) -> GenerationView:
        """Force a poll of one generation (operator tool)."""
        if is_placeholder(farm_id):
            return await self._placeholder_view(farm_id)
        generation = await self.get_generation(farm_id)
        report = await self.farm.status(farm_id)
        logger.info("admin_generation_sync", farm_id=farm_id, upstream_status=report.raw_status)
        return await self.apply_report(generation, report)

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _placeholder_view(self, farm_id: str) -> GenerationView:
        generation = await self.generations.get_by_farm_id(farm_id)
        if generation is None:
            renamed = await self.generations.find_renamed(farm_id)
            if renamed is None:
                raise ResourceNotFoundError("Generation", farm_id)
            return _view(renamed, farm_id=farm_id, status="dequeued", new_farm_id=renamed.farm_id)

        if generation.status == GenerationStatus.QUEUED.value:
            position = await self.generations.queue_position(generation)
            return _view(generation, queue_position=position)
        return _view(generation)

    async def _settle_quietly(
        self, generation_id: UUID, farm_id: str, credits_earned: int, reason: str
    ) -> SettlementOutcome | None:
        """Settle from a read path; a failed refund is logged and left for the sweep."""
        try:
            return await self.settlement.settle(
                generation_id, credits_earned=credits_earned, reason=reason
            )
        except (LedgerError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.error(
                "settlement_deferred_to_sweep",
                generation_id=str(generation_id),
                farm_id=farm_id,
                error=str(e),
            )
            return None

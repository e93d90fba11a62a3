"""
Admission Controller - bounds concurrent farm load with a FIFO queue.

Active load is counted with ghost-filtered liveness windows instead of a live
counter, so an abandoned client can never pin a slot forever. The ceiling
check and the farm create call are not atomic; over-admission by one or two
under a burst is tolerated.

Every generation starts life under a placeholder farm_id ("queued-<uuid>").
Once the farm accepts it the placeholder is renamed in place, together with
the wallet transaction and token usage rows that reference it.
"""

from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import Generation, TokenUsage, Wallet, WalletTransaction, utc_now
from app.exceptions import FarmServiceError
from app.models.api import GenerationStatus, TokenUsageStatus
from app.models.domain import AdmissionResult, CapacitySnapshot, FarmCreateResult
from app.observability.metrics import metrics
from app.services.farm_client import FarmClient
from app.services.generations import GenerationService
from app.services.settlement import SettlementService

logger = get_logger(__name__)

PLACEHOLDER_PREFIX = "queued-"


def new_placeholder_farm_id() -> str:
    """Correlation id for a generation the farm has not seen yet."""
    return f"{PLACEHOLDER_PREFIX}{uuid4()}"


def is_placeholder(farm_id: str) -> bool:
    return farm_id.startswith(PLACEHOLDER_PREFIX)


class AdmissionController:
    """Decides between dispatching a generation now and queueing it."""

    def __init__(
        self,
        session: AsyncSession,
        farm: FarmClient,
        ceiling: int | None = None,
    ) -> None:
        self.session = session
        self.farm = farm
        self.ceiling = ceiling if ceiling is not None else settings.max_concurrent_generations

    async def capacity(self, exclude_id: UUID | None = None) -> CapacitySnapshot:
        """
        Count live generations per state.

        running counts if updated recently, waiting_invite and creating if
        created recently; older rows are treated as ghosts.
        """
        now = utc_now()
        running_since = now - timedelta(minutes=settings.running_liveness_minutes)
        waiting_since = now - timedelta(minutes=settings.waiting_invite_liveness_minutes)
        creating_since = now - timedelta(minutes=settings.creating_liveness_minutes)

        count = func.count(Generation.id)
        stmt = select(
            count.filter(
                Generation.status == GenerationStatus.RUNNING.value,
                Generation.updated_at >= running_since,
            ),
            count.filter(
                Generation.status == GenerationStatus.WAITING_INVITE.value,
                Generation.created_at >= waiting_since,
            ),
            count.filter(
                Generation.status == GenerationStatus.CREATING.value,
                Generation.created_at >= creating_since,
            ),
            count.filter(Generation.status == GenerationStatus.QUEUED.value),
        )
        if exclude_id is not None:
            stmt = stmt.where(Generation.id != exclude_id)

        running, waiting, creating, queued = (await self.session.execute(stmt)).one()
        snapshot = CapacitySnapshot(
            running=int(running),
            waiting=int(waiting),
            creating=int(creating),
            queued=int(queued),
            ceiling=self.ceiling,
        )
        metrics.record_capacity(snapshot.active, snapshot.queued)
        return snapshot

    async def admit(self, generation: Generation) -> AdmissionResult:
        """
        Dispatch a freshly reserved generation or queue it.

        The generation must be in `creating` under its placeholder farm_id.
        FarmServiceError propagates untouched; the caller settles the
        generation as an error, which refunds the reservation.
        """
        generation_id = generation.id
        placeholder = generation.farm_id
        credits = generation.credits_requested

        snapshot = await self.capacity(exclude_id=generation_id)
        if snapshot.at_capacity:
            await self.session.execute(
                update(Generation)
                .where(
                    Generation.id == generation_id,
                    Generation.status == GenerationStatus.CREATING.value,
                )
                .values(status=GenerationStatus.QUEUED.value)
                .execution_options(synchronize_session=False)
            )
            if generation.token_id is not None:
                await self.session.execute(
                    update(TokenUsage)
                    .where(
                        TokenUsage.token_id == generation.token_id,
                        TokenUsage.farm_id == placeholder,
                    )
                    .values(status=TokenUsageStatus.QUEUED.value)
                    .execution_options(synchronize_session=False)
                )
            await self.session.commit()

            refreshed = await self.session.get(Generation, generation_id, populate_existing=True)
            position = await GenerationService(self.session).queue_position(refreshed or generation)
            logger.info(
                "generation_queued",
                generation_id=str(generation_id),
                farm_id=placeholder,
                active=snapshot.active,
                ceiling=snapshot.ceiling,
                queue_position=position,
            )
            return AdmissionResult(
                generation_id=generation_id,
                farm_id=placeholder,
                status=GenerationStatus.QUEUED,
                queued=True,
                queue_position=position,
                message="At capacity, generation queued",
            )

        farm_result = await self.farm.create(credits)
        new_status = (
            GenerationStatus.QUEUED if farm_result.queued else GenerationStatus.WAITING_INVITE
        )
        renamed = await self._rename(
            generation, placeholder, farm_result, GenerationStatus.CREATING, new_status
        )
        if not renamed:
            # The row left `creating` while the farm call was in flight
            await self._cancel_orphan(farm_result.farm_id)
            current = await self.session.get(Generation, generation_id, populate_existing=True)
            status = GenerationStatus(current.status) if current else GenerationStatus.CANCELLED
            return AdmissionResult(
                generation_id=generation_id,
                farm_id=placeholder,
                status=status,
                queued=False,
                message="Generation changed state during dispatch",
            )

        return AdmissionResult(
            generation_id=generation_id,
            farm_id=farm_result.farm_id,
            status=new_status,
            queued=farm_result.queued,
            queue_position=farm_result.queue_position,
            master_email=farm_result.master_email,
            message=farm_result.message,
        )

    async def admit_or_refund(self, generation: Generation) -> AdmissionResult:
        """
        admit(), settling the generation as `error` if the farm rejects it.

        The error settlement refunds the full reservation before the
        FarmServiceError reaches the caller.
        """
        generation_id = generation.id
        try:
            return await self.admit(generation)
        except FarmServiceError as e:
            metrics.record_error("FarmServiceError", "farm_create")
            logger.error(
                "generation_dispatch_failed",
                generation_id=str(generation_id),
                error=e.message,
                status_code=e.status_code,
            )
            await SettlementService(self.session).settle(
                generation_id,
                final_status=GenerationStatus.ERROR,
                error_message=e.message,
                reason="farm_create_failed",
            )
            raise

    async def process_queue(self) -> AdmissionResult | None:
        """
        Dispatch the oldest queued generation if a slot is free.

        Called opportunistically after any generation reaches a terminal
        status. Failures are logged, never raised: the row stays queued and
        the next trigger retries.
        """
        snapshot = await self.capacity()
        if snapshot.at_capacity:
            metrics.dequeues_total.labels(outcome="at_capacity").inc()
            logger.debug("queue_at_capacity", active=snapshot.active, ceiling=snapshot.ceiling)
            return None

        result = await self.session.execute(
            select(Generation)
            .where(
                Generation.status == GenerationStatus.QUEUED.value,
                Generation.farm_id.startswith(PLACEHOLDER_PREFIX),
                Generation.settled_at.is_(None),
            )
            .order_by(Generation.created_at)
            .limit(1)
        )
        next_generation = result.scalar_one_or_none()
        if next_generation is None:
            return None

        generation_id = next_generation.id
        placeholder = next_generation.farm_id

        try:
            farm_result = await self.farm.create(next_generation.credits_requested)
        except FarmServiceError as e:
            metrics.dequeues_total.labels(outcome="farm_error").inc()
            logger.error(
                "dequeue_farm_create_failed",
                generation_id=str(generation_id),
                farm_id=placeholder,
                error=str(e),
            )
            return None

        new_status = (
            GenerationStatus.QUEUED if farm_result.queued else GenerationStatus.WAITING_INVITE
        )
        renamed = await self._rename(
            next_generation, placeholder, farm_result, GenerationStatus.QUEUED, new_status
        )
        if not renamed:
            metrics.dequeues_total.labels(outcome="lost_race").inc()
            await self._cancel_orphan(farm_result.farm_id)
            return None

        metrics.dequeues_total.labels(outcome="dispatched").inc()
        logger.info(
            "generation_dequeued",
            generation_id=str(generation_id),
            old_farm_id=placeholder,
            new_farm_id=farm_result.farm_id,
        )
        return AdmissionResult(
            generation_id=generation_id,
            farm_id=farm_result.farm_id,
            status=new_status,
            queued=farm_result.queued,
            queue_position=farm_result.queue_position,
            master_email=farm_result.master_email,
        )

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _rename(
        self,
        generation: Generation,
        old_farm_id: str,
        farm_result: FarmCreateResult,
        expected_status: GenerationStatus,
        new_status: GenerationStatus,
    ) -> bool:
        """
        Move a generation and its references from the placeholder to the real farm id.

        Guarded on the expected status and the placeholder itself, so a row
        that was cancelled or already dequeued elsewhere is left untouched.
        """
        generation_id = generation.id
        user_id = generation.user_id
        token_id = generation.token_id
        new_farm_id = farm_result.farm_id

        claimed = (
            await self.session.execute(
                update(Generation)
                .where(
                    Generation.id == generation_id,
                    Generation.status == expected_status.value,
                    Generation.farm_id == old_farm_id,
                )
                .values(
                    farm_id=new_farm_id,
                    previous_farm_id=old_farm_id,
                    status=new_status.value,
                    master_email=farm_result.master_email,
                    waiting_since=(
                        utc_now() if new_status == GenerationStatus.WAITING_INVITE else None
                    ),
                )
                .returning(Generation.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()

        if claimed is None:
            await self.session.rollback()
            logger.warning(
                "generation_rename_lost_race",
                generation_id=str(generation_id),
                old_farm_id=old_farm_id,
                new_farm_id=new_farm_id,
                expected_status=expected_status.value,
            )
            return False

        if user_id is not None:
            await self.session.execute(
                update(WalletTransaction)
                .where(
                    WalletTransaction.reference_id == old_farm_id,
                    WalletTransaction.wallet_id.in_(
                        select(Wallet.id).where(Wallet.user_id == user_id)
                    ),
                )
                .values(reference_id=new_farm_id)
                .execution_options(synchronize_session=False)
            )
        if token_id is not None:
            await self.session.execute(
                update(TokenUsage)
                .where(TokenUsage.token_id == token_id, TokenUsage.farm_id == old_farm_id)
                .values(
                    farm_id=new_farm_id,
                    status=(
                        TokenUsageStatus.QUEUED.value
                        if new_status == GenerationStatus.QUEUED
                        else TokenUsageStatus.ACTIVE.value
                    ),
                )
                .execution_options(synchronize_session=False)
            )

        await self.session.commit()
        logger.info(
            "generation_dispatched",
            generation_id=str(generation_id),
            old_farm_id=old_farm_id,
            farm_id=new_farm_id,
            status=new_status.value,
        )
        return True

    async def _cancel_orphan(self, farm_id: str) -> None:
        """Best-effort cancel of a farm generation no local row will track."""
        try:
            await self.farm.cancel(farm_id)
            logger.warning("orphan_farm_generation_cancelled", farm_id=farm_id)
        except FarmServiceError as e:
            logger.error("orphan_farm_generation_cancel_failed", farm_id=farm_id, error=str(e))

"""
Reconciliation Service - periodic backstops for settlement and payments.

Both sweeps go through the same atomic claims as the live paths, so running
them concurrently with polling, webhooks or each other is safe. One failing
item is logged and counted; it never stops the batch.
"""

import time
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import Generation, Wallet, WalletTransaction, utc_now
from app.exceptions import FarmServiceError, LedgerError
from app.models.api import TERMINAL_STATUSES, GenerationStatus, WalletTransactionType
from app.models.domain import LedgerAnomaly, PaymentReconcileResult, StaleSweepResult
from app.observability.metrics import metrics
from app.services.admission import AdmissionController, is_placeholder
from app.services.farm_client import FarmClient
from app.services.orders import OrderService
from app.services.payment_provider import PaymentProvider
from app.services.settlement import SettlementService

logger = get_logger(__name__)

ANOMALY_LIMIT = 200
SETTLED_TERMINAL = (
    GenerationStatus.EXPIRED.value,
    GenerationStatus.CANCELLED.value,
    GenerationStatus.ERROR.value,
)


class ReconciliationService:
    """Stale-generation sweep, payment reconciliation and the anomaly report."""

    def __init__(
        self,
        session: AsyncSession,
        farm: FarmClient,
        provider: PaymentProvider | None = None,
    ) -> None:
        self.session = session
        self.farm = farm
        self.provider = provider
        self.settlement = SettlementService(session)

    # ========================================================================
    # Stale-state sweep
    # ========================================================================

    async def sweep_stale_generations(self) -> StaleSweepResult:
        """
        Force stuck generations through settlement.

        - waiting_invite past the invite timeout: cancelled, full refund
        - expired/cancelled/error left unsettled past the settle delay: as-is
        - completed and unsettled: settled, refunding any shortfall
        - creating past the creating liveness window: error, full refund
        """
        started = time.perf_counter()
        now = utc_now()
        batch = settings.sweep_batch_size
        failures = 0

        stuck_invites = await self._unsettled_ids(
            Generation.status == GenerationStatus.WAITING_INVITE.value,
            func.coalesce(Generation.waiting_since, Generation.created_at)
            < now - timedelta(minutes=settings.waiting_invite_timeout_minutes),
            limit=batch,
        )
        forced = 0
        for generation_id, farm_id in stuck_invites:
            await self._cancel_upstream(farm_id)
            ok = await self._settle_item(
                generation_id,
                farm_id,
                final_status=GenerationStatus.CANCELLED,
                error_message="Invite not accepted before timeout",
                reason="sweep_waiting_invite",
            )
            if ok is None:
                failures += 1
            elif ok:
                forced += 1

        stale_terminal = await self._unsettled_ids(
            Generation.status.in_(SETTLED_TERMINAL),
            Generation.updated_at < now - timedelta(minutes=settings.terminal_settle_delay_minutes),
            limit=batch,
        )
        terminal = 0
        for generation_id, farm_id in stale_terminal:
            ok = await self._settle_item(generation_id, farm_id, reason="sweep_terminal")
            if ok is None:
                failures += 1
            elif ok:
                terminal += 1

        unsettled_completed = await self._unsettled_ids(
            Generation.status == GenerationStatus.COMPLETED.value,
            limit=batch,
        )
        completed = 0
        for generation_id, farm_id in unsettled_completed:
            ok = await self._settle_item(generation_id, farm_id, reason="sweep_completed")
            if ok is None:
                failures += 1
            elif ok:
                completed += 1

        # Dispatch died before the farm answered, or its error refund was released
        stuck_creating = await self._unsettled_ids(
            Generation.status == GenerationStatus.CREATING.value,
            Generation.created_at < now - timedelta(minutes=settings.creating_liveness_minutes),
            limit=batch,
        )
        failed_dispatch = 0
        for generation_id, farm_id in stuck_creating:
            ok = await self._settle_item(
                generation_id,
                farm_id,
                final_status=GenerationStatus.ERROR,
                error_message="Dispatch did not complete",
                reason="sweep_creating",
            )
            if ok is None:
                failures += 1
            elif ok:
                failed_dispatch += 1

        dequeued = 0
        if forced + terminal + completed + failed_dispatch > 0:
            admission = AdmissionController(self.session, self.farm)
            if await admission.process_queue() is not None:
                dequeued = 1

        result = StaleSweepResult(
            forced_cancelled=forced,
            settled_terminal=terminal,
            settled_completed=completed,
            failed_dispatch=failed_dispatch,
            failures=failures,
            dequeued=dequeued,
        )
        metrics.record_sweep(
            "stale_generations",
            time.perf_counter() - started,
            forced_cancelled=forced,
            settled_terminal=terminal,
            settled_completed=completed,
            failed_dispatch=failed_dispatch,
            failed=failures,
        )
        logger.info(
            "stale_sweep_finished",
            forced_cancelled=forced,
            settled_terminal=terminal,
            settled_completed=completed,
            failed_dispatch=failed_dispatch,
            failures=failures,
            dequeued=dequeued,
        )
        return result

    # ========================================================================
    # Payment reconciliation
    # ========================================================================

    async def reconcile_payments(self) -> PaymentReconcileResult:
        """Re-query the provider for pending orders the webhook may have missed."""
        if self.provider is None:
            raise RuntimeError("reconcile_payments requires a payment provider")

        started = time.perf_counter()
        orders = OrderService(self.session, self.provider)
        pending = [(o.id, o.transaction_id) for o in await orders.list_reconcilable()]

        confirmed = 0
        still_pending = 0
        failures = 0
        for order_id, transaction_id in pending:
            try:
                status = await self.provider.get_payment_status(transaction_id)
                if not status.is_paid:
                    still_pending += 1
                    continue
                confirmation = await orders.confirm_payment(order_id, source="reconcile")
                if confirmation.claimed:
                    confirmed += 1
            except (LedgerError, SQLAlchemyError) as e:
                failures += 1
                await self.session.rollback()
                logger.error(
                    "payment_reconcile_item_failed",
                    order_id=str(order_id),
                    transaction_id=transaction_id,
                    error=str(e),
                )

        result = PaymentReconcileResult(
            checked=len(pending),
            confirmed=confirmed,
            still_pending=still_pending,
            failures=failures,
        )
        metrics.record_sweep(
            "payment_reconcile",
            time.perf_counter() - started,
            confirmed=confirmed,
            still_pending=still_pending,
            failed=failures,
        )
        logger.info(
            "payment_reconcile_finished",
            checked=result.checked,
            confirmed=confirmed,
            still_pending=still_pending,
            failures=failures,
        )
        return result

    # ========================================================================
    # Operator view
    # ========================================================================

    async def find_anomalies(self) -> list[LedgerAnomaly]:
        """
        Read-only integrity report.

        Nothing here is corrected automatically; an operator decides.
        """
        anomalies: list[LedgerAnomaly] = []
        anomalies.extend(await self._missing_debits())
        anomalies.extend(await self._missing_refunds())
        anomalies.extend(await self._balance_mismatches())
        logger.info("anomaly_report_built", count=len(anomalies))
        return anomalies

    async def _missing_debits(self) -> list[LedgerAnomaly]:
        debit_exists = exists().where(
            WalletTransaction.wallet_id == Wallet.id,
            WalletTransaction.type == WalletTransactionType.DEBIT.value,
            WalletTransaction.reference_id == Generation.farm_id,
        )
        rows = (
            await self.session.execute(
                select(Generation.id, Generation.farm_id, Wallet.id)
                .join(Wallet, Wallet.user_id == Generation.user_id)
                .where(
                    Generation.user_id.is_not(None),
                    Generation.settled_at.is_not(None),
                    Generation.status.in_([s.value for s in TERMINAL_STATUSES]),
                    ~debit_exists,
                )
                .limit(ANOMALY_LIMIT)
            )
        ).all()
        return [
            LedgerAnomaly(
                kind="missing_debit",
                detail="Settled wallet generation has no debit transaction",
                generation_id=generation_id,
                wallet_id=wallet_id,
                farm_id=farm_id,
            )
            for generation_id, farm_id, wallet_id in rows
        ]

    async def _missing_refunds(self) -> list[LedgerAnomaly]:
        refund_exists = exists().where(
            WalletTransaction.wallet_id == Wallet.id,
            WalletTransaction.type == WalletTransactionType.DEPOSIT.value,
            WalletTransaction.reference_id == Generation.farm_id,
        )
        rows = (
            await self.session.execute(
                select(
                    Generation.id,
                    Generation.farm_id,
                    Wallet.id,
                    Generation.credits_requested,
                    Generation.credits_earned,
                )
                .join(Wallet, Wallet.user_id == Generation.user_id)
                .where(
                    Generation.user_id.is_not(None),
                    Generation.settled_at.is_not(None),
                    Generation.credits_earned < Generation.credits_requested,
                    ~refund_exists,
                )
                .limit(ANOMALY_LIMIT)
            )
        ).all()
        return [
            LedgerAnomaly(
                kind="missing_refund",
                detail=f"Delivered {earned} of {requested} credits but no refund was recorded",
                generation_id=generation_id,
                wallet_id=wallet_id,
                farm_id=farm_id,
            )
            for generation_id, farm_id, wallet_id, requested, earned in rows
        ]

    async def _balance_mismatches(self) -> list[LedgerAnomaly]:
        signed_amount = case(
            (
                WalletTransaction.type == WalletTransactionType.DEPOSIT.value,
                WalletTransaction.amount,
            ),
            else_=-WalletTransaction.amount,
        )
        journal_sum = func.coalesce(func.sum(signed_amount), Decimal("0.00"))
        rows = (
            await self.session.execute(
                select(Wallet.id, Wallet.balance, journal_sum.label("journal"))
                .outerjoin(WalletTransaction, WalletTransaction.wallet_id == Wallet.id)
                .group_by(Wallet.id, Wallet.balance)
                .having(Wallet.balance != journal_sum)
                .limit(ANOMALY_LIMIT)
            )
        ).all()
        return [
            LedgerAnomaly(
                kind="balance_mismatch",
                detail="Wallet balance differs from the sum of its transactions",
                wallet_id=wallet_id,
                expected=journal,
                actual=balance,
            )
            for wallet_id, balance, journal in rows
        ]

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _unsettled_ids(self, *conditions: object, limit: int) -> list[tuple[UUID, str]]:
        result = await self.session.execute(
            select(Generation.id, Generation.farm_id)
            .where(Generation.settled_at.is_(None), *conditions)  # type: ignore[arg-type]
            .order_by(Generation.updated_at)
            .limit(limit)
        )
        return [(row.id, row.farm_id) for row in result.all()]

    async def _cancel_upstream(self, farm_id: str) -> bool:
        """Best-effort farm cancel for a forced timeout; the ledger settles regardless."""
        if is_placeholder(farm_id):
            return False
        try:
            await self.farm.cancel(farm_id)
            return True
        except FarmServiceError as e:
            logger.warning("sweep_farm_cancel_failed", farm_id=farm_id, error=e.message)
            return False

    async def _settle_item(
        self,
        generation_id: UUID,
        farm_id: str,
        final_status: GenerationStatus | None = None,
        error_message: str | None = None,
        reason: str = "sweep",
    ) -> bool | None:
        """True if settled here, False if someone else already had, None on failure."""
        try:
            outcome = await self.settlement.settle(
                generation_id,
                final_status=final_status,
                error_message=error_message,
                reason=reason,
            )
            return outcome.settled
        except (LedgerError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.error(
                "sweep_settlement_failed",
                generation_id=str(generation_id),
                farm_id=farm_id,
                reason=reason,
                error=str(e),
            )
            return None

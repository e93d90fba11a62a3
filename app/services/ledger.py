"""
Ledger Service - atomic balance primitives for wallets and tokens.

NO DICTIONARIES - All operations return strongly typed domain results.

Every primitive runs in a single database transaction. Wallet and token rows
are locked with SELECT ... FOR UPDATE (or mutated with a guarded UPDATE) so
concurrent requests can never lose an update; the database row is the lock.
Insufficient funds is an expected outcome reported via success=False.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import (
    ClientToken,
    Generation,
    Token,
    TokenUsage,
    Wallet,
    WalletTransaction,
    utc_now,
)
from app.exceptions import WriteVerificationError
from app.models.api import (
    GenerationStatus,
    LedgerErrorCode,
    TokenUsageStatus,
    WalletTransactionType,
)
from app.models.domain import (
    CreditResult,
    DebitResult,
    ReserveResult,
    TokenCreditsResult,
    TokenUsageSnapshot,
)
from app.observability.metrics import metrics
from app.services.pricing import to_money

logger = get_logger(__name__)

# Generations whose credits_requested still counts against a token policy
IN_FLIGHT_STATUSES = (
    GenerationStatus.CREATING.value,
    GenerationStatus.QUEUED.value,
    GenerationStatus.WAITING_INVITE.value,
    GenerationStatus.RUNNING.value,
)


def daily_window_start(now: datetime, reset_hour_utc: int) -> datetime:
    """Start of the token quota day containing `now` (boundary at reset_hour_utc)."""
    boundary = now.replace(hour=reset_hour_utc, minute=0, second=0, microsecond=0)
    return boundary if now >= boundary else boundary - timedelta(days=1)


class LedgerService:
    """
    Balance primitives with write verification.

    Write operations follow the pattern:
    1. Lock (or guard) the balance row
    2. Check the invariant (funds, caps)
    3. Write the mutation and its audit row, flush
    4. Read back and verify, then commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger service with database session."""
        self.session = session

    # ========================================================================
    # Wallet primitives
    # ========================================================================

    async def debit_wallet(
        self,
        user_id: UUID,
        amount: Decimal,
        credits: int | None,
        description: str,
        reference_id: str | None = None,
    ) -> DebitResult:
        """
        Debit a wallet if it holds at least `amount`.

        Creates the wallet on first attempt. Returns INSUFFICIENT_BALANCE with
        the current balance instead of raising.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive: {amount}")

        wallet = await self._lock_wallet_for_update(user_id)
        balance_before = wallet.balance

        if balance_before < amount:
            # Release the row lock; the wallet row itself may be new
            await self.session.commit()
            metrics.record_wallet_operation("debit", "insufficient")
            logger.info(
                "wallet_debit_insufficient",
                user_id=str(user_id),
                balance=str(balance_before),
                required=str(amount),
            )
            return DebitResult(
                success=False,
                balance=balance_before,
                error=LedgerErrorCode.INSUFFICIENT_BALANCE,
            )

        new_balance = balance_before - amount
        transaction = WalletTransaction(
            id=uuid4(),
            wallet_id=wallet.id,
            type=WalletTransactionType.DEBIT.value,
            amount=amount,
            credits=credits,
            description=description,
            reference_id=reference_id,
            balance_after=new_balance,
        )
        wallet.balance = new_balance
        self.session.add(transaction)
        await self.session.flush()

        verified = await self.session.get(WalletTransaction, transaction.id)
        if verified is None:
            raise WriteVerificationError(f"Wallet transaction {transaction.id} not found after insert")

        await self.session.commit()

        metrics.record_wallet_operation("debit", "success", amount)
        logger.info(
            "wallet_debited",
            user_id=str(user_id),
            amount=str(amount),
            credits=credits,
            new_balance=str(new_balance),
            reference_id=reference_id,
        )
        return DebitResult(
            success=True,
            balance=balance_before,
            new_balance=new_balance,
            transaction_id=transaction.id,
        )

    async def credit_wallet(
        self,
        user_id: UUID,
        amount: Decimal,
        description: str,
        reference_id: str | None = None,
    ) -> CreditResult:
        """
        Credit a wallet, idempotent per reference_id.

        A second credit with the same reference is a no-op reported as
        already_credited, so a webhook and a reconciliation sweep racing on
        the same order credit it once.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive: {amount}")

        wallet = await self._lock_wallet_for_update(user_id)

        if reference_id is not None:
            existing = await self._find_deposit_by_reference(wallet.id, reference_id)
            if existing is not None:
                await self.session.commit()
                metrics.record_wallet_operation("credit", "already_credited")
                logger.info(
                    "wallet_credit_already_applied",
                    user_id=str(user_id),
                    reference_id=reference_id,
                )
                return CreditResult(
                    new_balance=wallet.balance,
                    already_credited=True,
                    transaction_id=existing.id,
                )

        wallet_id = wallet.id
        new_balance = wallet.balance + amount
        transaction = WalletTransaction(
            id=uuid4(),
            wallet_id=wallet_id,
            type=WalletTransactionType.DEPOSIT.value,
            amount=amount,
            credits=None,
            description=description,
            reference_id=reference_id,
            balance_after=new_balance,
        )
        wallet.balance = new_balance
        self.session.add(transaction)

        try:
            await self.session.flush()
        except IntegrityError:
            # Unique (wallet, reference) deposit index - a concurrent credit won
            await self.session.rollback()
            current = await self.session.get(Wallet, wallet_id, populate_existing=True)
            metrics.record_wallet_operation("credit", "already_credited")
            logger.info(
                "wallet_credit_already_applied",
                user_id=str(user_id),
                reference_id=reference_id,
                detected_by="unique_index",
            )
            return CreditResult(
                new_balance=current.balance if current is not None else Decimal("0.00"),
                already_credited=True,
            )

        verified = await self.session.get(WalletTransaction, transaction.id)
        if verified is None:
            raise WriteVerificationError(f"Wallet transaction {transaction.id} not found after insert")

        await self.session.commit()

        metrics.record_wallet_operation("credit", "success", amount)
        logger.info(
            "wallet_credited",
            user_id=str(user_id),
            amount=str(amount),
            new_balance=str(new_balance),
            reference_id=reference_id,
        )
        return CreditResult(new_balance=new_balance, transaction_id=transaction.id)

    async def get_wallet(self, user_id: UUID) -> Wallet | None:
        """Read-only wallet lookup."""
        result = await self.session.execute(select(Wallet).where(Wallet.user_id == user_id))
        return result.scalar_one_or_none()

    async def list_transactions(self, user_id: UUID, limit: int = 50) -> list[WalletTransaction]:
        """Most recent wallet lines first."""
        stmt = (
            select(WalletTransaction)
            .join(Wallet, Wallet.id == WalletTransaction.wallet_id)
            .where(Wallet.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Admin token policy
    # ========================================================================

    async def reserve_credits(
        self,
        token_id: UUID,
        farm_id: str,
        credits_requested: int,
        status: GenerationStatus = GenerationStatus.CREATING,
        client_name: str | None = None,
        master_email: str | None = None,
        client_ip: str | None = None,
    ) -> ReserveResult:
        """
        Insert a Generation reserving `credits_requested` against a token policy.

        The token row is locked so concurrent reservations on the same token
        serialize; caps are derived by summing the token's generations.
        """
        if credits_requested <= 0:
            raise ValueError(f"credits_requested must be positive: {credits_requested}")

        now = utc_now()
        token = await self._lock_token_for_update(token_id)

        failure = await self._check_token_policy(token, now)
        if failure is not None or token is None:
            await self.session.commit()
            return ReserveResult(success=False, error=failure or LedgerErrorCode.TOKEN_NOT_FOUND)

        usage = await self.token_usage(token, now)
        if usage.remaining_total is not None and credits_requested > usage.remaining_total:
            await self.session.commit()
            return ReserveResult(
                success=False,
                error=LedgerErrorCode.TOTAL_LIMIT_REACHED,
                remaining_total=usage.remaining_total,
                remaining_daily=usage.remaining_daily,
            )
        if usage.remaining_daily is not None and credits_requested > usage.remaining_daily:
            await self.session.commit()
            return ReserveResult(
                success=False,
                error=LedgerErrorCode.DAILY_LIMIT_REACHED,
                remaining_total=usage.remaining_total,
                remaining_daily=usage.remaining_daily,
            )

        generation = Generation(
            id=uuid4(),
            farm_id=farm_id,
            client_name=client_name or token.client_name,
            credits_requested=credits_requested,
            credits_earned=0,
            status=status.value,
            token_id=token.id,
            master_email=master_email,
            client_ip=client_ip,
        )
        usage_row = TokenUsage(
            id=uuid4(),
            token_id=token.id,
            farm_id=farm_id,
            credits_requested=credits_requested,
            status=(
                TokenUsageStatus.QUEUED.value
                if status == GenerationStatus.QUEUED
                else TokenUsageStatus.ACTIVE.value
            ),
            client_ip=client_ip,
        )
        self.session.add(generation)
        self.session.add(usage_row)
        await self.session.flush()

        verified = await self.session.get(Generation, generation.id)
        if verified is None:
            raise WriteVerificationError(f"Generation {generation.id} not found after insert")

        await self.session.commit()

        logger.info(
            "token_credits_reserved",
            token_id=str(token.id),
            farm_id=farm_id,
            credits=credits_requested,
            status=status.value,
        )
        return ReserveResult(
            success=True,
            generation_id=generation.id,
            remaining_total=(
                usage.remaining_total - credits_requested
                if usage.remaining_total is not None
                else None
            ),
            remaining_daily=(
                usage.remaining_daily - credits_requested
                if usage.remaining_daily is not None
                else None
            ),
        )

    async def token_usage(self, token: Token, now: datetime | None = None) -> TokenUsageSnapshot:
        """
        Derive consumption of a token from its generations.

        Finished generations count what they delivered; in-flight ones count
        what they reserved. No stored counter exists to go stale.
        """
        now = now or utc_now()
        day_start = daily_window_start(now, settings.daily_reset_hour_utc)
        in_flight = Generation.status.in_(IN_FLIGHT_STATUSES)
        today = Generation.created_at >= day_start

        stmt = select(
            func.coalesce(
                func.sum(case((in_flight, 0), else_=Generation.credits_earned)), 0
            ),
            func.coalesce(
                func.sum(case((in_flight, Generation.credits_requested), else_=0)), 0
            ),
            func.coalesce(
                func.sum(
                    case((and_(today, ~in_flight), Generation.credits_earned), else_=0)
                ),
                0,
            ),
            func.coalesce(
                func.sum(
                    case((and_(today, in_flight), Generation.credits_requested), else_=0)
                ),
                0,
            ),
        ).where(Generation.token_id == token.id)

        used_total, reserved_total, used_daily, reserved_daily = (
            await self.session.execute(stmt)
        ).one()

        remaining_total = (
            token.total_limit - used_total - reserved_total
            if token.total_limit is not None
            else None
        )
        remaining_daily = (
            token.daily_limit - used_daily - reserved_daily
            if token.daily_limit is not None
            else None
        )
        return TokenUsageSnapshot(
            used_total=int(used_total),
            reserved_total=int(reserved_total),
            used_daily=int(used_daily),
            reserved_daily=int(reserved_daily),
            remaining_total=max(int(remaining_total), 0) if remaining_total is not None else None,
            remaining_daily=max(int(remaining_daily), 0) if remaining_daily is not None else None,
        )

    # ========================================================================
    # Client token primitives
    # ========================================================================

    async def use_client_token_credits(self, client_token_id: UUID, credits: int) -> TokenCreditsResult:
        """Consume credits from an active client token; never exceeds total_credits."""
        if credits <= 0:
            raise ValueError(f"credits must be positive: {credits}")

        stmt = (
            update(ClientToken)
            .where(
                ClientToken.id == client_token_id,
                ClientToken.is_active.is_(True),
                ClientToken.credits_used + credits <= ClientToken.total_credits,
            )
            .values(credits_used=ClientToken.credits_used + credits)
            .returning(ClientToken.total_credits - ClientToken.credits_used)
            .execution_options(synchronize_session=False)
        )
        remaining = (await self.session.execute(stmt)).scalar_one_or_none()

        if remaining is None:
            token = await self.session.get(ClientToken, client_token_id)
            await self.session.commit()
            if token is None:
                return TokenCreditsResult(success=False, error=LedgerErrorCode.TOKEN_NOT_FOUND)
            if not token.is_active:
                return TokenCreditsResult(
                    success=False, remaining=token.remaining, error=LedgerErrorCode.TOKEN_INACTIVE
                )
            return TokenCreditsResult(
                success=False,
                remaining=token.remaining,
                error=LedgerErrorCode.INSUFFICIENT_CREDITS,
            )

        await self.session.commit()
        logger.info(
            "client_token_credits_used",
            client_token_id=str(client_token_id),
            credits=credits,
            remaining=remaining,
        )
        return TokenCreditsResult(success=True, remaining=int(remaining))

    async def refund_client_token_credits(
        self, client_token_id: UUID, credits: int
    ) -> TokenCreditsResult:
        """Return credits to a client token; credits_used never goes negative."""
        if credits <= 0:
            raise ValueError(f"credits must be positive: {credits}")

        stmt = (
            update(ClientToken)
            .where(ClientToken.id == client_token_id)
            .values(credits_used=func.greatest(ClientToken.credits_used - credits, 0))
            .returning(ClientToken.total_credits - ClientToken.credits_used)
            .execution_options(synchronize_session=False)
        )
        remaining = (await self.session.execute(stmt)).scalar_one_or_none()
        await self.session.commit()

        if remaining is None:
            return TokenCreditsResult(success=False, error=LedgerErrorCode.TOKEN_NOT_FOUND)

        logger.info(
            "client_token_credits_refunded",
            client_token_id=str(client_token_id),
            credits=credits,
            remaining=remaining,
        )
        return TokenCreditsResult(success=True, remaining=int(remaining))

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _lock_wallet_for_update(self, user_id: UUID) -> Wallet:
        """Create the wallet if missing, then lock its row."""
        now = utc_now()
        await self.session.execute(
            pg_insert(Wallet)
            .values(
                id=uuid4(),
                user_id=user_id,
                balance=Decimal("0.00"),
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[Wallet.user_id])
        )
        result = await self.session.execute(
            select(Wallet).where(Wallet.user_id == user_id).with_for_update()
        )
        return result.scalar_one()

    async def _find_deposit_by_reference(
        self, wallet_id: UUID, reference_id: str
    ) -> WalletTransaction | None:
        result = await self.session.execute(
            select(WalletTransaction).where(
                WalletTransaction.wallet_id == wallet_id,
                WalletTransaction.type == WalletTransactionType.DEPOSIT.value,
                WalletTransaction.reference_id == reference_id,
            )
        )
        return result.scalar_one_or_none()

    async def _lock_token_for_update(self, token_id: UUID) -> Token | None:
        result = await self.session.execute(
            select(Token).where(Token.id == token_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _last_generation_at(self, token_id: UUID) -> datetime | None:
        result = await self.session.execute(
            select(func.max(Generation.created_at)).where(Generation.token_id == token_id)
        )
        return result.scalar_one_or_none()

    async def _check_token_policy(self, token: Token | None, now: datetime) -> LedgerErrorCode | None:
        """Active / expiry / cooldown checks shared by reserve and validate."""
        if token is None:
            return LedgerErrorCode.TOKEN_NOT_FOUND
        if not token.is_active:
            return LedgerErrorCode.TOKEN_INACTIVE
        if token.expires_at is not None and token.expires_at <= now:
            return LedgerErrorCode.TOKEN_EXPIRED
        if token.cooldown_minutes:
            last = await self._last_generation_at(token.id)
            if last is not None and now < last + timedelta(minutes=token.cooldown_minutes):
                return LedgerErrorCode.COOLDOWN_ACTIVE
        return None

"""
Generation Service - reads and status transitions for generation records.

Status writes go through an allow-list, and credits_earned is clamped in SQL
so that out-of-order or duplicate reports can never lower it or push it past
credits_requested.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Generation, utc_now
from app.exceptions import InvalidStatusError
from app.models.api import TERMINAL_STATUSES, GenerationStatus

logger = get_logger(__name__)

_TERMINAL_VALUES = tuple(s.value for s in TERMINAL_STATUSES)


def normalize_status(raw: str) -> GenerationStatus:
    """Parse a status string against the allow-list; raises InvalidStatusError."""
    try:
        return GenerationStatus(raw.strip().lower())
    except ValueError:
        raise InvalidStatusError(raw) from None


def clamp_credits(current: int, reported: int, requested: int) -> int:
    """Python mirror of the SQL clamp: never lower, never above requested."""
    return min(max(current, reported), requested)


class GenerationService:
    """Lookup and status-sync operations on generations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, generation_id: UUID) -> Generation | None:
        return await self.session.get(Generation, generation_id)

    async def get_by_farm_id(self, farm_id: str) -> Generation | None:
        result = await self.session.execute(select(Generation).where(Generation.farm_id == farm_id))
        return result.scalar_one_or_none()

    async def find_renamed(self, previous_farm_id: str) -> Generation | None:
        """Generation whose placeholder `previous_farm_id` was replaced by dequeue."""
        result = await self.session.execute(
            select(Generation)
            .where(Generation.previous_farm_id == previous_farm_id)
            .order_by(Generation.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def queue_position(self, generation: Generation) -> int:
        """1-based FIFO position among queued generations."""
        result = await self.session.execute(
            select(func.count())
            .select_from(Generation)
            .where(
                Generation.status == GenerationStatus.QUEUED.value,
                Generation.created_at < generation.created_at,
            )
        )
        return int(result.scalar_one()) + 1

    async def active_for_client_token(self, client_token_id: UUID) -> list[Generation]:
        """Unsettled, non-terminal generations of a client token."""
        result = await self.session.execute(
            select(Generation)
            .where(
                Generation.client_token_id == client_token_id,
                Generation.settled_at.is_(None),
                Generation.status.not_in(_TERMINAL_VALUES),
            )
            .order_by(Generation.created_at)
        )
        return list(result.scalars().all())

    async def apply_status(
        self,
        farm_id: str,
        status: GenerationStatus | str,
        credits_earned: int | None = None,
        master_email: str | None = None,
        workspace_name: str | None = None,
        error_message: str | None = None,
    ) -> Generation | None:
        """
        Write an observed status / credit report onto a generation.

        A row already in a terminal status keeps it; credits are clamped in
        the same statement. Returns the updated row, or None if no generation
        has this farm_id.
        """
        new_status = status if isinstance(status, GenerationStatus) else normalize_status(status)

        current = await self.get_by_farm_id(farm_id)
        if current is None:
            return None

        values: dict[str, object] = {}
        if current.status not in _TERMINAL_VALUES:
            values["status"] = new_status.value
            if new_status == GenerationStatus.WAITING_INVITE:
                # First sighting only; repeated polls must not restart the invite timeout
                values["waiting_since"] = func.coalesce(Generation.waiting_since, utc_now())
        if credits_earned is not None:
            values["credits_earned"] = func.least(
                func.greatest(Generation.credits_earned, max(credits_earned, 0)),
                Generation.credits_requested,
            )
        if master_email:
            values["master_email"] = master_email
        if workspace_name:
            values["workspace_name"] = workspace_name
        if error_message:
            values["error_message"] = error_message

        if not values:
            return current

        previous_status = current.status

        stmt = (
            update(Generation)
            .where(Generation.id == current.id)
            .values(**values)
            .returning(Generation)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        updated = (await self.session.execute(stmt)).scalar_one_or_none()
        await self.session.commit()

        if updated is not None and updated.status != previous_status:
            logger.info(
                "generation_status_changed",
                generation_id=str(updated.id),
                farm_id=farm_id,
                status=updated.status,
                credits_earned=updated.credits_earned,
            )
        return updated

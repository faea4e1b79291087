"""Per-user generation quota.

``reserve`` charges one unit *before* the provider is called. The charge is
a single conditional UPDATE (``remaining > 0``) so two concurrent requests
from the same user can never drive a counter below zero.

If the database cannot record the charge, generation is still allowed and
the failure is logged: availability wins over strict enforcement here.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momentful.constants.models import ResourceType
from momentful.models.generation_limit import GenerationLimit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaReservation:
    allowed: bool
    # None when the counter could not be read or written
    remaining_after: int | None
    recorded: bool = True


def _remaining_column(resource_type: ResourceType):
    if resource_type == ResourceType.VIDEO:
        return GenerationLimit.videos_remaining
    return GenerationLimit.images_remaining


class QuotaGuard:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        default_images_limit: int = 10,
        default_videos_limit: int = 5,
    ) -> None:
        self._session_maker = session_maker
        self._default_images_limit = default_images_limit
        self._default_videos_limit = default_videos_limit

    async def _get_or_create(self, db: AsyncSession, user_id: str) -> GenerationLimit:
        result = await db.execute(select(GenerationLimit).where(GenerationLimit.user_id == user_id))
        limits = result.scalar_one_or_none()
        if limits is not None:
            return limits

        limits = GenerationLimit(
            user_id=user_id,
            images_remaining=self._default_images_limit,
            videos_remaining=self._default_videos_limit,
            images_limit=self._default_images_limit,
            videos_limit=self._default_videos_limit,
        )
        db.add(limits)
        try:
            await db.commit()
        except IntegrityError:
            # Another request provisioned the row first
            await db.rollback()
            result = await db.execute(select(GenerationLimit).where(GenerationLimit.user_id == user_id))
            return result.scalar_one()
        logger.info(f"Provisioned generation limits for user {user_id}")
        return limits

    async def get_limits(self, user_id: str) -> GenerationLimit:
        """Return the user's limits row, creating it with defaults on first use."""
        async with self._session_maker() as db:
            return await self._get_or_create(db, user_id)

    async def reserve(self, user_id: str, resource_type: ResourceType) -> QuotaReservation:
        column = _remaining_column(resource_type)

        try:
            async with self._session_maker() as db:
                limits = await self._get_or_create(db, user_id)
                current = getattr(limits, column.key)
                if current <= 0:
                    logger.info(f"User {user_id} has no {resource_type.value} generations left")
                    return QuotaReservation(allowed=False, remaining_after=0)

                result = await db.execute(
                    update(GenerationLimit)
                    .where(GenerationLimit.user_id == user_id, column > 0)
                    .values({column.key: column - 1})
                    .returning(column)
                )
                remaining_after = result.scalar_one_or_none()
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to record {resource_type.value} quota use for user {user_id}, "
                f"allowing generation anyway: {e}"
            )
            return QuotaReservation(allowed=True, remaining_after=None, recorded=False)

        if remaining_after is None:
            # A concurrent reservation took the last unit between read and update
            logger.info(f"User {user_id} lost the race for the last {resource_type.value} generation")
            return QuotaReservation(allowed=False, remaining_after=0)

        logger.info(f"User {user_id} reserved one {resource_type.value} generation, {remaining_after} left")
        return QuotaReservation(allowed=True, remaining_after=remaining_after)

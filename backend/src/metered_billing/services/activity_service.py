"""Activity tracking service: start/stop of billable usage intervals."""
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing import metrics
from metered_billing.exceptions import ConflictError, NotFoundError, ValidationError
from metered_billing.models.base import utcnow
from metered_billing.models.usage_interval import UsageInterval
from metered_billing.models.user import User

logger = structlog.get_logger(__name__)


def validate_activity_type(activity_type: Any) -> int:
    """
    Check that an activity type is a positive integer.

    Raises:
        ValidationError: If activity_type is not an int >= 1
    """
    if isinstance(activity_type, bool) or not isinstance(activity_type, int):
        raise ValidationError(
            "activity_type must be a number",
            context={"activity_type": repr(activity_type)},
        )
    if activity_type < 1:
        raise ValidationError(
            "activity_type must be a positive integer",
            context={"activity_type": activity_type},
        )
    return activity_type


class ActivityService:
    """
    State machine for billable intervals, per (user, activity type).

    Closed -> Open on start, Open -> Closed on end. Never more than one open
    interval per pair; starting again while open is a conflict, not an
    implicit close.
    """

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        """Initialize activity service with database session and clock."""
        self.db = db
        self.clock = clock

    async def start_activity(self, user_id: UUID, activity_type: int) -> UsageInterval:
        """
        Open a usage interval.

        Args:
            user_id: User UUID
            activity_type: Activity type number

        Returns:
            The new open interval

        Raises:
            ValidationError: If activity_type is invalid
            NotFoundError: If the user does not exist
            ConflictError: If an interval is already open; ``existing`` holds it
        """
        validate_activity_type(activity_type)

        user = await self.db.get(User, user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found", context={"user_id": str(user_id)})

        existing = await self.get_open_interval(user_id, activity_type)
        if existing:
            raise ConflictError(
                f"User already has an ongoing activity of type {activity_type}",
                existing=existing,
                context={"user_id": str(user_id), "activity_type": activity_type},
            )

        interval = UsageInterval(
            user_id=user_id,
            activity_type=activity_type,
            start_time=self.clock(),
            paid=False,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(interval)
                await self.db.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent start for the same pair
            existing = await self.get_open_interval(user_id, activity_type)
            raise ConflictError(
                f"User already has an ongoing activity of type {activity_type}",
                existing=existing,
                context={"user_id": str(user_id), "activity_type": activity_type},
            ) from e
        await self.db.refresh(interval)

        metrics.usage_intervals_started_total.inc()
        logger.info(
            "usage_interval_started",
            interval_id=str(interval.id),
            user_id=str(user_id),
            activity_type=activity_type,
        )
        return interval

    async def end_activity(self, user_id: UUID, activity_type: int) -> UsageInterval:
        """
        Close the most recently started open interval.

        Args:
            user_id: User UUID
            activity_type: Activity type number

        Returns:
            The closed interval, with duration_minutes set

        Raises:
            ValidationError: If activity_type is invalid
            ConflictError: If no interval is open for the pair
        """
        validate_activity_type(activity_type)

        interval = await self.get_open_interval(user_id, activity_type)
        if not interval:
            raise ConflictError(
                f"No ongoing activity of type {activity_type} found to end",
                context={"user_id": str(user_id), "activity_type": activity_type},
            )

        interval.close(self.clock())
        await self.db.flush()
        await self.db.refresh(interval)

        metrics.usage_intervals_closed_total.inc()
        metrics.usage_minutes_recorded_total.inc(interval.duration_minutes)
        logger.info(
            "usage_interval_closed",
            interval_id=str(interval.id),
            user_id=str(user_id),
            activity_type=activity_type,
            duration_minutes=interval.duration_minutes,
        )
        return interval

    async def get_open_interval(self, user_id: UUID, activity_type: int) -> Optional[UsageInterval]:
        """
        Get the most recently started open interval for a pair.

        Args:
            user_id: User UUID
            activity_type: Activity type number

        Returns:
            Open interval or None
        """
        result = await self.db.execute(
            select(UsageInterval)
            .where(
                UsageInterval.user_id == user_id,
                UsageInterval.activity_type == activity_type,
                UsageInterval.end_time.is_(None),
            )
            .order_by(UsageInterval.start_time.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_intervals(
        self,
        user_id: UUID,
        paid: Optional[bool] = None,
        activity_type: Optional[int] = None,
    ) -> list[UsageInterval]:
        """
        List a user's intervals, oldest first.

        Args:
            user_id: User UUID
            paid: Filter by paid flag (optional)
            activity_type: Filter by activity type (optional)

        Returns:
            List of intervals
        """
        query = select(UsageInterval).where(UsageInterval.user_id == user_id)
        if paid is not None:
            query = query.where(UsageInterval.paid.is_(paid))
        if activity_type is not None:
            query = query.where(UsageInterval.activity_type == activity_type)

        result = await self.db.execute(query.order_by(UsageInterval.start_time, UsageInterval.created_at))
        return list(result.scalars().all())

"""Usage aggregation and settlement claims over usage intervals."""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.models.usage_interval import UsageInterval
from metered_billing.schemas.usage import UnpaidUsageSummary
from metered_billing.utils.currency import usage_amount

logger = structlog.get_logger(__name__)


def _unpaid_closed(user_id: UUID):  # noqa: ANN202
    return (
        UsageInterval.user_id == user_id,
        UsageInterval.paid.is_(False),
        UsageInterval.end_time.is_not(None),
    )


class UsageService:
    """Service for reading unpaid usage and moving intervals through settlement."""

    def __init__(self, db: AsyncSession):
        """Initialize usage service with database session."""
        self.db = db

    async def unpaid_total_minutes(self, user_id: UUID) -> int:
        """
        Sum the billable minutes of a user's closed, unpaid intervals.

        Open intervals are excluded. Unknown users total 0.

        Args:
            user_id: User UUID

        Returns:
            Total minutes (0 when nothing is owed)
        """
        result = await self.db.execute(
            select(func.coalesce(func.sum(UsageInterval.duration_minutes), 0)).where(*_unpaid_closed(user_id))
        )
        return int(result.scalar_one())

    async def get_unpaid_total(self, user_id: UUID) -> int:
        """Caller-facing name for the unpaid minute total."""
        return await self.unpaid_total_minutes(user_id)

    async def unpaid_intervals(self, user_id: UUID) -> list[UsageInterval]:
        """List a user's closed, unpaid intervals, oldest first."""
        result = await self.db.execute(
            select(UsageInterval)
            .where(*_unpaid_closed(user_id))
            .order_by(UsageInterval.start_time, UsageInterval.created_at)
        )
        return list(result.scalars().all())

    async def get_unpaid_summary(self, user_id: UUID, rate_per_minute: Decimal, currency: str) -> UnpaidUsageSummary:
        """
        Summarize what a user currently owes.

        Args:
            user_id: User UUID
            rate_per_minute: Charge per minute in currency units
            currency: ISO currency code

        Returns:
            Unpaid minutes, interval count and the amount they would settle for
        """
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(UsageInterval.duration_minutes), 0),
                func.count(UsageInterval.id),
            ).where(*_unpaid_closed(user_id))
        )
        total_minutes, interval_count = result.one()
        return UnpaidUsageSummary(
            user_id=user_id,
            total_minutes=int(total_minutes),
            interval_count=int(interval_count),
            amount=usage_amount(int(total_minutes), rate_per_minute, currency),
            currency=currency,
        )

    async def users_with_unpaid_usage(self) -> list[UUID]:
        """List users holding closed, unpaid and unclaimed intervals."""
        result = await self.db.execute(
            select(UsageInterval.user_id)
            .where(
                UsageInterval.paid.is_(False),
                UsageInterval.end_time.is_not(None),
                UsageInterval.settlement_claim.is_(None),
            )
            .distinct()
        )
        return list(result.scalars().all())

    async def claim_unpaid_intervals(self, user_id: UUID, claim_id: UUID, claimed_at: datetime) -> int:
        """
        Stamp every closed, unpaid, unclaimed interval of a user with a claim.

        The update is conditional, so two concurrent runs can never hold the
        same interval. Intervals closed after this call are left for the next
        run.

        Args:
            user_id: User UUID
            claim_id: Settlement claim UUID
            claimed_at: Claim timestamp

        Returns:
            Number of intervals claimed
        """
        result = await self.db.execute(
            update(UsageInterval)
            .where(*_unpaid_closed(user_id), UsageInterval.settlement_claim.is_(None))
            .values(settlement_claim=claim_id, claimed_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        logger.debug("usage_intervals_claimed", user_id=str(user_id), claim_id=str(claim_id), count=result.rowcount)
        return result.rowcount

    async def claimed_intervals(self, claim_id: UUID) -> list[UsageInterval]:
        """List the unpaid intervals held by a claim, oldest first."""
        result = await self.db.execute(
            select(UsageInterval)
            .where(UsageInterval.settlement_claim == claim_id, UsageInterval.paid.is_(False))
            .order_by(UsageInterval.start_time, UsageInterval.created_at)
        )
        return list(result.scalars().all())

    async def mark_claim_paid(self, claim_id: UUID, ledger_entry_id: UUID, interval_ids: Optional[list[UUID]] = None) -> int:
        """
        Mark the intervals held by a claim as paid by a ledger entry.

        Clears the claim on the intervals it updates.

        Args:
            claim_id: Settlement claim UUID
            ledger_entry_id: Successful ledger entry that paid for them
            interval_ids: Restrict the update to these intervals (optional)

        Returns:
            Number of intervals marked paid; callers compare it to the
            number they expected
        """
        query = update(UsageInterval).where(
            UsageInterval.settlement_claim == claim_id,
            UsageInterval.paid.is_(False),
        )
        if interval_ids is not None:
            query = query.where(UsageInterval.id.in_(interval_ids))

        result = await self.db.execute(
            query.values(paid=True, payment_ref=ledger_entry_id, settlement_claim=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def release_claim(self, claim_id: UUID) -> int:
        """
        Return a claim's unpaid intervals to the unpaid pool.

        Returns:
            Number of intervals released
        """
        result = await self.db.execute(
            update(UsageInterval)
            .where(UsageInterval.settlement_claim == claim_id, UsageInterval.paid.is_(False))
            .values(settlement_claim=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("settlement_claim_released", claim_id=str(claim_id), count=result.rowcount)
        return result.rowcount

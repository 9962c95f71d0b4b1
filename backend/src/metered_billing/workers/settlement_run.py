"""Scheduled settlement worker.

This worker runs periodically to:
1. Find users holding closed, unpaid usage
2. Settle all of them in one run with the configured default note
3. Report stuck settlement claims that need an operator
"""
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metered_billing.database import AsyncSessionLocal
from metered_billing.services.reconciliation_service import ReconciliationService
from metered_billing.services.settlement_service import SettlementService
from metered_billing.services.usage_service import UsageService

logger = structlog.get_logger(__name__)


async def process_scheduled_settlement(
    settlement_service: Optional[SettlementService] = None,
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    note: Optional[str] = None,
) -> dict[str, int]:
    """
    Settle every user with unpaid closed usage.

    This function should be called by a scheduler (cron, ARQ, Celery) once
    per settlement period.

    Args:
        settlement_service: Service to settle with; built from settings when omitted
        session_factory: Session factory for the lookup queries
        note: Ledger note; the configured default when omitted

    Returns:
        Dict with counts of settled users by outcome
    """
    if settlement_service is None:
        from metered_billing.deps import get_settlement_service

        settlement_service = get_settlement_service()

    try:
        async with session_factory() as db:
            user_ids = await UsageService(db).users_with_unpaid_usage()

        logger.info("scheduled_settlement_started", users_count=len(user_ids))

        if not user_ids:
            summary = {"users": 0, "succeeded": 0, "failed": 0, "skipped": 0, "cancelled": 0}
        else:
            report = await settlement_service.settle(user_ids, note=note)
            summary = {
                "users": report.total,
                "succeeded": report.succeeded,
                "failed": report.failed,
                "skipped": report.skipped,
                "cancelled": report.cancelled,
            }

        async with session_factory() as db:
            stuck_claims = await ReconciliationService(
                db, config=settlement_service.config, clock=settlement_service.clock
            ).list_stuck_claims()
        summary["stuck_claims"] = len(stuck_claims)

        if stuck_claims:
            logger.warning(
                "settlement_claims_need_reconciliation",
                claim_ids=[str(claim.claim_id) for claim in stuck_claims],
            )

        logger.info("scheduled_settlement_completed", **summary)
        return summary

    except Exception as e:
        logger.exception(
            "scheduled_settlement_job_error",
            exc_info=e,
        )
        raise

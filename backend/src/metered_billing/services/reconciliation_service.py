"""Operator reconciliation for settlement claims that never resolved.

A claim is left on intervals when a charge succeeded but its ledger entry or
the mark-paid batch could not be written, when the gateway timed out so the
charge outcome is unknown, or when a process died mid-run. Those intervals
are skipped by later runs until an operator applies a successful ledger
entry, confirms a timed-out charge, or releases the claim.
"""
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.config import Settings, settings as default_settings
from metered_billing.exceptions import ConflictError, NotFoundError
from metered_billing.models.base import utcnow
from metered_billing.models.ledger_entry import LedgerOutcome, TransactionLedgerEntry
from metered_billing.models.usage_interval import UsageInterval
from metered_billing.schemas.settlement import StuckClaim
from metered_billing.services.ledger_service import LedgerService
from metered_billing.services.usage_service import UsageService
from metered_billing.utils.audit import log_audit

logger = structlog.get_logger(__name__)


class ReconciliationService:
    """Service layer for resolving stranded settlement claims."""

    def __init__(
        self,
        db: AsyncSession,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize reconciliation service."""
        self.db = db
        self.config = config or default_settings
        self.clock = clock

    async def list_stuck_claims(self, older_than: Optional[timedelta] = None) -> list[StuckClaim]:
        """
        List claims still holding unpaid intervals after a cut-off age.

        Args:
            older_than: Minimum claim age; defaults to claim_stale_after_minutes

        Returns:
            One entry per claim, oldest first, with the ledger entry written
            under that claim if there is one
        """
        if older_than is None:
            older_than = timedelta(minutes=self.config.claim_stale_after_minutes)
        cutoff = self.clock() - older_than

        result = await self.db.execute(
            select(UsageInterval)
            .where(
                UsageInterval.settlement_claim.is_not(None),
                UsageInterval.paid.is_(False),
                UsageInterval.claimed_at <= cutoff,
            )
            .order_by(UsageInterval.claimed_at, UsageInterval.start_time)
        )

        grouped: dict[UUID, list[UsageInterval]] = {}
        for interval in result.scalars().all():
            grouped.setdefault(interval.settlement_claim, []).append(interval)

        ledger = LedgerService(self.db)
        stuck = []
        for claim_id, intervals in grouped.items():
            entries = await ledger.entries_for_claim(claim_id)
            entry = entries[-1] if entries else None
            stuck.append(
                StuckClaim(
                    claim_id=claim_id,
                    user_id=intervals[0].user_id,
                    interval_ids=[interval.id for interval in intervals],
                    minutes=sum(interval.duration_minutes or 0 for interval in intervals),
                    claimed_at=min(interval.claimed_at for interval in intervals),
                    ledger_entry_id=entry.id if entry else None,
                    ledger_outcome=entry.outcome if entry else None,
                )
            )

        logger.info("stuck_claims_listed", count=len(stuck), cutoff=cutoff.isoformat())
        return stuck

    async def apply_settlement(self, entry_id: UUID, actor: Optional[str] = None) -> int:
        """
        Mark the intervals covered by a successful ledger entry as paid.

        Args:
            entry_id: Ledger entry UUID
            actor: Operator applying the entry, for the audit log

        Returns:
            Number of intervals marked paid by this call

        Raises:
            NotFoundError: If the entry does not exist
            ConflictError: If the entry failed, or a covered interval was
                paid by a different entry
        """
        entry = await LedgerService(self.db).get_entry(entry_id)
        if not entry:
            raise NotFoundError(f"Ledger entry {entry_id} not found", context={"entry_id": str(entry_id)})
        if not entry.succeeded:
            raise ConflictError(
                "Only successful ledger entries can be applied",
                existing=entry,
                context={"entry_id": str(entry_id)},
            )

        interval_ids = [UUID(str(interval_id)) for interval_id in entry.covered_usage_interval_ids]
        result = await self.db.execute(select(UsageInterval).where(UsageInterval.id.in_(interval_ids)))
        intervals = list(result.scalars().all())

        paid_elsewhere = [i for i in intervals if i.paid and i.payment_ref != entry.id]
        if paid_elsewhere:
            raise ConflictError(
                "Covered usage was already paid by another ledger entry",
                existing=paid_elsewhere,
                context={"entry_id": str(entry_id), "interval_count": len(paid_elsewhere)},
            )

        result = await self.db.execute(
            update(UsageInterval)
            .where(UsageInterval.id.in_(interval_ids), UsageInterval.paid.is_(False))
            .values(paid=True, payment_ref=entry.id, settlement_claim=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()

        await log_audit(
            db=self.db,
            entity_type=TransactionLedgerEntry.__tablename__,
            entity_id=entry.id,
            action="apply",
            actor=actor,
            changes={"paid_interval_count": {"old": 0, "new": result.rowcount}},
        )
        logger.info(
            "ledger_entry_applied",
            entry_id=str(entry.id),
            user_id=str(entry.user_id),
            interval_count=result.rowcount,
        )
        return result.rowcount

    async def confirm_charge(
        self,
        claim_id: UUID,
        external_transaction_ref: str,
        actor: Optional[str] = None,
    ) -> TransactionLedgerEntry:
        """
        Record that the processor did accept a charge reported as failed, then apply it.

        Used for timed-out charges found at the processor under the claim's
        idempotency key. The failed entry is left as written; a successful
        entry covering the same intervals is appended and applied.

        Args:
            claim_id: Settlement claim UUID (the charge's idempotency key)
            external_transaction_ref: Processor transaction ID of the accepted charge
            actor: Operator confirming the charge, for the audit log

        Returns:
            The appended successful ledger entry

        Raises:
            NotFoundError: If no ledger entry exists for the claim
            ConflictError: If the claim already has a successful entry
        """
        ledger = LedgerService(self.db)
        entries = await ledger.entries_for_claim(claim_id)
        if not entries:
            raise NotFoundError(
                f"No ledger entry for settlement claim {claim_id}",
                context={"claim_id": str(claim_id)},
            )
        succeeded = [entry for entry in entries if entry.succeeded]
        if succeeded:
            raise ConflictError(
                "Claim already has a successful charge; apply its ledger entry instead",
                existing=succeeded[0],
                context={"claim_id": str(claim_id)},
            )

        failed = entries[-1]
        entry = await ledger.append(
            user_id=failed.user_id,
            covered_interval_ids=failed.covered_usage_interval_ids,
            minutes=failed.minutes,
            rate_per_minute=failed.rate_per_minute,
            amount=failed.amount,
            currency=failed.currency,
            method_kind=failed.method_kind,
            outcome=LedgerOutcome.SUCCESS,
            settlement_claim=claim_id,
            credential_id=failed.credential_id,
            external_transaction_ref=external_transaction_ref,
            response_message="Charge confirmed at processor by operator",
            note=failed.note,
        )
        await log_audit(
            db=self.db,
            entity_type=TransactionLedgerEntry.__tablename__,
            entity_id=entry.id,
            action="confirm",
            actor=actor,
            changes={"confirms_entry": {"old": None, "new": str(failed.id)}},
        )
        await self.apply_settlement(entry.id, actor=actor)
        return entry

    async def release_claim(self, claim_id: UUID, actor: Optional[str] = None) -> int:
        """
        Return a claim's intervals to the unpaid pool so the next run charges them.

        Args:
            claim_id: Settlement claim UUID
            actor: Operator releasing the claim, for the audit log

        Returns:
            Number of intervals released

        Raises:
            ConflictError: If a successful ledger entry exists for the claim
        """
        entries = await LedgerService(self.db).entries_for_claim(claim_id)
        succeeded = [entry for entry in entries if entry.succeeded]
        if succeeded:
            raise ConflictError(
                "Claim has a successful charge; apply its ledger entry instead",
                existing=succeeded[0],
                context={"claim_id": str(claim_id)},
            )

        released = await UsageService(self.db).release_claim(claim_id)
        if released:
            await log_audit(
                db=self.db,
                entity_type="settlement_claim",
                entity_id=claim_id,
                action="release",
                actor=actor,
                changes={"released_interval_count": {"old": 0, "new": released}},
            )
        return released

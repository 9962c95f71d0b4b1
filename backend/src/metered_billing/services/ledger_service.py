"""Transaction ledger service: append-only settlement outcomes."""
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.exceptions import PersistenceError
from metered_billing.models.ledger_entry import LedgerOutcome, TransactionLedgerEntry
from metered_billing.models.payment_credential import MethodKind

logger = structlog.get_logger(__name__)


class LedgerService:
    """Service layer for the transaction ledger. Entries are never updated or deleted."""

    def __init__(self, db: AsyncSession):
        """Initialize ledger service with database session."""
        self.db = db

    async def append(
        self,
        user_id: UUID,
        covered_interval_ids: list[UUID],
        minutes: int,
        rate_per_minute: Decimal,
        amount: int,
        currency: str,
        method_kind: MethodKind,
        outcome: LedgerOutcome,
        settlement_claim: UUID,
        credential_id: Optional[UUID] = None,
        external_transaction_ref: Optional[str] = None,
        failure_reason: Optional[str] = None,
        auth_code: Optional[str] = None,
        response_code: Optional[str] = None,
        response_message: Optional[str] = None,
        note: Optional[str] = None,
    ) -> TransactionLedgerEntry:
        """
        Append one settlement outcome to the ledger.

        Args:
            user_id: User that was charged
            covered_interval_ids: Intervals the charge covers
            minutes: Billable minutes covered
            rate_per_minute: Rate in effect
            amount: Amount in cents
            currency: ISO currency code
            method_kind: Kind of credential charged
            outcome: SUCCESS or FAILED
            settlement_claim: Claim that produced the attempt
            credential_id: Credential charged (optional)
            external_transaction_ref: Processor transaction ID (optional)
            failure_reason: Why the attempt failed (optional)
            auth_code: Processor authorization code (optional)
            response_code: Processor response code (optional)
            response_message: Processor response text (optional)
            note: Free-text run note (optional)

        Returns:
            The persisted entry

        Raises:
            PersistenceError: If the entry could not be written
        """
        entry = TransactionLedgerEntry(
            user_id=user_id,
            covered_usage_interval_ids=[str(interval_id) for interval_id in covered_interval_ids],
            minutes=minutes,
            rate_per_minute=rate_per_minute,
            amount=amount,
            currency=currency,
            method_kind=MethodKind(method_kind),
            credential_id=credential_id,
            external_transaction_ref=external_transaction_ref,
            outcome=outcome,
            failure_reason=failure_reason,
            auth_code=auth_code,
            response_code=response_code,
            response_message=response_message,
            note=note,
            settlement_claim=settlement_claim,
        )
        self.db.add(entry)
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to write ledger entry",
                context={"user_id": str(user_id), "settlement_claim": str(settlement_claim)},
            ) from e

        logger.info(
            "ledger_entry_appended",
            entry_id=str(entry.id),
            user_id=str(user_id),
            outcome=outcome.value,
            amount=amount,
            minutes=minutes,
            interval_count=len(covered_interval_ids),
        )
        return entry

    async def get_entry(self, entry_id: UUID) -> Optional[TransactionLedgerEntry]:
        """
        Get ledger entry by ID.

        Args:
            entry_id: Ledger entry UUID

        Returns:
            Entry or None
        """
        result = await self.db.execute(select(TransactionLedgerEntry).where(TransactionLedgerEntry.id == entry_id))
        return result.scalar_one_or_none()

    async def entries_for_user(self, user_id: UUID) -> list[TransactionLedgerEntry]:
        """
        List a user's ledger entries in creation order.

        Args:
            user_id: User UUID

        Returns:
            Entries, oldest first; empty for unknown users
        """
        result = await self.db.execute(
            select(TransactionLedgerEntry)
            .where(TransactionLedgerEntry.user_id == user_id)
            .order_by(TransactionLedgerEntry.created_at, TransactionLedgerEntry.id)
        )
        return list(result.scalars().all())

    async def entries_for_claim(self, claim_id: UUID) -> list[TransactionLedgerEntry]:
        """List the entries produced under one settlement claim."""
        result = await self.db.execute(
            select(TransactionLedgerEntry)
            .where(TransactionLedgerEntry.settlement_claim == claim_id)
            .order_by(TransactionLedgerEntry.created_at, TransactionLedgerEntry.id)
        )
        return list(result.scalars().all())

    async def list_entries(
        self,
        outcome: Optional[LedgerOutcome] = None,
        page: int = 1,
        page_size: int = 100,
    ) -> list[TransactionLedgerEntry]:
        """
        List ledger entries across users, newest first.

        Args:
            outcome: Filter by outcome (optional)
            page: Page number, starting at 1
            page_size: Entries per page

        Returns:
            Entries
        """
        query = select(TransactionLedgerEntry)
        if outcome is not None:
            query = query.where(TransactionLedgerEntry.outcome == outcome)

        result = await self.db.execute(
            query.order_by(TransactionLedgerEntry.created_at.desc(), TransactionLedgerEntry.id.desc())
            .limit(page_size)
            .offset((max(page, 1) - 1) * page_size)
        )
        return list(result.scalars().all())

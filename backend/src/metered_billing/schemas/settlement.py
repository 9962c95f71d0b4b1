"""Pydantic schemas for settlement runs and stuck claims."""
import enum
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from metered_billing.models.ledger_entry import LedgerOutcome
from metered_billing.models.payment_credential import MethodKind


class SettlementStatus(str, enum.Enum):
    """Per-user settlement outcome."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class UserSettlementResult(BaseModel):
    """Outcome of settling one user."""

    user_id: UUID
    status: SettlementStatus
    amount: Optional[int] = Field(default=None, description="Charged or attempted amount in cents")
    minutes: int = 0
    covered_interval_count: int = 0
    method_kind: Optional[MethodKind] = None
    ledger_entry_id: Optional[UUID] = None
    external_transaction_ref: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    reconciliation_required: bool = False


class SettlementReport(BaseModel):
    """Aggregate outcome of one settlement run."""

    run_id: UUID
    note: str
    currency: str
    total: int = Field(..., description="Number of distinct users attempted")
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    results: list[UserSettlementResult] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime

    def result_for(self, user_id: UUID) -> Optional[UserSettlementResult]:
        """Look up the outcome for one user."""
        return next((r for r in self.results if r.user_id == user_id), None)


class StuckClaim(BaseModel):
    """Intervals held by a settlement claim that never resolved."""

    claim_id: UUID
    user_id: UUID
    interval_ids: list[UUID]
    minutes: int
    claimed_at: datetime
    ledger_entry_id: Optional[UUID] = None
    ledger_outcome: Optional[LedgerOutcome] = None

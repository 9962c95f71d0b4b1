"""SQLAlchemy ORM models for the metering and settlement core."""
# Import all models here to ensure they are registered on the metadata

from metered_billing.models.base import Base, utcnow
from metered_billing.models.user import User
from metered_billing.models.payment_credential import MethodKind, PaymentCredential
from metered_billing.models.ledger_entry import LedgerOutcome, TransactionLedgerEntry
from metered_billing.models.usage_interval import UsageInterval, billable_minutes
from metered_billing.models.audit_log import AuditLog

__all__ = [
    "Base",
    "utcnow",
    "User",
    "MethodKind",
    "PaymentCredential",
    "LedgerOutcome",
    "TransactionLedgerEntry",
    "UsageInterval",
    "billable_minutes",
    "AuditLog",
]

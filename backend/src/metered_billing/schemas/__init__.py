"""Pydantic schemas for credentials, usage and settlement."""

from metered_billing.schemas.credential import (
    BankFields,
    CardFields,
    CredentialFields,
    PaymentCredentialRead,
    detect_card_brand,
    parse_credential_fields,
)
from metered_billing.schemas.settlement import (
    SettlementReport,
    SettlementStatus,
    StuckClaim,
    UserSettlementResult,
)
from metered_billing.schemas.usage import UnpaidUsageSummary

__all__ = [
    "BankFields",
    "CardFields",
    "CredentialFields",
    "PaymentCredentialRead",
    "detect_card_brand",
    "parse_credential_fields",
    "SettlementReport",
    "SettlementStatus",
    "StuckClaim",
    "UserSettlementResult",
    "UnpaidUsageSummary",
]

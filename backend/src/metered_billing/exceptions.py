"""Error taxonomy for the metering and settlement core.

Every error carries a machine-readable ``code`` so callers (API layers,
workers, settlement reports) can map failures without string matching.
"""
from typing import Any, Optional


class ErrorCode:
    """Standard error codes used across the core."""

    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    NO_DEFAULT_PAYMENT_METHOD = "no_default_payment_method"
    VAULT_ERROR = "vault_error"
    VAULT_INTEGRITY_ERROR = "vault_integrity_error"
    GATEWAY_ERROR = "gateway_error"
    GATEWAY_TIMEOUT = "gateway_timeout"
    PERSISTENCE_ERROR = "persistence_error"
    INTERNAL_ERROR = "internal_error"


class BillingError(Exception):
    """Base class for all billing core errors."""

    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(BillingError):
    """Input has the wrong shape or type."""

    code = ErrorCode.VALIDATION_ERROR


class NotFoundError(BillingError):
    """Referenced user, interval, credential or ledger entry does not exist."""

    code = ErrorCode.NOT_FOUND


class ConflictError(BillingError):
    """State machine violation, e.g. double start or end without start."""

    code = ErrorCode.CONFLICT

    def __init__(self, message: str, *, existing: Any = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message, context=context)
        self.existing = existing


class NoDefaultPaymentMethod(BillingError):
    """User has no default payment credential to charge."""

    code = ErrorCode.NO_DEFAULT_PAYMENT_METHOD


class VaultError(BillingError):
    """Credential encryption or decryption failed."""

    code = ErrorCode.VAULT_ERROR


class VaultIntegrityError(VaultError):
    """Ciphertext failed authentication (tampered data or wrong iv)."""

    code = ErrorCode.VAULT_INTEGRITY_ERROR


class GatewayError(BillingError):
    """Payment processor call failed or timed out."""

    code = ErrorCode.GATEWAY_ERROR

    def __init__(self, reason: str, *, context: Optional[dict[str, Any]] = None):
        super().__init__(reason, context=context)
        self.reason = reason


class PersistenceError(BillingError):
    """Storage write failed or was refused."""

    code = ErrorCode.PERSISTENCE_ERROR

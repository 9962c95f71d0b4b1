"""Pydantic schemas for payment credentials.

Raw credential fields are a tagged union discriminated by ``method_kind``:
``CardFields`` or ``BankFields``. They are validated here, before anything
is encrypted or sent to the gateway.
"""
import re
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from metered_billing.exceptions import ValidationError
from metered_billing.models.payment_credential import MethodKind

CARD_BRAND_PATTERNS = {
    "visa": re.compile(r"^4[0-9]{12}(?:[0-9]{3})?$"),
    "mastercard": re.compile(r"^5[1-5][0-9]{14}$"),
    "amex": re.compile(r"^3[47][0-9]{13}$"),
    "discover": re.compile(r"^6(?:011|5[0-9]{2})[0-9]{12}$"),
    "diners": re.compile(r"^3(?:0[0-5]|[68][0-9])[0-9]{11}$"),
    "jcb": re.compile(r"^(?:2131|1800|35\d{3})\d{11}$"),
}


def detect_card_brand(card_number: str) -> str:
    """
    Detect the card network from the card number.

    Args:
        card_number: Card number, spaces allowed

    Returns:
        Brand name, or "unknown"
    """
    cleaned = re.sub(r"\s+", "", card_number)
    for brand, pattern in CARD_BRAND_PATTERNS.items():
        if pattern.match(cleaned):
            return brand
    return "unknown"


class CardFields(BaseModel):
    """Raw card details."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    method_kind: Literal["card"] = "card"
    number: str = Field(..., description="Card number (digits, spaces allowed on input)")
    expiry: str = Field(..., description="Expiry as MMYY, e.g. 1226 for December 2026")
    security_code: str = Field(..., description="Card security code (CVV)")

    @field_validator("number")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        cleaned = re.sub(r"\s+", "", value)
        if not re.fullmatch(r"\d{12,19}", cleaned):
            raise ValueError("card number must contain 12 to 19 digits")
        return cleaned

    @field_validator("expiry")
    @classmethod
    def _valid_expiry(cls, value: str) -> str:
        if not re.fullmatch(r"\d{4}", value) or not 1 <= int(value[:2]) <= 12:
            raise ValueError("expiry must be MMYY")
        return value

    @field_validator("security_code")
    @classmethod
    def _valid_security_code(cls, value: str) -> str:
        if not re.fullmatch(r"\d{3,4}", value):
            raise ValueError("security code must be 3 or 4 digits")
        return value

    @property
    def expiry_month(self) -> str:
        return self.expiry[:2]

    @property
    def expiry_year(self) -> str:
        return f"20{self.expiry[2:]}"

    @property
    def last4(self) -> str:
        return self.number[-4:]

    @property
    def brand(self) -> str:
        return detect_card_brand(self.number)


class BankFields(BaseModel):
    """Raw bank account details."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    method_kind: Literal["bank"] = "bank"
    account_type: Literal["checking", "savings", "business_checking"]
    routing_number: str = Field(..., pattern=r"^\d{9}$", description="ABA routing number")
    account_number: str = Field(..., pattern=r"^\d{4,17}$", description="Bank account number")
    holder_name: str = Field(..., min_length=1, max_length=64, description="Name on the account")
    bank_name: Optional[str] = Field(default=None, max_length=64)

    @field_validator("account_type", mode="before")
    @classmethod
    def _lower_account_type(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @property
    def last4(self) -> str:
        return self.account_number[-4:]


CredentialFields = Annotated[Union[CardFields, BankFields], Field(discriminator="method_kind")]

_credential_fields_adapter: TypeAdapter[CredentialFields] = TypeAdapter(CredentialFields)


def _field_path(loc: tuple) -> str:
    # Union errors are located under the discriminator tag first
    if loc and loc[0] in (MethodKind.CARD.value, MethodKind.BANK.value):
        loc = loc[1:]
    return ".".join(str(part) for part in loc) or "method_kind"


def parse_credential_fields(method_kind: Union[MethodKind, str], raw_fields: Any) -> Union[CardFields, BankFields]:
    """
    Validate raw credential fields for the given method kind.

    Args:
        method_kind: card or bank
        raw_fields: Mapping of raw fields (or JSON bytes/str)

    Returns:
        Validated CardFields or BankFields

    Raises:
        ValidationError: If the kind is unknown or the fields do not match it
    """
    try:
        kind = MethodKind(method_kind)
    except ValueError as e:
        raise ValidationError(
            f"Invalid method_kind {method_kind!r}. Must be 'card' or 'bank'",
            context={"method_kind": str(method_kind)},
        ) from e

    try:
        if isinstance(raw_fields, (bytes, str)):
            fields = _credential_fields_adapter.validate_json(raw_fields)
        elif isinstance(raw_fields, dict):
            fields = _credential_fields_adapter.validate_python({**raw_fields, "method_kind": kind.value})
        else:
            fields = _credential_fields_adapter.validate_python(raw_fields)
    except PydanticValidationError as e:
        # Report field names only; values may be card data
        invalid = [_field_path(err["loc"]) for err in e.errors()]
        raise ValidationError(
            f"Invalid {kind.value} credential fields: {', '.join(invalid)}",
            context={"fields": invalid},
        ) from None

    if fields.method_kind != kind.value:
        raise ValidationError(
            f"Credential fields describe {fields.method_kind}, expected {kind.value}",
            context={"method_kind": kind.value},
        )
    return fields


class PaymentCredentialRead(BaseModel):
    """Schema for returning payment credential data (never secrets)."""

    id: UUID
    user_id: UUID
    method_kind: MethodKind
    is_default: bool
    last4: Optional[str]
    brand: Optional[str]
    expiry_month: Optional[str]
    expiry_year: Optional[str]
    account_type: Optional[str]
    bank_name: Optional[str]
    gateway_payment_ref: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

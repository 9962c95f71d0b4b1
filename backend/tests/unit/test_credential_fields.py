"""Unit tests for credential field validation and card brand detection."""
import pytest

from metered_billing.exceptions import ValidationError
from metered_billing.schemas.credential import BankFields, CardFields, detect_card_brand, parse_credential_fields
from utils.factories import BankAccountFactory, CardFactory


@pytest.mark.parametrize(
    "number,brand",
    [
        ("4111111111111111", "visa"),
        ("5555555555554444", "mastercard"),
        ("378282246310005", "amex"),
        ("6011111111111117", "discover"),
        ("30569309025904", "diners"),
        ("3530111333300000", "jcb"),
        ("9999999999999999", "unknown"),
    ],
)
def test_detect_card_brand(number: str, brand: str) -> None:
    """Test card network detection from the number."""
    assert detect_card_brand(number) == brand


def test_parse_card_fields() -> None:
    """Test that valid card fields parse with display details."""
    fields = parse_credential_fields(
        "card", {"number": "4111 1111 1111 1234", "expiry": "0927", "security_code": "123"}
    )

    assert isinstance(fields, CardFields)
    assert fields.number == "4111111111111234"
    assert fields.last4 == "1234"
    assert fields.brand == "visa"
    assert fields.expiry_month == "09"
    assert fields.expiry_year == "2027"


def test_parse_bank_fields() -> None:
    """Test that valid bank fields parse and normalize the account type."""
    fields = parse_credential_fields(
        "bank",
        BankAccountFactory.create({"account_type": "CHECKING", "account_number": "000123456789"}),
    )

    assert isinstance(fields, BankFields)
    assert fields.account_type == "checking"
    assert fields.last4 == "6789"


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"number": "4111"}, "number"),
        ({"expiry": "1327"}, "expiry"),
        ({"expiry": "12/27"}, "expiry"),
        ({"security_code": "12"}, "security_code"),
    ],
)
def test_invalid_card_fields_name_the_field_without_its_value(overrides: dict, field: str) -> None:
    """Test that card validation errors list field names but never echo values."""
    raw = CardFactory.create(overrides)

    with pytest.raises(ValidationError) as exc_info:
        parse_credential_fields("card", raw)

    assert field in exc_info.value.message
    assert raw["number"] not in exc_info.value.message
    assert exc_info.value.__cause__ is None


def test_invalid_bank_routing_number() -> None:
    """Test that a routing number must be nine digits."""
    with pytest.raises(ValidationError) as exc_info:
        parse_credential_fields("bank", BankAccountFactory.create({"routing_number": "12345"}))

    assert exc_info.value.context["fields"] == ["routing_number"]
    assert exc_info.value.message == "Invalid bank credential fields: routing_number"


def test_unknown_fields_are_rejected() -> None:
    """Test that extra keys are not silently accepted."""
    with pytest.raises(ValidationError):
        parse_credential_fields("card", CardFactory.create({"pin": "0000"}))


def test_unknown_method_kind() -> None:
    """Test that method kinds other than card and bank are rejected."""
    with pytest.raises(ValidationError):
        parse_credential_fields("paypal", CardFactory.create())


def test_kind_mismatch_is_rejected() -> None:
    """Test that card fields cannot be registered as a bank account."""
    card = CardFields(**CardFactory.create())

    with pytest.raises(ValidationError):
        parse_credential_fields("bank", card)


def test_bank_fields_submitted_as_card_are_rejected() -> None:
    """Test that the method kind decides which shape is validated."""
    with pytest.raises(ValidationError):
        parse_credential_fields("card", BankAccountFactory.create())

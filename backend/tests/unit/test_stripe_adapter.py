"""Unit tests for the Stripe gateway adapter with the Stripe API patched out."""
from types import SimpleNamespace

import pytest
import stripe

from metered_billing.adapters.gateway import GatewayCustomer, ProfileReference, RawCredential
from metered_billing.adapters.stripe_adapter import StripeAdapter
from metered_billing.exceptions import GatewayError
from metered_billing.schemas.credential import parse_credential_fields
from utils.factories import BankAccountFactory, CardFactory


@pytest.fixture
def stripe_api(monkeypatch):
    """Record Stripe calls and answer them with canned objects."""
    api = SimpleNamespace(intents=[], methods=[], customers=[], status="succeeded", error=None)

    def create_intent(**params):
        api.intents.append(params)
        if api.error is not None:
            raise api.error
        return SimpleNamespace(id="pi_123", status=api.status)

    def create_method(**params):
        api.methods.append(params)
        return SimpleNamespace(id="pm_123", type=params["type"])

    def create_customer(**params):
        api.customers.append(params)
        return SimpleNamespace(id="cus_123")

    monkeypatch.setattr(stripe, "api_key", None)
    monkeypatch.setattr(stripe, "max_network_retries", 2)
    monkeypatch.setattr(stripe.PaymentIntent, "create", create_intent)
    monkeypatch.setattr(stripe.PaymentMethod, "create", create_method)
    monkeypatch.setattr(stripe.PaymentMethod, "attach", lambda *args, **kwargs: None)
    monkeypatch.setattr(stripe.Customer, "create", create_customer)
    return api


@pytest.mark.parametrize("secret", [None, ""])
def test_missing_secret_key(secret) -> None:
    """Test that the adapter refuses to start without a key."""
    with pytest.raises(GatewayError):
        StripeAdapter(secret)


def test_adapter_disables_client_retries(stripe_api) -> None:
    """Test that the Stripe client is configured for a single attempt per charge."""
    StripeAdapter("sk_test_123")

    assert stripe.api_key == "sk_test_123"
    assert stripe.max_network_retries == 0


@pytest.mark.asyncio
async def test_charge_profile_reference(stripe_api) -> None:
    """Test charging a tokenized credential by customer and payment method."""
    adapter = StripeAdapter("sk_test_123")

    result = await adapter.charge(
        ProfileReference(customer_ref="cus_1", payment_ref="pm_1"),
        amount=30,
        currency="USD",
        description="January usage",
        idempotency_key="claim-1",
    )

    assert result.success is True
    assert result.external_transaction_ref == "pi_123"
    assert result.response_code == "succeeded"
    [params] = stripe_api.intents
    assert params["customer"] == "cus_1"
    assert params["payment_method"] == "pm_1"
    assert params["currency"] == "usd"
    assert params["amount"] == 30
    assert params["description"] == "January usage"
    assert params["idempotency_key"] == "claim-1"
    assert stripe_api.methods == []


@pytest.mark.asyncio
async def test_charge_raw_card(stripe_api) -> None:
    """Test that a raw card becomes a one-off payment method for the intent."""
    fields = parse_credential_fields("card", CardFactory.create({"expiry": "1230", "security_code": "123"}))

    result = await StripeAdapter("sk_test_123").charge(RawCredential(fields), amount=100, currency="usd")

    assert result.success is True
    [method] = stripe_api.methods
    assert method["type"] == "card"
    assert method["card"]["exp_month"] == 12
    assert method["card"]["exp_year"] == 2030
    assert method["card"]["cvc"] == "123"
    [params] = stripe_api.intents
    assert params["payment_method"] == "pm_123"
    assert params["payment_method_types"] == ["card"]
    assert "mandate_data" not in params
    assert "idempotency_key" not in params


@pytest.mark.asyncio
async def test_charge_raw_bank_account(stripe_api) -> None:
    """Test that bank debits carry a mandate and count as accepted while processing."""
    stripe_api.status = "processing"
    fields = parse_credential_fields("bank", BankAccountFactory.create({"account_type": "savings"}))

    result = await StripeAdapter("sk_test_123").charge(RawCredential(fields), amount=100, currency="usd")

    assert result.success is True
    assert result.response_code == "processing"
    [method] = stripe_api.methods
    assert method["type"] == "us_bank_account"
    assert method["us_bank_account"]["account_type"] == "savings"
    assert method["us_bank_account"]["account_holder_type"] == "individual"
    assert stripe_api.intents[0]["mandate_data"] == {"customer_acceptance": {"type": "offline"}}


@pytest.mark.asyncio
async def test_unaccepted_status_is_a_decline(stripe_api) -> None:
    """Test that an intent needing further action is reported as declined."""
    stripe_api.status = "requires_payment_method"

    result = await StripeAdapter("sk_test_123").charge(
        ProfileReference(customer_ref="cus_1", payment_ref="pm_1"), amount=30, currency="usd"
    )

    assert result.success is False
    assert result.external_transaction_ref == "pi_123"
    assert result.response_code == "requires_payment_method"


@pytest.mark.asyncio
async def test_card_error_is_a_decline(stripe_api) -> None:
    """Test that a card error comes back as a declined result, not an exception."""
    stripe_api.error = stripe.CardError("Your card was declined.", None, "card_declined")

    result = await StripeAdapter("sk_test_123").charge(
        ProfileReference(customer_ref="cus_1", payment_ref="pm_1"), amount=30, currency="usd"
    )

    assert result.success is False
    assert result.response_code == "card_declined"
    assert result.message


@pytest.mark.asyncio
async def test_api_error_raises_gateway_error(stripe_api) -> None:
    """Test that failures reaching Stripe raise GatewayError."""
    stripe_api.error = stripe.APIConnectionError("Network is unreachable")

    with pytest.raises(GatewayError):
        await StripeAdapter("sk_test_123").charge(
            ProfileReference(customer_ref="cus_1", payment_ref="pm_1"), amount=30, currency="usd"
        )


@pytest.mark.asyncio
async def test_create_customer_and_tokenize(stripe_api) -> None:
    """Test customer creation and payment method attachment."""
    adapter = StripeAdapter("sk_test_123")

    customer_ref = await adapter.create_customer(
        GatewayCustomer(reference="user-1", email="ada@example.com", name="Ada Lovelace")
    )
    payment_ref = await adapter.tokenize_credential(
        customer_ref, parse_credential_fields("card", CardFactory.create())
    )

    assert customer_ref == "cus_123"
    assert payment_ref == "pm_123"
    assert stripe_api.customers == [
        {"email": "ada@example.com", "name": "Ada Lovelace", "metadata": {"user_id": "user-1"}}
    ]

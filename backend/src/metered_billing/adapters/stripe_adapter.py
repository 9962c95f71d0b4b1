"""Stripe payment gateway adapter."""
import asyncio
from typing import Any, Optional, Union

import stripe
import structlog
from pydantic import SecretStr

from metered_billing.adapters.gateway import (
    ChargeCredential,
    ChargeResult,
    GatewayCustomer,
    ProfileReference,
    RawCredential,
)
from metered_billing.exceptions import GatewayError
from metered_billing.schemas.credential import BankFields, CardFields

logger = structlog.get_logger(__name__)

# PaymentIntent statuses that mean the processor accepted the charge.
# ACH debits report "processing" until the bank settles.
_ACCEPTED_STATUSES = {"succeeded", "processing"}


class StripeAdapter:
    """Adapter for Stripe payment gateway integration."""

    def __init__(self, secret_key: Union[SecretStr, str, None]):
        """Initialize Stripe adapter with API key."""
        key = secret_key.get_secret_value() if isinstance(secret_key, SecretStr) else secret_key
        if not key:
            raise GatewayError("Stripe secret key is not configured; set STRIPE_SECRET_KEY")
        stripe.api_key = key
        # Retries are the caller's decision; one request, one result
        stripe.max_network_retries = 0

    async def create_customer(self, customer: GatewayCustomer) -> str:
        """
        Create a Stripe customer.

        Args:
            customer: Identity of the user owning the customer profile

        Returns:
            Stripe customer ID
        """
        try:
            created = await asyncio.to_thread(
                stripe.Customer.create,
                email=customer.email,
                name=customer.name,
                metadata={"user_id": customer.reference},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to create customer profile: {e.user_message or e}") from e
        return created.id

    async def tokenize_credential(self, customer_ref: str, fields: Union[CardFields, BankFields]) -> str:
        """
        Create a Stripe payment method from raw fields and attach it to a customer.

        Args:
            customer_ref: Stripe customer ID
            fields: Validated raw credential fields

        Returns:
            Stripe payment method ID
        """
        try:
            payment_method = await asyncio.to_thread(
                stripe.PaymentMethod.create, **self._payment_method_params(fields)
            )
            await asyncio.to_thread(stripe.PaymentMethod.attach, payment_method.id, customer=customer_ref)
        except stripe.CardError as e:
            raise GatewayError(f"Payment method rejected: {e.user_message}") from e
        except stripe.StripeError as e:
            raise GatewayError(f"Failed to add payment method: {e.user_message or e}") from e
        return payment_method.id

    async def charge(
        self,
        credential: ChargeCredential,
        amount: int,
        currency: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """
        Charge a credential with a confirmed, off-session payment intent.

        Args:
            credential: Tokenized profile reference or decrypted raw credential
            amount: Amount in cents
            currency: ISO currency code
            description: Statement description (the settlement note)
            idempotency_key: Key that makes a repeated request a no-op at Stripe

        Returns:
            Charge result; declines are results, not exceptions

        Raises:
            GatewayError: If Stripe could not be reached or rejected the request
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "confirm": True,
            "off_session": True,
            "description": description,
        }

        try:
            if isinstance(credential, ProfileReference):
                params["customer"] = credential.customer_ref
                params["payment_method"] = credential.payment_ref
            elif isinstance(credential, RawCredential):
                payment_method = await asyncio.to_thread(
                    stripe.PaymentMethod.create, **self._payment_method_params(credential.fields)
                )
                params["payment_method"] = payment_method.id
                params["payment_method_types"] = [payment_method.type]
            else:
                raise GatewayError(f"Unsupported credential type {type(credential).__name__}")

            if isinstance(credential, RawCredential) and credential.method_kind == "bank":
                params["mandate_data"] = {"customer_acceptance": {"type": "offline"}}

            if idempotency_key:
                params["idempotency_key"] = idempotency_key

            payment_intent = await asyncio.to_thread(stripe.PaymentIntent.create, **params)
        except stripe.CardError as e:
            # Card was declined
            intent = getattr(e.error, "payment_intent", None) if e.error else None
            return ChargeResult.declined(
                e.user_message or "Card declined",
                external_transaction_ref=getattr(intent, "id", None),
                response_code=e.code,
            )
        except stripe.StripeError as e:
            # Other Stripe error
            logger.warning("stripe_charge_error", error_type=type(e).__name__, request_id=e.request_id)
            raise GatewayError(str(e.user_message or e)) from e

        if payment_intent.status in _ACCEPTED_STATUSES:
            return ChargeResult(
                success=True,
                external_transaction_ref=payment_intent.id,
                message=f"Payment {payment_intent.status}",
                response_code=payment_intent.status,
            )

        return ChargeResult.declined(
            f"Payment intent ended in status {payment_intent.status}",
            external_transaction_ref=payment_intent.id,
            response_code=payment_intent.status,
        )

    @staticmethod
    def _payment_method_params(fields: Union[CardFields, BankFields]) -> dict[str, Any]:
        if isinstance(fields, CardFields):
            return {
                "type": "card",
                "card": {
                    "number": fields.number,
                    "exp_month": int(fields.expiry_month),
                    "exp_year": int(fields.expiry_year),
                    "cvc": fields.security_code,
                },
            }
        return {
            "type": "us_bank_account",
            "us_bank_account": {
                "account_holder_type": "company" if fields.account_type == "business_checking" else "individual",
                "account_type": "savings" if fields.account_type == "savings" else "checking",
                "routing_number": fields.routing_number,
                "account_number": fields.account_number,
            },
            "billing_details": {"name": fields.holder_name},
        }

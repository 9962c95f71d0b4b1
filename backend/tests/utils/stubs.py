"""In-memory stand-ins for the payment gateway and the clock."""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union
from uuid import uuid4

from metered_billing.adapters.gateway import (
    ChargeCredential,
    ChargeResult,
    GatewayCustomer,
    ProfileReference,
)
from metered_billing.exceptions import GatewayError
from metered_billing.schemas.credential import BankFields, CardFields


class FakeClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubGateway:
    """
    Payment gateway keyed on the last four digits of the charged instrument.

    Behaviors per last4: "decline", "error" (GatewayError) or "timeout"
    (never answers). Anything else succeeds.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.behaviors: dict[str, str] = {}
        self.attempts: list[dict[str, Any]] = []
        self.charges: list[dict[str, Any]] = []
        self.customers: list[GatewayCustomer] = []
        self.on_charge: Optional[Callable[[], None]] = None
        self._payment_refs: dict[str, str] = {}

    def fail_for(self, last4: str, behavior: str = "decline") -> None:
        self.behaviors[last4] = behavior

    async def create_customer(self, customer: GatewayCustomer) -> str:
        self.customers.append(customer)
        return f"cus_{len(self.customers):04d}"

    async def tokenize_credential(self, customer_ref: str, fields: Union[CardFields, BankFields]) -> str:
        payment_ref = f"pm_{uuid4().hex[:16]}"
        self._payment_refs[payment_ref] = fields.last4
        return payment_ref

    async def charge(
        self,
        credential: ChargeCredential,
        amount: int,
        currency: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        if isinstance(credential, ProfileReference):
            last4 = self._payment_refs.get(credential.payment_ref)
        else:
            last4 = credential.fields.last4

        attempt = {
            "credential": credential,
            "last4": last4,
            "amount": amount,
            "currency": currency,
            "description": description,
            "idempotency_key": idempotency_key,
        }
        self.attempts.append(attempt)
        if self.on_charge is not None:
            self.on_charge()

        behavior = self.behaviors.get(last4)
        if behavior == "timeout":
            await asyncio.sleep(3600)
        if self.delay:
            await asyncio.sleep(self.delay)
        if behavior == "error":
            raise GatewayError("Processor unavailable")
        if behavior == "decline":
            return ChargeResult.declined(
                "Your card was declined.",
                external_transaction_ref=f"pi_declined_{len(self.attempts)}",
                response_code="card_declined",
            )

        self.charges.append(attempt)
        return ChargeResult(
            success=True,
            external_transaction_ref=f"pi_{len(self.charges):06d}",
            message="Payment succeeded",
            auth_code="A1B2C3",
            response_code="succeeded",
        )

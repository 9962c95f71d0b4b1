"""Payment credential service: registration, vault storage and default selection."""
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing import metrics
from metered_billing.adapters.gateway import (
    ChargeCredential,
    GatewayCustomer,
    PaymentGateway,
    ProfileReference,
    RawCredential,
)
from metered_billing.exceptions import ConflictError, NoDefaultPaymentMethod, NotFoundError
from metered_billing.models.payment_credential import MethodKind, PaymentCredential
from metered_billing.models.user import User
from metered_billing.schemas.credential import BankFields, CardFields, parse_credential_fields
from metered_billing.utils.audit import log_audit
from metered_billing.vault import CredentialVault

logger = structlog.get_logger(__name__)


class CredentialService:
    """Service layer for payment credential operations."""

    def __init__(
        self,
        db: AsyncSession,
        vault: CredentialVault,
        gateway: Optional[PaymentGateway] = None,
        tokenize: bool = True,
    ):
        """Initialize credential service."""
        self.db = db
        self.vault = vault
        self.gateway = gateway
        self.tokenize = tokenize and gateway is not None

    async def register_credential(
        self,
        user_id: UUID,
        method_kind: Union[MethodKind, str],
        raw_fields: Any,
        is_default: Optional[bool] = None,
        actor: Optional[str] = None,
    ) -> PaymentCredential:
        """
        Validate, optionally tokenize, encrypt and store a payment credential.

        Args:
            user_id: Owner UUID
            method_kind: card or bank
            raw_fields: Raw credential fields matching method_kind
            is_default: Make this the default; when omitted, the first
                credential of a user becomes the default
            actor: Who registered the credential, for the audit log

        Returns:
            The stored credential

        Raises:
            ValidationError: If the fields do not match method_kind
            NotFoundError: If the user does not exist
            GatewayError: If tokenization is enabled and the gateway fails
        """
        fields = parse_credential_fields(method_kind, raw_fields)

        user = await self.db.get(User, user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found", context={"user_id": str(user_id)})

        if is_default is None:
            is_default = await self.get_default_credential(user_id) is None

        gateway_payment_ref = None
        if self.tokenize:
            customer_ref = await self._ensure_customer_profile(user)
            gateway_payment_ref = await self.gateway.tokenize_credential(customer_ref, fields)

        credential = await self.store_credential(
            user_id, fields, is_default=is_default, gateway_payment_ref=gateway_payment_ref
        )

        await log_audit(
            db=self.db,
            entity_type="payment_credential",
            entity_id=credential.id,
            action="create",
            actor=actor,
            changes={
                "method_kind": {"old": None, "new": credential.method_kind.value},
                "last4": {"old": None, "new": credential.last4},
                "is_default": {"old": None, "new": credential.is_default},
            },
        )

        metrics.credentials_registered_total.labels(
            method_kind=credential.method_kind.value,
            tokenized=str(credential.is_tokenized).lower(),
        ).inc()
        logger.info(
            "payment_credential_registered",
            credential_id=str(credential.id),
            user_id=str(user_id),
            method_kind=credential.method_kind.value,
            is_default=credential.is_default,
            tokenized=credential.is_tokenized,
        )
        return credential

    async def store_credential(
        self,
        user_id: UUID,
        fields: Union[CardFields, BankFields],
        is_default: bool = False,
        gateway_payment_ref: Optional[str] = None,
    ) -> PaymentCredential:
        """
        Encrypt validated fields and persist them as a credential.

        When is_default is set, the user's other credentials are demoted in
        the same transaction as the insert.

        Args:
            user_id: Owner UUID
            fields: Validated credential fields
            is_default: Make this the user's default credential
            gateway_payment_ref: Processor payment profile ID (optional)

        Returns:
            The stored credential

        Raises:
            ConflictError: If a concurrent write left two defaults
        """
        ciphertext, iv = self.vault.seal_fields(fields)

        if is_default:
            await self._demote_defaults(user_id)

        credential = PaymentCredential(
            user_id=user_id,
            method_kind=MethodKind(fields.method_kind),
            ciphertext=ciphertext,
            iv=iv,
            is_default=is_default,
            gateway_payment_ref=gateway_payment_ref,
            last4=fields.last4,
        )
        if isinstance(fields, CardFields):
            credential.brand = fields.brand
            credential.expiry_month = fields.expiry_month
            credential.expiry_year = fields.expiry_year
        else:
            credential.account_type = fields.account_type
            credential.bank_name = fields.bank_name

        self.db.add(credential)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise ConflictError(
                "User already has a default payment credential",
                context={"user_id": str(user_id)},
            ) from e
        await self.db.refresh(credential)
        return credential

    async def get_credential(self, credential_id: UUID) -> Optional[PaymentCredential]:
        """
        Get credential by ID.

        Args:
            credential_id: Credential UUID

        Returns:
            Credential or None
        """
        result = await self.db.execute(select(PaymentCredential).where(PaymentCredential.id == credential_id))
        return result.scalar_one_or_none()

    async def get_default_credential(self, user_id: UUID) -> Optional[PaymentCredential]:
        """
        Get the default credential for a user.

        Args:
            user_id: User UUID

        Returns:
            Default credential or None
        """
        result = await self.db.execute(
            select(PaymentCredential).where(
                PaymentCredential.user_id == user_id,
                PaymentCredential.is_default.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def list_credentials(self, user_id: UUID) -> list[PaymentCredential]:
        """
        List all credentials for a user, default first.

        Args:
            user_id: User UUID

        Returns:
            List of credentials
        """
        result = await self.db.execute(
            select(PaymentCredential)
            .where(PaymentCredential.user_id == user_id)
            .order_by(PaymentCredential.is_default.desc(), PaymentCredential.created_at.desc())
        )
        return list(result.scalars().all())

    async def set_default_credential(
        self, user_id: UUID, credential_id: UUID, actor: Optional[str] = None
    ) -> PaymentCredential:
        """
        Make an existing credential the user's default.

        Args:
            user_id: User UUID
            credential_id: Credential UUID
            actor: Who made the change, for the audit log

        Returns:
            Updated credential

        Raises:
            NotFoundError: If the credential does not exist or belongs to another user
        """
        credential = await self._owned_credential(user_id, credential_id)
        if credential.is_default:
            return credential

        await self._demote_defaults(user_id, keep=credential_id)
        credential.is_default = True
        await self.db.flush()
        await self.db.refresh(credential)

        await log_audit(
            db=self.db,
            entity_type="payment_credential",
            entity_id=credential.id,
            action="update",
            actor=actor,
            changes={"is_default": {"old": False, "new": True}},
        )
        logger.info("payment_credential_default_changed", credential_id=str(credential.id), user_id=str(user_id))
        return credential

    async def reveal_credential(
        self,
        user_id: UUID,
        credential_id: UUID,
        actor: str,
        reason: Optional[str] = None,
    ) -> Union[CardFields, BankFields]:
        """
        Decrypt a credential for a privileged caller. Every reveal is audited.

        Args:
            user_id: User UUID
            credential_id: Credential UUID
            actor: Who is revealing the credential
            reason: Why it is being revealed (optional)

        Returns:
            Decrypted credential fields

        Raises:
            NotFoundError: If the credential does not exist or belongs to another user
            VaultError: If the stored ciphertext cannot be decrypted
        """
        credential = await self._owned_credential(user_id, credential_id)

        await log_audit(
            db=self.db,
            entity_type="payment_credential",
            entity_id=credential.id,
            action="reveal",
            actor=actor,
            changes={"reason": {"old": None, "new": reason}} if reason else None,
        )
        return self.vault.open_fields(credential.method_kind, credential.ciphertext, credential.iv)

    async def resolve_charge_credential(self, user_id: UUID) -> tuple[PaymentCredential, ChargeCredential]:
        """
        Resolve what settlement should charge for a user.

        Tokenized credentials resolve to their processor references; the rest
        are decrypted from the vault.

        Args:
            user_id: User UUID

        Returns:
            Tuple of (default credential, chargeable credential)

        Raises:
            NotFoundError: If the user does not exist
            NoDefaultPaymentMethod: If the user has no default credential
            VaultError: If the stored ciphertext cannot be decrypted
        """
        user = await self.db.get(User, user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found", context={"user_id": str(user_id)})

        credential = await self.get_default_credential(user_id)
        if not credential:
            raise NoDefaultPaymentMethod(
                "No default payment method found",
                context={"user_id": str(user_id)},
            )

        if credential.is_tokenized and user.gateway_customer_ref:
            return credential, ProfileReference(
                customer_ref=user.gateway_customer_ref,
                payment_ref=credential.gateway_payment_ref,
            )

        fields = self.vault.open_fields(credential.method_kind, credential.ciphertext, credential.iv)
        return credential, RawCredential(fields=fields)

    async def _ensure_customer_profile(self, user: User) -> str:
        if user.gateway_customer_ref:
            return user.gateway_customer_ref

        customer_ref = await self.gateway.create_customer(
            GatewayCustomer(reference=str(user.id), email=user.email, name=user.name)
        )
        user.gateway_customer_ref = customer_ref
        await self.db.flush()
        logger.info("gateway_customer_created", user_id=str(user.id))
        return customer_ref

    async def _owned_credential(self, user_id: UUID, credential_id: UUID) -> PaymentCredential:
        credential = await self.get_credential(credential_id)
        if not credential or credential.user_id != user_id:
            raise NotFoundError(
                f"Payment credential {credential_id} not found",
                context={"user_id": str(user_id), "credential_id": str(credential_id)},
            )
        return credential

    async def _demote_defaults(self, user_id: UUID, keep: Optional[UUID] = None) -> None:
        query = update(PaymentCredential).where(
            PaymentCredential.user_id == user_id,
            PaymentCredential.is_default.is_(True),
        )
        if keep is not None:
            query = query.where(PaymentCredential.id != keep)
        await self.db.execute(query.values(is_default=False).execution_options(synchronize_session="fetch"))

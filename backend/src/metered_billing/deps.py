"""Composition root: build the vault, gateway and services from settings."""
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.adapters.stripe_adapter import StripeAdapter
from metered_billing.config import settings
from metered_billing.database import AsyncSessionLocal, engine
from metered_billing.logging_config import setup_logging
from metered_billing.services.credential_service import CredentialService
from metered_billing.services.settlement_service import SettlementService
from metered_billing.tracing import setup_tracing
from metered_billing.vault import CredentialVault, build_vault

# Setup structured logging
setup_logging()

if settings.otel_enabled:
    setup_tracing(engine)


@lru_cache
def get_vault() -> CredentialVault:
    """
    Process-wide credential vault.

    Raises:
        VaultError: If VAULT_SECRET is not configured
    """
    return build_vault(settings.vault_secret)


@lru_cache
def get_gateway() -> StripeAdapter:
    """
    Process-wide payment gateway client.

    Raises:
        GatewayError: If STRIPE_SECRET_KEY is not configured
    """
    return StripeAdapter(settings.stripe_secret_key)


def get_settlement_service() -> SettlementService:
    """Settlement service wired to the configured database, vault and gateway."""
    return SettlementService(
        session_factory=AsyncSessionLocal,
        vault=get_vault(),
        gateway=get_gateway(),
        config=settings,
    )


def get_credential_service(db: AsyncSession) -> CredentialService:
    """Credential service for a caller-owned session, tokenizing per TOKENIZE_CREDENTIALS."""
    return CredentialService(
        db,
        vault=get_vault(),
        gateway=get_gateway() if settings.tokenize_credentials else None,
        tokenize=settings.tokenize_credentials,
    )

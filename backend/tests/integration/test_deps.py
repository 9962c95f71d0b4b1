"""Integration tests for service wiring from settings."""
import pytest

from metered_billing import deps
from utils.factories import CardFactory


@pytest.fixture
def wired(monkeypatch, vault, gateway):
    """Point the composition root at the test vault and stub gateway."""
    monkeypatch.setattr(deps, "get_vault", lambda: vault)
    monkeypatch.setattr(deps, "get_gateway", lambda: gateway)
    return deps


@pytest.mark.asyncio
@pytest.mark.parametrize("tokenize", [True, False])
async def test_credential_service_follows_tokenize_setting(
    session_factory, make_user, gateway, wired, monkeypatch, tokenize
) -> None:
    """Test that TOKENIZE_CREDENTIALS decides whether registration calls the gateway."""
    monkeypatch.setattr(wired.settings, "tokenize_credentials", tokenize)
    user = await make_user()

    async with session_factory() as db:
        credential = await wired.get_credential_service(db).register_credential(
            user.id, "card", CardFactory.create(), actor="test"
        )
        await db.commit()

    assert credential.is_tokenized is tokenize
    assert len(gateway.customers) == (1 if tokenize else 0)
    if not tokenize:
        assert credential.gateway_payment_ref is None

"""Integration tests for the scheduled settlement worker."""
from uuid import uuid4

import pytest

from metered_billing.services.usage_service import UsageService
from metered_billing.workers.settlement_run import process_scheduled_settlement


@pytest.mark.asyncio
async def test_scheduled_settlement_settles_users_with_usage(
    settlement_service, session_factory, make_user, add_usage, add_credential, gateway
) -> None:
    """Test that the worker settles every user holding unpaid closed usage."""
    billed = [await make_user() for _ in range(2)]
    idle = await make_user()
    for user in billed:
        await add_credential(user.id)
        await add_usage(user.id, seconds=125)
    await add_credential(idle.id)

    summary = await process_scheduled_settlement(
        settlement_service=settlement_service, session_factory=session_factory
    )

    assert summary == {
        "users": 2,
        "succeeded": 2,
        "failed": 0,
        "skipped": 0,
        "cancelled": 0,
        "stuck_claims": 0,
    }
    assert {charge["description"] for charge in gateway.charges} == {"Test settlement"}
    async with session_factory() as db:
        assert await UsageService(db).users_with_unpaid_usage() == []


@pytest.mark.asyncio
async def test_scheduled_settlement_with_nothing_to_do(settlement_service, session_factory, gateway) -> None:
    """Test that an empty run settles nobody."""
    summary = await process_scheduled_settlement(
        settlement_service=settlement_service, session_factory=session_factory
    )

    assert summary["users"] == 0
    assert gateway.attempts == []


@pytest.mark.asyncio
async def test_scheduled_settlement_reports_stuck_claims(
    settlement_service, session_factory, make_user, add_usage, add_credential, clock, test_settings
) -> None:
    """Test that claims held past the stale threshold are counted for operators."""
    user = await make_user()
    await add_credential(user.id)
    await add_usage(user.id, seconds=60)
    async with session_factory() as db:
        await UsageService(db).claim_unpaid_intervals(user.id, uuid4(), clock())
        await db.commit()
    clock.advance(minutes=test_settings.claim_stale_after_minutes + 5)

    summary = await process_scheduled_settlement(
        settlement_service=settlement_service, session_factory=session_factory, note="Nightly"
    )

    assert summary["users"] == 0
    assert summary["stuck_claims"] == 1

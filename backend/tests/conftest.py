"""Pytest configuration and fixtures for async testing."""
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from metered_billing.config import Settings
from metered_billing.database import create_session_factory
from metered_billing.models import Base, PaymentCredential, UsageInterval, User
from metered_billing.services.activity_service import ActivityService
from metered_billing.services.credential_service import CredentialService
from metered_billing.services.settlement_service import SettlementService
from metered_billing.vault import CredentialVault, VaultKey
from utils.factories import BankAccountFactory, CardFactory, UserFactory
from utils.stubs import FakeClock, StubGateway

TEST_VAULT_SECRET = "test-vault-secret-not-for-production"


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a file-backed SQLite engine with all tables.

    File-backed in WAL mode so concurrent settlement units get their own
    connections.

    Yields:
        AsyncEngine: Engine bound to a fresh database
    """
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing_test.db'}", echo=False)

    @event.listens_for(test_engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record) -> None:  # noqa: ANN001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=10000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return create_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def test_settings() -> Settings:
    """Settings with a vault secret, a short gateway timeout and the default rate."""
    return Settings(
        vault_secret=TEST_VAULT_SECRET,
        rate_per_minute=Decimal("0.10"),
        currency="usd",
        settlement_concurrency=4,
        gateway_timeout_seconds=0.5,
        default_settlement_note="Test settlement",
        claim_stale_after_minutes=60,
    )


@pytest.fixture(scope="function")
def vault() -> CredentialVault:
    """Credential vault keyed from the test secret."""
    return CredentialVault(VaultKey.from_secret(TEST_VAULT_SECRET))


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture(scope="function")
def gateway() -> StubGateway:
    """In-memory payment gateway."""
    return StubGateway()


@pytest.fixture(scope="function")
def settlement_service(
    session_factory: async_sessionmaker[AsyncSession],
    vault: CredentialVault,
    gateway: StubGateway,
    test_settings: Settings,
    clock: FakeClock,
) -> SettlementService:
    """Settlement service wired to the test database, vault and stub gateway."""
    return SettlementService(
        session_factory=session_factory,
        vault=vault,
        gateway=gateway,
        config=test_settings,
        clock=clock,
    )


@pytest.fixture(scope="function")
def make_user(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[User]]:
    """
    Factory fixture persisting a user.

    Returns:
        Async callable taking optional field overrides
    """

    async def _make_user(**overrides: Any) -> User:
        async with session_factory() as db:
            user = User(**UserFactory.create(overrides))
            db.add(user)
            await db.commit()
            await db.refresh(user)
            return user

    return _make_user


@pytest.fixture(scope="function")
def add_usage(
    session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
) -> Callable[..., Awaitable[UsageInterval]]:
    """
    Factory fixture recording one closed interval through the activity service.

    Returns:
        Async callable (user_id, seconds, activity_type=1)
    """

    async def _add_usage(user_id: UUID, seconds: float, activity_type: int = 1) -> UsageInterval:
        async with session_factory() as db:
            service = ActivityService(db, clock=clock)
            await service.start_activity(user_id, activity_type)
            clock.advance(seconds=seconds)
            interval = await service.end_activity(user_id, activity_type)
            await db.commit()
            return interval

    return _add_usage


@pytest.fixture(scope="function")
def add_credential(
    session_factory: async_sessionmaker[AsyncSession],
    vault: CredentialVault,
    gateway: StubGateway,
) -> Callable[..., Awaitable[PaymentCredential]]:
    """
    Factory fixture registering a credential.

    Returns:
        Async callable (user_id, method_kind="card", fields=None,
        is_default=None, tokenize=False)
    """

    async def _add_credential(
        user_id: UUID,
        method_kind: str = "card",
        fields: Optional[dict[str, Any]] = None,
        is_default: Optional[bool] = None,
        tokenize: bool = False,
    ) -> PaymentCredential:
        if fields is None:
            fields = CardFactory.create() if method_kind == "card" else BankAccountFactory.create()
        async with session_factory() as db:
            service = CredentialService(db, vault, gateway=gateway, tokenize=tokenize)
            credential = await service.register_credential(
                user_id, method_kind, fields, is_default=is_default, actor="test"
            )
            await db.commit()
            return credential

    return _add_credential

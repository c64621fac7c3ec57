from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings

# Override settings for tests
settings.fernet_key = "KxJCocbnA3KD20pkgSN3uUZybasKP1X9lAJDX4oLxoQ="  # test-only Fernet key
settings.database_url = "sqlite+aiosqlite://"
settings.app_env = "development"

from app.core.security import generate_service_key  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.db.postgres import get_db  # noqa: E402
from app.gateway.billing import BillingService  # noqa: E402
from app.gateway.key_pool import KeyPool  # noqa: E402
from app.gateway.types import Backend  # noqa: E402
from app.main import app  # noqa: E402
from app.models.account import Account  # noqa: E402

# One shared in-memory SQLite connection so every session sees the same tables
test_engine = create_async_engine(
    "sqlite+aiosqlite://",
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)
test_session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as session:
        yield session


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def billing() -> BillingService:
    return BillingService.from_settings(settings, test_session_factory)


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    return test_session_factory


@pytest.fixture
def pool() -> KeyPool:
    """Empty pool backed by the test database, with a static fallback key per backend."""
    return KeyPool(
        fallback_keys={backend: f"{backend.value}-fallback-key" for backend in Backend},
        session_factory=test_session_factory,
    )


@pytest.fixture
def make_account(db: AsyncSession):
    """Factory: ``await make_account(balance=10.0)`` → (account, raw service key)."""

    async def _make(balance: float = 10.0, request_count: int = 0, name: str = "Test Shop") -> tuple[Account, str]:
        raw_key, key_hash = generate_service_key()
        account = Account(name=name, service_key_hash=key_hash, balance=balance, request_count=request_count)
        db.add(account)
        await db.commit()
        await db.refresh(account)
        return account, raw_key

    return _make


@pytest.fixture
def reload_account():
    """Fresh read of an account, bypassing any session identity map."""

    async def _reload(account_id) -> Account:
        async with test_session_factory() as session:
            return await session.get(Account, account_id)

    return _reload

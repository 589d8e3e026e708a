import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.main import app
from app.database import Base
from app.api.deps import get_accounting_client, get_entity_store
from app.services.entity_store import EntityStore
from app.services.qbo_client import InMemoryQBOClient
from app.services.qbo_retry import RetryPolicy
from app.services.qbo_sync_service import QBOSyncService

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"


class RecordingSleep:
    """Stands in for asyncio.sleep so backoff delays are observable and instant."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest_asyncio.fixture
async def session_maker():
    """Create test database and tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_maker) -> EntityStore:
    return EntityStore(session_maker)


@pytest.fixture
def fake_qbo() -> InMemoryQBOClient:
    return InMemoryQBOClient()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy(sleeps: RecordingSleep) -> RetryPolicy:
    return RetryPolicy(max_retries=3, backoff_base=0.5, backoff_max=8.0, sleep=sleeps)


@pytest.fixture
def published() -> list:
    """Every SyncResult the service hands to its result sink."""
    return []


@pytest_asyncio.fixture
async def service(fake_qbo, store, retry_policy, published) -> QBOSyncService:
    return QBOSyncService(fake_qbo, store, retry_policy, result_sink=published.append)


@pytest_asyncio.fixture
async def client(store: EntityStore, fake_qbo: InMemoryQBOClient):
    """Create test client wired to the test store and the in-memory QBO."""
    app.dependency_overrides[get_entity_store] = lambda: store
    app.dependency_overrides[get_accounting_client] = lambda: fake_qbo

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()

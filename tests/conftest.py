import pytest
from datetime import date
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

from app.api.deps import get_now
from app.core.events import dispatch_event_bus
from app.core.policy import DispatchPolicy, get_policy
from app.core.timekeeping import local_instant
from app.database import Base, get_db, get_session_factory
from app.main import app
from app.services.notifications import get_notification_sender
from tests.fixtures.factories import RecordingSender, make_driver, make_route

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

# Monday, well clear of DST transitions
SHIFT_DATE = date(2026, 6, 15)


@pytest.fixture
async def test_engine():
    """Function-scoped engine with a fresh schema; services commit per item."""
    engine = create_async_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def policy() -> DispatchPolicy:
    return DispatchPolicy()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture(autouse=True)
def clear_event_bus():
    dispatch_event_bus.clear()
    yield
    dispatch_event_bus.clear()


@pytest.fixture
def shift_date() -> date:
    return SHIFT_DATE


@pytest.fixture
def at(policy):
    """Build an aware instant from a civil date and local wall-clock time."""
    def _at(civil_date: date, hour: int, minute: int = 0):
        return local_instant(civil_date, hour, minute, policy)
    return _at


@pytest.fixture
def clock():
    """Mutable request clock used by the API dependency override."""
    class _Clock:
        now = None
    return _Clock()


@pytest.fixture
async def client(db_session, session_factory, policy, sender, clock) -> AsyncGenerator[AsyncClient, None]:
    """Test client with overrides for session, policy, sender and clock."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_policy] = lambda: policy
    app.dependency_overrides[get_notification_sender] = lambda: sender
    app.dependency_overrides[get_now] = lambda: clock.now

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def route(db_session):
    return await make_route(db_session, name="Route 12", start_time="09:00")


@pytest.fixture
async def driver(db_session):
    return await make_driver(db_session, hired_at=date(2024, 1, 10))


@pytest.fixture
async def other_driver(db_session):
    return await make_driver(db_session, hired_at=date(2025, 9, 1))

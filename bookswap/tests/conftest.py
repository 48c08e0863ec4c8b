import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-min-32-chars")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SKIP_CONFIG_VALIDATION", "true")

os.environ["RATE_LIMIT_PER_MINUTE"] = "1000"

from bookswap.core.auth import user_id_from_token
from bookswap.core.locks import EntityLocks
from bookswap.database import get_db
from bookswap.main import app
from bookswap.models.base import Base
from bookswap.services.notification_service import NotificationDispatcher
from bookswap.services.trade_service import TradeService
from bookswap.services.websocket_service import RealtimeChannelManager

from .factories import create_book, create_user


async def token_authenticator(token: str) -> int | None:
    return user_id_from_token(token)


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def channel_manager() -> RealtimeChannelManager:
    return RealtimeChannelManager(token_authenticator, idle_timeout=60.0, sweep_interval=30.0)


@pytest.fixture
def dispatcher(channel_manager) -> NotificationDispatcher:
    return NotificationDispatcher(channel_manager)


@pytest.fixture
def entity_locks() -> EntityLocks:
    return EntityLocks()


@pytest.fixture
def trade_service(async_session, dispatcher, entity_locks) -> TradeService:
    return TradeService(async_session, dispatcher, entity_locks)


@pytest_asyncio.fixture
async def async_client(
    async_session: AsyncSession, channel_manager, dispatcher, entity_locks
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield async_session

    app.dependency_overrides[get_db] = override_get_db

    saved_state = (app.state.channel_manager, app.state.dispatcher, app.state.entity_locks)
    app.state.channel_manager = channel_manager
    app.state.dispatcher = dispatcher
    app.state.entity_locks = entity_locks

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        timeout=30.0,
    ) as ac:
        yield ac

    app.state.channel_manager, app.state.dispatcher, app.state.entity_locks = saved_state
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def alice(async_session):
    return await create_user(async_session, "alice")


@pytest_asyncio.fixture
async def bob(async_session):
    return await create_user(async_session, "bob")


@pytest_asyncio.fixture
async def carol(async_session):
    return await create_user(async_session, "carol")


@pytest_asyncio.fixture
async def alice_book(async_session, alice):
    return await create_book(async_session, alice, "Dune")


@pytest_asyncio.fixture
async def bob_book(async_session, bob):
    return await create_book(async_session, bob, "Neuromancer")


@pytest_asyncio.fixture
async def carol_book(async_session, carol):
    return await create_book(async_session, carol, "Hyperion")

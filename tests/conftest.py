"""Shared pytest fixtures for testing."""

import os
import random
from collections.abc import AsyncGenerator

# Set test environment before the application modules read settings
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from support_service.core import (
    InMemoryMessageBus,
    RecipientCipher,
    Settings,
    build_engine,
    build_session_factory,
    init_db,
)
from support_service.models import NotificationChannel
from support_service.services import (
    MessageTemplatingService,
    NotificationProvider,
    NotificationWorker,
    TeamRegistry,
    build_providers,
)


class FixedRandom(random.Random):
    """Random source whose `random()` always returns the same draw.

    0.0 makes every provider succeed; 0.99 makes every provider fail.
    """

    def __init__(self, value: float):
        super().__init__(42)
        self.value = value

    def random(self) -> float:
        return self.value


async def no_sleep(seconds: float) -> None:
    return None


# =============================================================================
# Settings & components
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        provider_timeout_seconds=1.0,
        broker_visibility_timeout_seconds=5.0,
        requeue_delay_max_seconds=60.0,
        scheduled_sweep_batch_size=50,
        background_jobs_enabled=False,
        click_redirect_hosts=["example.com"],
    )


@pytest.fixture
def cipher() -> RecipientCipher:
    return RecipientCipher(Fernet.generate_key())


@pytest.fixture
def templating() -> MessageTemplatingService:
    return MessageTemplatingService()


@pytest.fixture
def registry() -> TeamRegistry:
    return TeamRegistry()


@pytest.fixture
def providers(settings: Settings) -> dict[NotificationChannel, NotificationProvider]:
    """Providers that always succeed, without simulated latency."""
    return build_providers(settings, rng=FixedRandom(0.0), sleep=no_sleep)


@pytest.fixture
def failing_providers(settings: Settings) -> dict[NotificationChannel, NotificationProvider]:
    """Providers that always draw a failure, without simulated latency."""
    return build_providers(settings, rng=FixedRandom(0.99), sleep=no_sleep)


@pytest_asyncio.fixture
async def bus() -> AsyncGenerator[InMemoryMessageBus, None]:
    message_bus = InMemoryMessageBus(max_retries=2)
    await message_bus.connect()
    yield message_bus
    await message_bus.close()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'support.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as db_session:
        yield db_session
        await db_session.rollback()


@pytest.fixture
def worker(session_factory, bus, cipher, providers, templating, settings) -> NotificationWorker:
    return NotificationWorker(
        session_factory=session_factory,
        bus=bus,
        cipher=cipher,
        providers=providers,
        templating=templating,
        settings=settings,
    )


# =============================================================================
# API Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(
    session_factory, bus, cipher, templating, registry, settings
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the test database and bus."""
    from support_service.core.config import get_settings
    from support_service.core.database import get_session
    from support_service.main import app

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as db_session:
            try:
                yield db_session
                await db_session.commit()
            except Exception:
                await db_session.rollback()
                raise

    app.state.bus = bus
    app.state.cipher = cipher
    app.state.templating = templating
    app.state.team_registry = registry
    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_settings] = lambda: settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()

import os

# Set required env vars BEFORE any diffsync imports trigger Settings()
os.environ.setdefault("API_KEY", "test-api-key-for-testing")
os.environ.setdefault("SOURCE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DESTINATION_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from diffsync.cache import AnalysisStatusStore
from diffsync.config import DEFAULT_ENTITY_MAPPINGS, get_settings
from diffsync.database import Base, Databases
from diffsync.main import create_app
from diffsync.repositories.checkpoints import CheckpointStore
from diffsync.repositories.control import ControlRepository
from diffsync.repositories.logs import InMemoryLogBackend, LogRepository
from diffsync.services.detector import InMemoryChangeDetector
from diffsync.services.scheduler import SyncScheduler
from diffsync.services.synchronizer import Synchronizer
import diffsync.models  # noqa: F401

TEST_DB = "sqlite+aiosqlite:///:memory:"
TEST_API_KEY = "test-api-key-for-testing"


class FakeRedis:
    """The handful of redis.asyncio calls the service makes, backed by a dict."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.available = True
        self.fail_writes = False

    async def ping(self):
        return self.available

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        if self.fail_writes:
            raise RedisConnectionError("connection refused")
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def aclose(self):
        self.store.clear()


@pytest.fixture
def settings():
    return get_settings().model_copy()


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(TEST_DB, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def log_backend():
    return InMemoryLogBackend()


@pytest.fixture
def log_repository(log_backend):
    return LogRepository([log_backend])


@pytest.fixture
def detector(log_repository):
    return InMemoryChangeDetector(
        source={"offices": [], "doctors": [], "patients": []},
        destination={"offices": [], "doctors": [], "patients": []},
        mappings=DEFAULT_ENTITY_MAPPINGS,
        log_repository=log_repository,
    )


@pytest.fixture
def checkpoints(sessionmaker):
    return CheckpointStore(sessionmaker)


@pytest.fixture
def control(sessionmaker):
    return ControlRepository(sessionmaker)


@pytest.fixture
def synchronizer(detector, checkpoints, control, log_repository):
    return Synchronizer(detector, checkpoints, control, log_repository)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def scheduler(detector, synchronizer, fake_redis, log_repository, settings):
    return SyncScheduler(
        detector,
        synchronizer,
        AnalysisStatusStore(fake_redis, ttl=settings.STATUS_TTL_SECONDS),
        log_repository,
        settings,
    )


@pytest.fixture
def test_app(settings, db_engine, sessionmaker, fake_redis, log_repository, scheduler):
    app = create_app(settings)
    app.state.databases = Databases(source=db_engine, destination=db_engine, sessionmaker=sessionmaker)
    app.state.redis = fake_redis
    app.state.log_repository = log_repository
    app.state.scheduler = scheduler
    return app


@pytest_asyncio.fixture
async def client(test_app):
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
        headers={"X-API-Key": TEST_API_KEY},
    ) as c:
        yield c

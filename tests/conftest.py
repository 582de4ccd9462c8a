import fnmatch
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CACHE_ENABLED", "false")

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.api.v1.experiments import get_experiment_service  # noqa: E402
from app.core.cache import ExperimentCache  # noqa: E402
from app.core.database import Base  # noqa: E402
from app.main import app  # noqa: E402
from app.models.schemas import CreateExperimentRequest  # noqa: E402
from app.services.experiments.service import ExperimentService  # noqa: E402
from app.services.experiments.sources import FixedClock, UniformRandomSource  # noqa: E402

NOW = datetime(2024, 1, 15, 12, 0, 0)


class FakeRedis:
    """In-memory stand-in for the handful of redis calls the cache makes."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        return True


class SequenceRandom:
    """Replays fixed draws, cycling when exhausted."""

    def __init__(self, *draws):
        self.draws = list(draws)
        self.index = 0

    def next(self) -> float:
        draw = self.draws[self.index % len(self.draws)]
        self.index += 1
        return draw


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_maker = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return ExperimentCache(fake_redis)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def service(db, cache, clock):
    return ExperimentService(db, cache=cache, clock=clock, random_source=UniformRandomSource(7))


def make_request(name="Homepage CTA", primary="conversion", allocations=(50, 50), **overrides):
    names = ["A", "B", "C", "D"]
    payload = {
        "name": name,
        "type": "homepage",
        "variants": [
            {
                "name": names[i],
                "description": f"Variant {names[i]}",
                "traffic_allocation": allocation,
                "config": {"button_color": names[i].lower()},
            }
            for i, allocation in enumerate(allocations)
        ],
        "goals": {"primary": primary, "secondary": []},
    }
    payload.update(overrides)
    return CreateExperimentRequest(**payload)


@pytest.fixture
def experiment_request():
    return make_request()


@pytest_asyncio.fixture
async def running_experiment(service, experiment_request):
    experiment = await service.create_experiment(experiment_request)
    return await service.start_experiment(experiment.id)


@pytest_asyncio.fixture
async def client(service):
    app.dependency_overrides[get_experiment_service] = lambda: service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()

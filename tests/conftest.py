"""
Pytest fixtures for testing.

Provides:
- Seeded in-memory repository with a "production" environment
- Memory cache and queue backends, and a started FeatureManager
- Test client wired to an isolated container
- SQLite-backed database repository
- Factory fixtures for flags and experiments
- Failing implementations of the ports
"""

from datetime import timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from featurekit.core.config import Settings
from featurekit.core.container import Container
from featurekit.core.features import (
    DatabaseFeatureRepository,
    Experiment,
    ExperimentStatus,
    ExperimentVariant,
    FeatureEnvironment,
    FeatureFlag,
    FeatureFlagConfig,
    FeatureManager,
    FlagType,
    FlagVariant,
    MemoryFeatureRepository,
    RepositoryError,
    UserSegment,
)
from featurekit.core.interfaces import CacheError
from featurekit.implementations.cache import MemoryCacheBackend
from featurekit.implementations.queue import MemoryQueueBackend
from featurekit.main import create_app
from featurekit.core.features.interfaces import utcnow
from featurekit.models.base import Base


# Test database URL (SQLite in-memory for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ============ Core Fixtures ============


@pytest.fixture
def repository() -> MemoryFeatureRepository:
    return MemoryFeatureRepository()


@pytest.fixture
def production(repository: MemoryFeatureRepository) -> FeatureEnvironment:
    """The "production" environment, registered in the repository."""
    return repository.add_environment(FeatureEnvironment(name="production"))


@pytest.fixture
def cache() -> MemoryCacheBackend:
    return MemoryCacheBackend(default_ttl=300)


@pytest_asyncio.fixture
async def queue() -> AsyncGenerator[MemoryQueueBackend, None]:
    queue = MemoryQueueBackend(workers=2, maxsize=100)
    yield queue
    await queue.shutdown(timeout=1)


@pytest_asyncio.fixture
async def manager(
    repository: MemoryFeatureRepository,
    cache: MemoryCacheBackend,
    queue: MemoryQueueBackend,
    production: FeatureEnvironment,
) -> AsyncGenerator[FeatureManager, None]:
    manager = FeatureManager(repository=repository, cache=cache, queue=queue)
    await manager.start()
    yield manager
    await manager.shutdown(timeout=1)


# ============ Factory Fixtures ============


class FlagFactory:
    """Factory for creating flags with a config in one environment."""

    def __init__(self, repository: MemoryFeatureRepository, environment: FeatureEnvironment):
        self.repository = repository
        self.environment = environment
        self.configs: dict[str, FeatureFlagConfig] = {}

    def create(
        self,
        key: str,
        type: FlagType = FlagType.BOOLEAN,
        enabled: bool = True,
        rollout: int | None = None,
        targeting_rules: Any = None,
        variants: list[FlagVariant] | None = None,
        archived: bool = False,
        with_config: bool = True,
    ) -> FeatureFlag:
        flag = self.repository.add_flag(
            FeatureFlag(key=key, name=key.replace("_", " ").title(), type=type, archived=archived)
        )
        if with_config:
            self.configs[key] = self.repository.add_config(
                FeatureFlagConfig(
                    feature_flag_id=flag.id,
                    environment_id=self.environment.id,
                    enabled=enabled,
                    rollout_percentage=rollout,
                    targeting_rules=targeting_rules if targeting_rules is not None else {},
                    variants=variants or [],
                )
            )
        return flag


class ExperimentFactory:
    """Factory for creating experiments with weighted variants."""

    VARIANT_KEYS = ["control", "treatment", "treatment_b", "treatment_c"]

    def __init__(self, repository: MemoryFeatureRepository):
        self.repository = repository

    def create(
        self,
        key: str,
        weights: tuple[int, ...] = (50, 50),
        traffic: int = 100,
        status: ExperimentStatus = ExperimentStatus.RUNNING,
        start_in: timedelta | None = None,
        end_in: timedelta | None = None,
    ) -> tuple[Experiment, list[ExperimentVariant]]:
        now = utcnow()
        experiment = Experiment(
            key=key,
            name=key,
            status=status,
            traffic_allocation=traffic,
            start_date=now + start_in if start_in is not None else None,
            end_date=now + end_in if end_in is not None else None,
        )
        variants = [
            ExperimentVariant(
                experiment_id=experiment.id,
                key=variant_key,
                weight=weight,
                is_control=index == 0,
                payload={"variant": variant_key},
            )
            for index, (variant_key, weight) in enumerate(zip(self.VARIANT_KEYS, weights))
        ]
        self.repository.add_experiment(experiment, variants)
        return experiment, variants


@pytest.fixture
def flag_factory(repository: MemoryFeatureRepository, production: FeatureEnvironment) -> FlagFactory:
    return FlagFactory(repository, production)


@pytest.fixture
def experiment_factory(repository: MemoryFeatureRepository) -> ExperimentFactory:
    return ExperimentFactory(repository)


@pytest.fixture
def beta_segment(repository: MemoryFeatureRepository) -> UserSegment:
    return repository.add_segment(
        UserSegment(
            key="beta_testers",
            conditions=[{"attribute": "beta", "operator": "equals", "value": True}],
        )
    )


# ============ HTTP Client ============


@pytest_asyncio.fixture
async def container() -> AsyncGenerator[Container, None]:
    """Isolated container using memory backends."""
    container = Container(settings=Settings(environment="testing", log_format="text"))
    yield container
    container.clear()


@pytest_asyncio.fixture
async def client(container: Container) -> AsyncGenerator[AsyncClient, None]:
    """
    Test client bound to the container.

    The lifespan is not run by ASGITransport, so the container is
    initialized and shut down here.
    """
    app = create_app(container)
    await container.initialize()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    await container.shutdown()


# ============ Database ============


@pytest_asyncio.fixture
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_repository(session_factory) -> DatabaseFeatureRepository:
    return DatabaseFeatureRepository(session_factory)


# ============ Failing Implementations ============


class FailingCacheBackend:
    """Cache whose every call fails."""

    async def get(self, key: str) -> str | None:
        raise CacheError("cache down")

    async def set(self, key: str, value: str, ttl=None) -> bool:
        raise CacheError("cache down")

    async def delete(self, key: str) -> bool:
        raise CacheError("cache down")

    async def delete_pattern(self, pattern: str) -> int:
        raise CacheError("cache down")

    async def exists(self, key: str) -> bool:
        raise CacheError("cache down")


class FlakyRepository(MemoryFeatureRepository):
    """Memory repository that raises RepositoryError on selected methods."""

    def __init__(self, failing: set[str] | None = None):
        super().__init__()
        self.failing = failing or set()

    def _check(self, name: str) -> None:
        if name in self.failing:
            raise RepositoryError(f"{name} unavailable")

    async def get_feature_flag(self, key):
        self._check("get_feature_flag")
        return await super().get_feature_flag(key)

    async def get_feature_flags(self, archived=False):
        self._check("get_feature_flags")
        return await super().get_feature_flags(archived)

    async def get_environment(self, name):
        self._check("get_environment")
        return await super().get_environment(name)

    async def get_user_segment(self, key):
        self._check("get_user_segment")
        return await super().get_user_segment(key)

    async def get_user_assignment(self, user_id, environment_id, subject_key):
        self._check("get_user_assignment")
        return await super().get_user_assignment(user_id, environment_id, subject_key)

    async def create_feature_event(self, event):
        self._check("create_feature_event")
        return await super().create_feature_event(event)


@pytest.fixture
def failing_cache() -> FailingCacheBackend:
    return FailingCacheBackend()


@pytest.fixture
def flaky_repository() -> FlakyRepository:
    return FlakyRepository()

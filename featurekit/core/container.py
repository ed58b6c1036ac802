"""
Dependency injection container.
Centralizes backend instantiation and lifecycle.
"""

from typing import Any
from dataclasses import dataclass, field

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from featurekit.core.config import Settings, get_settings
from featurekit.core.features.backends import DatabaseFeatureRepository, MemoryFeatureRepository
from featurekit.core.features.interfaces import FeatureRepository
from featurekit.core.features.manager import FeatureManager
from featurekit.core.interfaces import CacheBackend, QueueBackend
from featurekit.implementations.cache import MemoryCacheBackend, RedisCacheBackend
from featurekit.implementations.queue import MemoryQueueBackend

logger = structlog.get_logger(__name__)


@dataclass
class Container:
    """
    Dependency injection container.

    Holds the configured backends and the feature manager. Backend types
    come from settings (FEATURE_REPOSITORY, FEATURE_CACHE).

    Example:
    ```python
    from featurekit.core.container import container

    await container.initialize()
    result = await container.manager.evaluate_flag("dark_mode", context)
    await container.shutdown()
    ```
    """

    settings: Settings = field(default_factory=get_settings)
    _instances: dict[str, Any] = field(default_factory=dict)

    @property
    def engine(self) -> AsyncEngine:
        """SQLAlchemy engine (database repository only)."""
        if "engine" not in self._instances:
            self._instances["engine"] = create_async_engine(
                self.settings.database.url,
                echo=self.settings.database.echo,
            )
        return self._instances["engine"]

    @property
    def cache(self) -> CacheBackend:
        """Get configured cache backend."""
        if "cache" not in self._instances:
            features = self.settings.features
            if features.cache == "redis":
                self._instances["cache"] = RedisCacheBackend(
                    redis_url=str(self.settings.redis.url),
                    default_ttl=features.cache_ttl,
                    max_connections=self.settings.redis.max_connections,
                )
            else:
                self._instances["cache"] = MemoryCacheBackend(default_ttl=features.cache_ttl)
        return self._instances["cache"]

    @property
    def repository(self) -> FeatureRepository:
        """Get configured feature repository."""
        if "repository" not in self._instances:
            if self.settings.features.repository == "database":
                session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
                self._instances["repository"] = DatabaseFeatureRepository(session_factory)
            else:
                self._instances["repository"] = MemoryFeatureRepository()
        return self._instances["repository"]

    @property
    def queue(self) -> QueueBackend:
        """Get configured queue backend."""
        if "queue" not in self._instances:
            features = self.settings.features
            self._instances["queue"] = MemoryQueueBackend(
                workers=features.worker_count,
                maxsize=features.queue_size,
            )
        return self._instances["queue"]

    @property
    def manager(self) -> FeatureManager:
        """Get the feature manager wired to the configured backends."""
        if "manager" not in self._instances:
            features = self.settings.features
            self._instances["manager"] = FeatureManager(
                repository=self.repository,
                cache=self.cache,
                queue=self.queue,
                cache_ttl=features.cache_ttl,
                cache_prefix=features.cache_prefix,
                batch_concurrency=features.batch_concurrency,
            )
        return self._instances["manager"]

    def get(self, name: str) -> Any:
        """Get any registered instance by name."""
        return self._instances.get(name)

    def set(self, name: str, instance: Any) -> None:
        """Set a custom instance (must happen before `manager` is first used)."""
        self._instances[name] = instance

    def clear(self) -> None:
        """Clear all instances (for testing)."""
        self._instances.clear()

    async def initialize(self) -> None:
        """Connect the cache and start background writers."""
        connect = getattr(self.cache, "connect", None)
        if connect is not None:
            await connect()
        await self.manager.start()
        logger.info(
            "container_initialized",
            repository=self.settings.features.repository,
            cache=self.settings.features.cache,
        )

    async def shutdown(self) -> None:
        """Drain background writers, then release connections."""
        if "manager" in self._instances:
            abandoned = await self.manager.shutdown(timeout=self.settings.features.shutdown_timeout)
            logger.info("container_shutdown", abandoned=abandoned)

        if "cache" in self._instances:
            disconnect = getattr(self.cache, "disconnect", None)
            if disconnect is not None:
                await disconnect()

        if "engine" in self._instances:
            await self.engine.dispose()


# Global container instance
container = Container()

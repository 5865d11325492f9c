"""Redis cache backend.

Requires the ``redis`` extra (``aiocache[redis]``).
"""

import typing as t
from aiocache.backends.redis import RedisCache as AioRedisCache
from aiocache.serializers import PickleSerializer
from pydantic_settings import SettingsConfigDict
from redis.asyncio import Redis

from repokit.logger import get_logger

from ._base import CacheBase, CacheBaseSettings

logger = get_logger(__name__)


class RedisCacheSettings(CacheBaseSettings):
    model_config = SettingsConfigDict(env_prefix="REPOSITORY_REDIS_")

    connection_string: str | None = None


class RedisCache(CacheBase):
    """Cache backed by aiocache's ``RedisCache``."""

    def __init__(
        self,
        settings: RedisCacheSettings | None = None,
        **kwargs: t.Any,
    ) -> None:
        super().__init__(settings or RedisCacheSettings())
        self._init_kwargs = kwargs

    def _create_redis(self) -> Redis:
        settings = t.cast("RedisCacheSettings", self.settings)
        redis_kwargs: dict[str, t.Any] = {
            "decode_responses": False,
            "socket_connect_timeout": settings.connect_timeout,
            "max_connections": settings.max_connections,
        }
        if settings.connection_string:
            logger.info(
                f"Initializing Redis cache connection to {self._mask(settings.connection_string)}",
            )
            return Redis.from_url(settings.connection_string, **redis_kwargs)
        redis_kwargs |= {
            "host": settings.host.get_secret_value(),
            "port": settings.port or 6379,
            "db": settings.db,
        }
        if settings.user:
            redis_kwargs["username"] = settings.user.get_secret_value()
        if settings.password:
            redis_kwargs["password"] = settings.password.get_secret_value()
        logger.info(
            f"Initializing Redis cache connection to {redis_kwargs['host']}:{redis_kwargs['port']}",
        )
        return Redis(**redis_kwargs)

    async def _create_client(self) -> AioRedisCache:
        return AioRedisCache(
            client=self._create_redis(),
            serializer=PickleSerializer(),
            namespace=self.settings.namespace,
            **self._init_kwargs,
        )

    async def clear(self) -> None:
        await self._call("clear", namespace=self.settings.namespace)

    @staticmethod
    def _mask(connection_string: str) -> str:
        """Mask the password in a connection string for logging."""
        if "@" not in connection_string:
            return connection_string
        head, _, tail = connection_string.rpartition("@")
        scheme, _, auth = head.partition("://")
        user, _, _ = auth.partition(":")
        return f"{scheme}://{user}:***@{tail}"

"""In-process cache backend."""

import typing as t
from aiocache.backends.memory import SimpleMemoryCache
from aiocache.serializers import PickleSerializer

from ._base import CacheBase, CacheBaseSettings


class MemoryCacheSettings(CacheBaseSettings): ...


class MemoryCache(CacheBase):
    """Cache backed by aiocache's ``SimpleMemoryCache``.

    Values are pickled on write so callers never share mutable state with
    the cache.
    """

    def __init__(
        self,
        settings: MemoryCacheSettings | None = None,
        **kwargs: t.Any,
    ) -> None:
        super().__init__(settings or MemoryCacheSettings())
        self._init_kwargs = kwargs

    async def _create_client(self) -> SimpleMemoryCache:
        cache = SimpleMemoryCache(
            serializer=PickleSerializer(),
            namespace=self.settings.namespace,
            **self._init_kwargs,
        )
        cache.timeout = 0.0
        return cache

    async def clear(self) -> None:
        await self._call("clear", namespace=self.settings.namespace)

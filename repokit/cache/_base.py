"""Cache backend base.

A cache backend stores opaque values under string keys and keeps a tag index
so groups of keys can be dropped together:

- Values are wrapped in a one-element envelope, so ``None`` is cacheable
- Each tag ``name`` owns an index entry ``tag:<name>`` mapping its keys to
  their expiry time; expired keys are pruned whenever the entry is rewritten
  and the entry itself expires with the longest-lived key
- Client failures, including failure to create the client, surface as
  ``CacheBackendUnavailable``
"""

import asyncio
import math
import time

import typing as t
from aiocache import BaseCache
from pydantic import Field, SecretStr
from pydantic_settings import SettingsConfigDict

from repokit.config import Settings
from repokit.logger import get_logger

logger = get_logger(__name__)

TAG_PREFIX = "tag:"


class CacheBackendUnavailable(Exception):
    """Raised when the underlying cache client fails."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Cache backend unavailable during {operation}: {cause}")


class CacheBaseSettings(Settings):
    model_config = SettingsConfigDict(env_prefix="REPOSITORY_CACHE_BACKEND_")

    default_ttl: int = Field(default=1800, ge=0)
    namespace: str = "repokit:"

    host: SecretStr = SecretStr("127.0.0.1")
    port: int | None = 6379
    user: SecretStr | None = None
    password: SecretStr | None = None
    db: int = 0
    connect_timeout: float | None = 3.0
    max_connections: int | None = 50


@t.runtime_checkable
class CacheBackend(t.Protocol):
    async def get(self, key: str) -> tuple[t.Any, bool]: ...

    async def set(
        self,
        key: str,
        value: t.Any,
        ttl: int | None = None,
        tags: t.Iterable[str] = (),
    ) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def clear(self) -> None: ...

    async def get_or_compute(
        self,
        key: str,
        ttl: int | None,
        compute: t.Callable[[], t.Awaitable[t.Any]],
        tags: t.Iterable[str] = (),
    ) -> t.Any: ...

    async def invalidate_tags(self, tags: t.Iterable[str]) -> int: ...


class CacheBase:
    """Tag-aware cache on top of an aiocache client.

    Subclasses provide ``_create_client``; the client is created lazily on
    first use.
    """

    def __init__(self, settings: CacheBaseSettings | None = None) -> None:
        self.settings = settings or CacheBaseSettings()
        self._client: BaseCache | None = None
        self._client_lock: asyncio.Lock | None = None
        self._tag_lock = asyncio.Lock()

    async def _ensure_client(self) -> BaseCache:
        if self._client is None:
            if self._client_lock is None:
                self._client_lock = asyncio.Lock()
            async with self._client_lock:
                if self._client is None:
                    self._client = await self._create_client()
        return self._client

    async def _create_client(self) -> BaseCache:
        msg = "Subclasses must implement _create_client()"
        raise NotImplementedError(msg)

    async def get_client(self) -> BaseCache:
        return await self._ensure_client()

    async def _call(self, operation: str, *args: t.Any, **kwargs: t.Any) -> t.Any:
        try:
            client = await self._ensure_client()
            return await getattr(client, operation)(*args, **kwargs)
        except Exception as e:
            raise CacheBackendUnavailable(operation, e) from e

    async def get(self, key: str) -> tuple[t.Any, bool]:
        """Get a cached value.

        Returns:
            Tuple of (value, found)
        """
        envelope = await self._call("get", key)
        if envelope is None:
            return None, False
        return envelope[0], True

    async def set(
        self,
        key: str,
        value: t.Any,
        ttl: int | None = None,
        tags: t.Iterable[str] = (),
    ) -> None:
        ttl = (self.settings.default_ttl if ttl is None else ttl) or None
        await self._call("set", key, (value,), ttl=ttl)
        for tag in tags:
            await self._index(tag, key, ttl)

    async def delete(self, key: str) -> bool:
        return bool(await self._call("delete", key))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", key))

    async def clear(self) -> None:
        await self._call("clear")

    async def get_or_compute(
        self,
        key: str,
        ttl: int | None,
        compute: t.Callable[[], t.Awaitable[t.Any]],
        tags: t.Iterable[str] = (),
    ) -> t.Any:
        value, found = await self.get(key)
        if found:
            return value
        value = await compute()
        await self.set(key, value, ttl=ttl, tags=tags)
        return value

    async def _tag_index(self, tag: str) -> dict[str, float | None]:
        """Live keys of a tag mapped to their expiry (``None`` never expires)."""
        index = await self._call("get", f"{TAG_PREFIX}{tag}") or {}
        now = time.time()
        return {
            key: expiry
            for key, expiry in index.items()
            if expiry is None or expiry > now
        }

    async def tagged_keys(self, tag: str) -> list[str]:
        return list(await self._tag_index(tag))

    async def _index(self, tag: str, key: str, ttl: int | None) -> None:
        async with self._tag_lock:
            index = await self._tag_index(tag)
            now = time.time()
            lifetimes = [
                None if expiry is None else math.ceil(expiry - now)
                for indexed, expiry in index.items()
                if indexed != key
            ]
            lifetimes.append(ttl)
            index[key] = None if ttl is None else now + ttl
            entry_ttl = (
                None if None in lifetimes else max(t.cast("list[int]", lifetimes))
            )
            await self._call("set", f"{TAG_PREFIX}{tag}", index, ttl=entry_ttl)

    async def invalidate_tags(self, tags: t.Iterable[str]) -> int:
        """Delete every key indexed under any of ``tags``.

        Returns:
            Number of distinct keys removed
        """
        removed: set[str] = set()
        async with self._tag_lock:
            for tag in tags:
                for key in await self.tagged_keys(tag):
                    if key not in removed:
                        await self._call("delete", key)
                        removed.add(key)
                await self._call("delete", f"{TAG_PREFIX}{tag}")
        if removed:
            logger.debug(f"Invalidated {len(removed)} cache keys")
        return len(removed)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

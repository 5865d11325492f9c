"""Repository read caching.

Provides:
- Canonical, versioned cache keys from (repository, method, args, criteria)
- Cache tags derived from the entity name
- A cache layer with get-or-compute reads and tag invalidation on writes

The cache is an optimization only: backend failures are logged and counted,
and reads fall back to computing the result directly.
"""

import hashlib
import json
from enum import Enum

import typing as t
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, fields, is_dataclass
from datetime import date, time
from inflection import pluralize, singularize, underscore
from pydantic import BaseModel
from typing import TYPE_CHECKING, Any

from repokit.cache import CacheBackend
from repokit.logger import get_logger

from ._base import RepositoryCacheSettings

if TYPE_CHECKING:
    from .criteria import CriteriaStack

logger = get_logger(__name__)

KEY_FORMAT_VERSION = 1
REPOSITORIES_TAG = "repositories"


def canonicalize(value: Any) -> Any:
    """Convert a value into plain JSON-compatible data with a stable order."""
    match value:
        case None | bool() | int() | float() | str():
            return value
        case Enum():
            return canonicalize(value.value)
        case date() | time():
            return value.isoformat()
        case BaseModel():
            return canonicalize(value.model_dump(mode="json"))
        case Mapping() if all(isinstance(key, str) for key in value):
            return {key: canonicalize(item) for key, item in value.items()}
        case Mapping():
            # typed keys: {1: x} and {"1": x} must not collide
            pairs = [[canonicalize(key), canonicalize(item)] for key, item in value.items()]
            return {
                "__pairs__": sorted(
                    pairs,
                    key=lambda pair: json.dumps(pair, sort_keys=True, default=str),
                ),
            }
        case set() | frozenset():
            return sorted(
                (canonicalize(item) for item in value),
                key=lambda item: json.dumps(item, sort_keys=True, default=str),
            )
        case list() | tuple():
            return [canonicalize(item) for item in value]
        case bytes():
            return value.hex()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: canonicalize(getattr(value, f.name)) for f in fields(value)}
    if callable(getattr(value, "to_dict", None)):
        return canonicalize(value.to_dict())
    return str(value)


def digest(payload: Any) -> str:
    encoded = json.dumps(
        canonicalize(payload),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(encoded.encode()).hexdigest()


def cache_tags(entity_name: str) -> list[str]:
    """Tags for an entity: its singular and plural forms plus ``repositories``."""
    name = underscore(entity_name)
    tags = [singularize(name), pluralize(name), REPOSITORIES_TAG]
    return list(dict.fromkeys(tags))


class CacheKeyDeriver:
    """Derive cache keys for repository reads.

    Equal (repository, method, args, active criteria) give equal keys. Any
    change in argument values or in the criteria stack composition or order
    gives a different key. Mapping key order is irrelevant.
    """

    def __init__(self, prefix: str = "repository") -> None:
        self.prefix = prefix

    def payload(
        self,
        repo_type: type,
        method: str,
        args: Any,
        stack: "CriteriaStack | None" = None,
    ) -> dict[str, Any]:
        return {
            "v": KEY_FORMAT_VERSION,
            "repository": f"{repo_type.__module__}.{repo_type.__qualname__}",
            "method": method,
            "args": canonicalize(args),
            "criteria": stack.serialize() if stack is not None else [],
        }

    def derive(
        self,
        repo_type: type,
        method: str,
        args: Any,
        stack: "CriteriaStack | None" = None,
        entity: str | None = None,
    ) -> str:
        entity = underscore(entity or repo_type.__name__)
        hash_suffix = digest(self.payload(repo_type, method, args, stack))
        return f"{self.prefix}:v{KEY_FORMAT_VERSION}:{entity}:{method}:{hash_suffix}"


@dataclass
class CacheMetrics:
    """Cache performance metrics."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    invalidations: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def total_operations(self) -> int:
        """Get total cache operations."""
        return self.hits + self.misses + self.writes


class CacheLayer:
    """Get-or-compute caching of repository reads.

    Args:
        backend: Tag-aware cache backend, or ``None`` to disable caching
        settings: Enable flag, TTL, method allow/deny lists and clean toggles
        tags: Tags attached to every stored read and dropped on writes
    """

    def __init__(
        self,
        backend: CacheBackend | None,
        settings: RepositoryCacheSettings | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        self.backend = backend
        self.settings = settings or RepositoryCacheSettings()
        self.tags = list(tags)
        self.metrics = CacheMetrics()

    def allowed(self, method: str) -> bool:
        """Whether ``method`` results may be cached."""
        if self.backend is None or not self.settings.enabled:
            return False
        if self.settings.only is not None:
            return method in self.settings.only
        if self.settings.exclude is not None:
            return method not in self.settings.exclude
        return True

    async def _get(self, key: str) -> tuple[Any, bool]:
        try:
            value, found = await self.backend.get(key)  # type: ignore[union-attr]
        except Exception as e:
            self.metrics.errors += 1
            logger.warning(f"Cache read failed for {key}: {e}")
            return None, False
        if found:
            self.metrics.hits += 1
            logger.debug(f"Cache hit {key}")
        else:
            self.metrics.misses += 1
            logger.debug(f"Cache miss {key}")
        return value, found

    async def _set(self, key: str, value: Any) -> bool:
        try:
            await self.backend.set(  # type: ignore[union-attr]
                key,
                value,
                ttl=self.settings.ttl,
                tags=self.tags,
            )
        except Exception as e:
            self.metrics.errors += 1
            logger.warning(f"Cache write failed for {key}: {e}")
            return False
        self.metrics.writes += 1
        return True

    async def get_or_compute(
        self,
        key: str,
        method: str,
        compute: Callable[[], Awaitable[Any]],
        skip: bool = False,
    ) -> Any:
        """Return the cached result for ``key`` or compute and store it.

        Args:
            key: Derived cache key
            method: Repository method name, checked against only/exclude
            compute: Coroutine factory producing the fresh result
            skip: Bypass the cache for this call

        Returns:
            Cached or freshly computed result
        """
        if skip or not self.allowed(method):
            return await compute()
        value, found = await self._get(key)
        if found:
            return value
        value = await compute()
        await self._set(key, value)
        return value

    async def invalidate(self, action: str | None = None) -> int:
        """Drop every cached read carrying this layer's tags.

        Args:
            action: ``create``, ``update`` or ``delete``; ``None`` always clears

        Returns:
            Number of keys removed
        """
        if self.backend is None:
            return 0
        if action is not None and not self.settings.clean.should_clean(action):
            return 0
        try:
            removed = await self.backend.invalidate_tags(self.tags)
        except Exception as e:
            self.metrics.errors += 1
            logger.warning(f"Cache invalidation failed for {self.tags}: {e}")
            return 0
        self.metrics.invalidations += 1
        return t.cast("int", removed)

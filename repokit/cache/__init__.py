from ._base import (
    CacheBackend,
    CacheBackendUnavailable,
    CacheBase,
    CacheBaseSettings,
)
from .memory import MemoryCache, MemoryCacheSettings

__all__ = [
    "CacheBackend",
    "CacheBackendUnavailable",
    "CacheBase",
    "CacheBaseSettings",
    "MemoryCache",
    "MemoryCacheSettings",
]

"""Sample data and fakes shared by the test modules."""

import typing as t

from repokit.cache import CacheBackendUnavailable
from repokit.repository import Repository

ARTICLES: list[dict[str, t.Any]] = [
    {
        "id": 1,
        "title": "Async Python patterns",
        "status": "published",
        "views": 120,
        "rating": 4.5,
        "featured": True,
        "published_at": "2024-01-15T09:30:00",
        "author": {"id": 1, "name": "Ada Lovelace", "company": {"name": "Analytical"}},
        "tags": [{"name": "python"}, {"name": "async"}],
    },
    {
        "id": 2,
        "title": "Caching with Redis",
        "status": "draft",
        "views": 15,
        "rating": 3.0,
        "featured": False,
        "published_at": None,
        "author": {"id": 2, "name": "Grace Hopper", "company": {"name": "Navy"}},
        "tags": [{"name": "redis"}],
    },
    {
        "id": 3,
        "title": "SQL precedence explained",
        "status": "published",
        "views": 300,
        "rating": 4.9,
        "featured": True,
        "published_at": "2024-03-02T18:00:00",
        "author": {"id": 1, "name": "Ada Lovelace", "company": {"name": "Analytical"}},
        "tags": [{"name": "sql"}, {"name": "python"}],
    },
    {
        "id": 4,
        "title": "Testing repositories",
        "status": "archived",
        "views": 42,
        "rating": None,
        "featured": False,
        "published_at": "2023-11-20T12:00:00",
        "author": {"id": 3, "name": "Alan Turing", "company": None},
        "tags": [],
    },
]

ARTICLE_SEARCHABLE: dict[str, str] = {
    "title": "like",
    "status": "=",
    "views": ">=",
    "rating": ">",
    "featured": "=",
    "published_at": "=",
    "author.name": "like",
    "author.company.name": "=",
    "tags.name": "=",
}


class ArticleRepository(Repository[dict[str, t.Any]]):
    field_searchable = ARTICLE_SEARCHABLE


class FailingCache:
    """Cache backend whose every operation fails.

    Raises ``CacheBackendUnavailable`` by default, or ``error`` as is.
    """

    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.error = error

    async def _fail(self, operation: str) -> t.NoReturn:
        self.calls.append(operation)
        if self.error is not None:
            raise self.error
        raise CacheBackendUnavailable(operation, ConnectionError("connection refused"))

    async def get(self, key: str) -> tuple[t.Any, bool]:
        await self._fail("get")

    async def set(
        self,
        key: str,
        value: t.Any,
        ttl: int | None = None,
        tags: t.Iterable[str] = (),
    ) -> None:
        await self._fail("set")

    async def delete(self, key: str) -> bool:
        await self._fail("delete")

    async def clear(self) -> None:
        await self._fail("clear")

    async def get_or_compute(
        self,
        key: str,
        ttl: int | None,
        compute: t.Callable[[], t.Awaitable[t.Any]],
        tags: t.Iterable[str] = (),
    ) -> t.Any:
        await self._fail("get_or_compute")

    async def invalidate_tags(self, tags: t.Iterable[str]) -> int:
        await self._fail("invalidate_tags")




class ReferenceCache:
    """Cache backend that keeps values by reference, without copying."""

    def __init__(self) -> None:
        self.values: dict[str, t.Any] = {}

    async def get(self, key: str) -> tuple[t.Any, bool]:
        if key in self.values:
            return self.values[key], True
        return None, False

    async def set(
        self,
        key: str,
        value: t.Any,
        ttl: int | None = None,
        tags: t.Iterable[str] = (),
    ) -> None:
        self.values[key] = value

    async def delete(self, key: str) -> bool:
        return self.values.pop(key, None) is not None

    async def clear(self) -> None:
        self.values.clear()

    async def get_or_compute(
        self,
        key: str,
        ttl: int | None,
        compute: t.Callable[[], t.Awaitable[t.Any]],
        tags: t.Iterable[str] = (),
    ) -> t.Any:
        value, found = await self.get(key)
        if not found:
            value = await compute()
            await self.set(key, value, ttl, tags)
        return value

    async def invalidate_tags(self, tags: t.Iterable[str]) -> int:
        removed = len(self.values)
        self.values.clear()
        return removed

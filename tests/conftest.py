"""Configuration and shared fixtures for pytest."""

import copy
from uuid import uuid4

import pytest
import typing as t

from repokit.cache import MemoryCache, MemoryCacheSettings
from repokit.repository import CriteriaSettings, MemoryStore, RepositorySettings
from tests.support import ARTICLES, ArticleRepository


@pytest.fixture
def articles() -> list[dict[str, t.Any]]:
    return copy.deepcopy(ARTICLES)


@pytest.fixture
def store(articles: list[dict[str, t.Any]]) -> MemoryStore:
    return MemoryStore(articles, entity_name="Article")


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache(MemoryCacheSettings(namespace=f"test-{uuid4().hex}:"))


@pytest.fixture
def criteria_settings() -> CriteriaSettings:
    return CriteriaSettings()


@pytest.fixture
def settings() -> RepositorySettings:
    return RepositorySettings()


@pytest.fixture
def repository(
    store: MemoryStore,
    cache: MemoryCache,
    settings: RepositorySettings,
) -> ArticleRepository:
    return ArticleRepository(store, settings=settings, cache=cache)

"""Tests for cache key derivation."""

from datetime import date
from enum import Enum

import pytest
from pydantic import BaseModel

from repokit.repository import (
    CacheKeyDeriver,
    CriteriaStack,
    OrderByCriterion,
    RequestCriteria,
    WhereCriterion,
    cache_tags,
)
from repokit.repository.cache import KEY_FORMAT_VERSION, canonicalize, digest
from tests.support import ARTICLE_SEARCHABLE, ArticleRepository


class Color(Enum):
    RED = "red"


class Point(BaseModel):
    x: int
    y: int


@pytest.fixture
def deriver() -> CacheKeyDeriver:
    return CacheKeyDeriver("repository")


class TestCanonicalize:
    @pytest.mark.unit
    def test_values(self) -> None:
        assert canonicalize(
            {
                "color": Color.RED,
                "day": date(2024, 1, 15),
                "point": Point(x=1, y=2),
                "ids": (1, 2),
                "raw": b"\x01",
            },
        ) == {
            "color": "red",
            "day": "2024-01-15",
            "point": {"x": 1, "y": 2},
            "ids": [1, 2],
            "raw": "01",
        }

    @pytest.mark.unit
    def test_sets_are_ordered(self) -> None:
        assert canonicalize({3, 1, 2}) == [1, 2, 3]

    @pytest.mark.unit
    def test_digest_ignores_mapping_order(self) -> None:
        assert digest({"a": 1, "b": {"c": 2, "d": 3}}) == digest({"b": {"d": 3, "c": 2}, "a": 1})
        assert digest({"a": 1}) != digest({"a": 2})

    @pytest.mark.unit
    def test_non_string_keys_keep_their_type(self) -> None:
        assert digest({1: "x"}) != digest({"1": "x"})
        assert digest({True: "x"}) != digest({1: "x"})
        assert digest({1: "x", 2: "y"}) == digest({2: "y", 1: "x"})
        assert canonicalize({2: "y", 1: "x"}) == {"__pairs__": [[1, "x"], [2, "y"]]}


class TestCacheKeyDeriver:
    @pytest.mark.unit
    def test_key_format(self, deriver: CacheKeyDeriver) -> None:
        key = deriver.derive(ArticleRepository, "all", {}, CriteriaStack(), entity="Article")

        prefix, version, entity, method, suffix = key.split(":")
        assert prefix == "repository"
        assert version == f"v{KEY_FORMAT_VERSION}"
        assert entity == "article"
        assert method == "all"
        assert len(suffix) == 64

    @pytest.mark.unit
    def test_stable_for_equal_inputs(self, deriver: CacheKeyDeriver) -> None:
        first = deriver.derive(
            ArticleRepository,
            "find_where",
            {"where": {"status": "draft", "views": 10}, "columns": None},
            CriteriaStack([OrderByCriterion("views")]),
        )
        second = deriver.derive(
            ArticleRepository,
            "find_where",
            {"columns": None, "where": {"views": 10, "status": "draft"}},
            CriteriaStack([OrderByCriterion("views")]),
        )

        assert first == second

    @pytest.mark.unit
    def test_sensitive_to_method_and_arguments(self, deriver: CacheKeyDeriver) -> None:
        base = deriver.derive(ArticleRepository, "find", {"id": 1})

        assert base != deriver.derive(ArticleRepository, "find", {"id": 2})
        assert base != deriver.derive(ArticleRepository, "exists", {"id": 1})

    @pytest.mark.unit
    def test_sensitive_to_repository_type(self, deriver: CacheKeyDeriver) -> None:
        class OtherRepository(ArticleRepository): ...

        assert deriver.derive(ArticleRepository, "all", None, entity="Article") != (
            deriver.derive(OtherRepository, "all", None, entity="Article")
        )

    @pytest.mark.unit
    def test_push_changes_key_and_pop_restores_it(self, deriver: CacheKeyDeriver) -> None:
        stack = CriteriaStack([OrderByCriterion("views")])
        original = deriver.derive(ArticleRepository, "all", None, stack)

        stack.push(WhereCriterion("status", "=", "published"))
        pushed = deriver.derive(ArticleRepository, "all", None, stack)
        stack.pop(WhereCriterion)
        popped = deriver.derive(ArticleRepository, "all", None, stack)

        assert pushed != original
        assert popped == original

    @pytest.mark.unit
    def test_sensitive_to_criteria_order(self, deriver: CacheKeyDeriver) -> None:
        where = WhereCriterion("status", "=", "published")
        order = OrderByCriterion("views")

        assert deriver.derive(ArticleRepository, "all", None, CriteriaStack([where, order])) != (
            deriver.derive(ArticleRepository, "all", None, CriteriaStack([order, where]))
        )

    @pytest.mark.unit
    def test_functionally_equivalent_criteria_differ(self, deriver: CacheKeyDeriver) -> None:
        empty = CriteriaStack()
        no_op = CriteriaStack([RequestCriteria({}, ARTICLE_SEARCHABLE)])

        assert deriver.derive(ArticleRepository, "all", None, empty) != (
            deriver.derive(ArticleRepository, "all", None, no_op)
        )

    @pytest.mark.unit
    def test_request_criteria_parameter_order_is_irrelevant(
        self,
        deriver: CacheKeyDeriver,
    ) -> None:
        first = CriteriaStack(
            [RequestCriteria({"search": "python", "orderBy": "views"}, ARTICLE_SEARCHABLE)],
        )
        second = CriteriaStack(
            [RequestCriteria("orderBy=views&search=python", ARTICLE_SEARCHABLE)],
        )

        assert deriver.derive(ArticleRepository, "all", None, first) == (
            deriver.derive(ArticleRepository, "all", None, second)
        )

    @pytest.mark.unit
    def test_skipped_stack_matches_empty_stack(self, deriver: CacheKeyDeriver) -> None:
        skipped = CriteriaStack([OrderByCriterion("views")]).skip()

        assert deriver.derive(ArticleRepository, "all", None, skipped) == (
            deriver.derive(ArticleRepository, "all", None, CriteriaStack())
        )


class TestCacheTags:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("entity", "expected"),
        [
            ("Article", ["article", "articles", "repositories"]),
            ("BlogPost", ["blog_post", "blog_posts", "repositories"]),
            ("people", ["person", "people", "repositories"]),
        ],
    )
    def test_tags(self, entity: str, expected: list[str]) -> None:
        assert cache_tags(entity) == expected

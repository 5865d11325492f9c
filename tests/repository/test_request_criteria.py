"""Tests for compiling request parameters onto a query builder."""

from datetime import date
from urllib.parse import urlencode

import pytest
import typing as t

from repokit.repository import (
    Boolean,
    CriteriaStack,
    InvalidSearchFields,
    MemoryStore,
    Operator,
    RequestCriteria,
    SortCriteria,
    SortDirection,
    WhereCriterion,
)
from repokit.repository.query_builder import (
    Where,
    WhereDate,
    WhereFuzzy,
    WhereGroup,
    WhereHas,
)
from tests.support import ARTICLE_SEARCHABLE

PEOPLE_SEARCHABLE = {
    "name": "like",
    "email": "like",
    "status": "=",
    "active": "=",
    "deleted_at": "=",
    "roles.name": "=",
}

PEOPLE = [
    {
        "id": 1,
        "name": "Ada",
        "email": "a@x.com",
        "status": "inactive",
        "active": False,
        "deleted_at": None,
        "roles": [{"name": "admin"}],
    },
    {
        "id": 2,
        "name": "Grace",
        "email": "grace@navy.mil",
        "status": "active",
        "active": True,
        "deleted_at": None,
        "roles": [{"name": "editor"}],
    },
    {
        "id": 3,
        "name": "Alan",
        "email": "alan@bletchley.uk",
        "status": "inactive",
        "active": True,
        "deleted_at": "2024-02-01T00:00:00",
        "roles": [],
    },
]


@pytest.fixture
def people() -> MemoryStore:
    return MemoryStore(PEOPLE, entity_name="Person")


def compile_people(params: t.Any, store: MemoryStore) -> t.Any:
    return RequestCriteria(params, PEOPLE_SEARCHABLE).apply(store.query())


def compile_articles(params: t.Any, store: MemoryStore) -> t.Any:
    return RequestCriteria(params, ARTICLE_SEARCHABLE).apply(store.query())


class TestSingleFilterCondition:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("field", "operator", "value", "expected"),
        [
            ("views", "=", "100", Where("views", Operator.EQ, "100")),
            ("status", "!=", "draft", Where("status", Operator.NE, "draft")),
            ("views", ">", "100", Where("views", Operator.GT, 100)),
            ("views", "<", "100", Where("views", Operator.LT, 100)),
            ("rating", ">=", "4.5", Where("rating", Operator.GTE, 4.5)),
            ("views", "<=", "100", Where("views", Operator.LTE, 100)),
            ("title", "like", "%Py%", Where("title", Operator.LIKE, "%Py%")),
            ("title", "ilike", "%py%", Where("title", Operator.ILIKE, "%py%")),
            ("title", "not_like", "%Py%", Where("title", Operator.NOT_LIKE, "%Py%")),
            (
                "status",
                "in",
                "draft,archived",
                Where("status", Operator.IN, ("draft", "archived")),
            ),
            (
                "status",
                "not_in",
                "draft,archived",
                Where("status", Operator.NOT_IN, ("draft", "archived")),
            ),
            ("views", "between", "10,100", Where("views", Operator.BETWEEN, (10, 100))),
            (
                "views",
                "not_between",
                "10,100",
                Where("views", Operator.NOT_BETWEEN, (10, 100)),
            ),
            (
                "published_at",
                "date",
                "2024-01-15",
                WhereDate("published_at", Operator.EQ, date(2024, 1, 15)),
            ),
            (
                "published_at",
                "date_between",
                "2024-01-01,2024-01-31",
                WhereGroup(
                    (
                        WhereDate("published_at", Operator.GTE, date(2024, 1, 1)),
                        WhereDate("published_at", Operator.LTE, date(2024, 1, 31)),
                    ),
                ),
            ),
            ("published_at", "exists", "", Where("published_at", Operator.EXISTS)),
            (
                "published_at",
                "not_exists",
                "",
                Where("published_at", Operator.NOT_EXISTS),
            ),
        ],
    )
    def test_one_condition_per_filter(
        self,
        store: MemoryStore,
        field: str,
        operator: str,
        value: str,
        expected: t.Any,
    ) -> None:
        query = urlencode(
            {f"filter[{field}][operator]": operator, f"filter[{field}][value]": value},
        )

        builder = compile_articles(query, store)

        assert builder.clauses == (expected,)
        assert builder.orders == []
        assert builder.eager_loads == []


class TestFilters:
    @pytest.mark.unit
    def test_null_filter(self, people: MemoryStore) -> None:
        builder = compile_people("filter[deleted_at]=", people)

        assert builder.clauses == (Where("deleted_at", Operator.NOT_EXISTS),)

    @pytest.mark.unit
    @pytest.mark.parametrize(("raw", "expected"), [("true", True), ("false", False)])
    def test_boolean_coercion(self, people: MemoryStore, raw: str, expected: bool) -> None:
        builder = compile_people(f"filter[active]={raw}", people)

        (clause,) = builder.clauses
        assert clause == Where("active", Operator.EQ, expected)
        assert type(clause.value) is bool

    @pytest.mark.unit
    def test_relation_filter(self, people: MemoryStore) -> None:
        builder = compile_people("filter[roles.name]=admin", people)

        assert builder.clauses == (
            WhereHas("roles", (Where("name", Operator.EQ, "admin"),)),
        )

    @pytest.mark.unit
    def test_nested_relation_filter(self, store: MemoryStore) -> None:
        builder = compile_articles({"filter": {"author.company.name": "Navy"}}, store)

        assert builder.clauses == (
            WhereHas("author.company", (Where("name", Operator.EQ, "Navy"),)),
        )

    @pytest.mark.unit
    def test_or_group(self, people: MemoryStore) -> None:
        builder = compile_people(
            "filter[or][0]=[email,=,a@x.com]&filter[or][1]=[status,=,active]",
            people,
        )

        assert builder.clauses == (
            WhereGroup(
                (
                    Where("email", Operator.EQ, "a@x.com", Boolean.OR),
                    Where("status", Operator.EQ, "active", Boolean.OR),
                ),
                Boolean.AND,
            ),
        )

    @pytest.mark.unit
    def test_filters_precede_or_group(self, people: MemoryStore) -> None:
        builder = compile_people(
            {"filter": {"or": [["name", "Ada"], ["name", "Alan"]], "active": "true"}},
            people,
        )

        assert builder.clauses[0] == Where("active", Operator.EQ, True)
        assert isinstance(builder.clauses[1], WhereGroup)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_filters_against_records(self, people: MemoryStore) -> None:
        inactive_or_admin = compile_people(
            {"filter": {"deleted_at": "", "or": [["status", "active"], ["roles.name", "admin"]]}},
            people,
        )
        deleted = compile_people({"filter": {"deleted_at": {"operator": "!=", "value": ""}}}, people)

        assert [r["id"] for r in await inactive_or_admin.get()] == [1, 2]
        assert [r["id"] for r in await deleted.get()] == [3]


class TestSearch:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "params",
        [
            "search=foo&filter[email]=a@x.com",
            "filter[email]=a@x.com&search=foo",
            {"filter": {"email": "a@x.com"}, "search": "foo"},
        ],
    )
    def test_search_group_precedes_filters(self, people: MemoryStore, params: t.Any) -> None:
        criteria = RequestCriteria(params, {"name": "like", "email": "like"})

        builder = criteria.apply(people.query())

        assert builder.clauses == (
            WhereGroup(
                (
                    Where("name", Operator.LIKE, "%foo%", Boolean.AND),
                    Where("email", Operator.LIKE, "%foo%", Boolean.OR),
                ),
                Boolean.AND,
            ),
            Where("email", Operator.EQ, "a@x.com", Boolean.AND),
        )

    @pytest.mark.unit
    def test_search_join_and(self, people: MemoryStore) -> None:
        criteria = RequestCriteria(
            {"search": "foo", "searchJoin": "and"},
            {"name": "like", "email": "like"},
        )

        (group,) = criteria.apply(people.query()).clauses

        assert [clause.boolean for clause in group.clauses] == [Boolean.AND, Boolean.AND]

    @pytest.mark.unit
    def test_unquoted_terms_split_into_tokens(self, store: MemoryStore) -> None:
        split = compile_articles({"search": "async python", "searchFields": "title:like"}, store)
        phrase = compile_articles(
            {"search": '"async python"', "searchFields": "title:like"},
            store,
        )

        assert split.clauses == (
            WhereGroup(
                (
                    Where("title", Operator.LIKE, "%async%", Boolean.AND),
                    Where("title", Operator.LIKE, "%python%", Boolean.OR),
                ),
            ),
        )
        assert phrase.clauses == (
            WhereGroup((Where("title", Operator.LIKE, "%async python%"),)),
        )

    @pytest.mark.unit
    def test_per_field_search_uses_declared_fields_only(self, store: MemoryStore) -> None:
        builder = compile_articles({"search": "status:draft;password:hunter2"}, store)

        assert builder.clauses == (
            WhereGroup((Where("status", Operator.EQ, "draft"),)),
        )

    @pytest.mark.unit
    def test_search_fields_override_replaces_declared_set(self, store: MemoryStore) -> None:
        builder = compile_articles(
            {"search": "draft", "searchFields": "status:!=;summary:like"},
            store,
        )

        assert builder.clauses == (
            WhereGroup(
                (
                    Where("status", Operator.NE, "draft", Boolean.AND),
                    Where("summary", Operator.LIKE, "%draft%", Boolean.OR),
                ),
            ),
        )

    @pytest.mark.unit
    def test_invalid_search_fields_raise_on_apply(self, store: MemoryStore) -> None:
        criteria = RequestCriteria({"search": "x", "searchFields": "title:regexp"}, ARTICLE_SEARCHABLE)

        with pytest.raises(InvalidSearchFields):
            criteria.apply(store.query())

    @pytest.mark.unit
    def test_relation_and_fuzzy_search(self, store: MemoryStore) -> None:
        builder = compile_articles({"search": "author.name:Ada;title:pythn~1"}, store)

        assert builder.clauses == (
            WhereGroup(
                (
                    WhereHas("author", (Where("name", Operator.LIKE, "%Ada%"),)),
                    WhereFuzzy("title", "pythn", 1, Boolean.OR),
                ),
            ),
        )

    @pytest.mark.unit
    def test_uncoercible_search_terms_are_skipped(self, store: MemoryStore) -> None:
        builder = compile_articles({"search": "views:many"}, store)

        assert builder.clauses == ()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_global_search_against_records(self, store: MemoryStore) -> None:
        capitalized = compile_articles({"search": "Python"}, store)
        lowercase = compile_articles({"search": "python"}, store)
        fuzzy = compile_articles({"search": "title:pythn~1"}, store)

        assert [r["id"] for r in await capitalized.get()] == [1]
        assert [r["id"] for r in await lowercase.get()] == [1, 3]
        assert [r["id"] for r in await fuzzy.get()] == [1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_search_narrows_filtered_results(self, store: MemoryStore) -> None:
        builder = compile_articles(
            {"filter": {"status": "published"}, "search": "python", "orderBy": "views", "sortedBy": "desc"},
            store,
        )

        assert [r["id"] for r in await builder.get()] == [3, 1]

    @pytest.mark.unit
    def test_required_and_excluded_words_add_groups(self, people: MemoryStore) -> None:
        criteria = RequestCriteria(
            {"search": "foo +bar -baz"},
            {"name": "like", "email": "like"},
        )

        builder = criteria.apply(people.query())

        def any_field(word: str) -> tuple[Where, Where]:
            return (
                Where("name", Operator.LIKE, f"%{word}%", Boolean.AND),
                Where("email", Operator.LIKE, f"%{word}%", Boolean.OR),
            )

        assert builder.clauses == (
            WhereGroup(any_field("foo")),
            WhereGroup(any_field("bar")),
            WhereGroup(any_field("baz"), negated=True),
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("search", "expected"),
        [
            ("python -sql", [1]),
            ("+redis", [2]),
            ("-draft", [1, 3, 4]),
            ("+python +async", [1]),
            ("python -nothing", [1, 3]),
        ],
    )
    async def test_required_and_excluded_words_against_records(
        self,
        store: MemoryStore,
        search: str,
        expected: list[int],
    ) -> None:
        builder = compile_articles({"search": search}, store)

        assert [r["id"] for r in await builder.get()] == expected


class TestOrderingAndRelations:
    @pytest.mark.unit
    def test_order_and_eager_loads(self, store: MemoryStore) -> None:
        builder = compile_articles(
            "with=author,tags&orderBy=views,title&sortedBy=desc",
            store,
        )

        assert builder.eager_loads == ["author", "tags"]
        assert builder.orders == [
            SortCriteria("views", SortDirection.DESC),
            SortCriteria("title", SortDirection.DESC),
        ]


class TestRequestCriteria:
    @pytest.mark.unit
    def test_params_are_copied(self, store: MemoryStore) -> None:
        params = {"filter": {"status": ["draft"]}}
        criteria = RequestCriteria(params, ARTICLE_SEARCHABLE)

        params["filter"]["status"].append("archived")
        builder = criteria.apply(store.query())

        assert builder.clauses == (Where("status", Operator.IN, ("draft",)),)

    @pytest.mark.unit
    def test_parsed_once(self) -> None:
        criteria = RequestCriteria({"search": "python"}, ARTICLE_SEARCHABLE)

        assert criteria.parsed is criteria.parsed

    @pytest.mark.unit
    def test_same_stack_yields_identical_trees(self, store: MemoryStore) -> None:
        stack = CriteriaStack(
            [
                RequestCriteria(
                    {
                        "search": "python",
                        "filter": {"status": "published", "or": [["views", ">", "100"]]},
                        "orderBy": "views",
                        "with": "author",
                    },
                    ARTICLE_SEARCHABLE,
                ),
                WhereCriterion("featured", "=", True),
            ],
        )

        first = stack.apply_all(store.query())
        second = stack.apply_all(store.query())

        assert first is not second
        assert first.clauses == second.clauses
        assert first.orders == second.orders
        assert first.eager_loads == second.eager_loads

    @pytest.mark.unit
    def test_to_dict_normalizes_query_strings(self) -> None:
        from_string = RequestCriteria("filter[status]=draft", ARTICLE_SEARCHABLE)
        from_mapping = RequestCriteria({"filter": {"status": "draft"}}, ARTICLE_SEARCHABLE)

        assert from_string.to_dict() == from_mapping.to_dict()
        assert from_mapping.to_dict()["searchable"]["title"] == "like"

"""Query builder interface.

Builders record the conditions applied to them as a tree of frozen clause
dataclasses, so two builders can be compared structurally and stores only
need to translate the tree:

- ``Where``: comparison, membership, range and null checks on a field
- ``WhereDate``: comparison on the calendar date part of a field
- ``WhereFuzzy``: approximate match within an edit distance
- ``WhereGroup``: parenthesized clauses
- ``WhereHas``: existence of a related record matching nested clauses

Clauses are joined the SQL way: ``AND`` binds tighter than ``OR``.
"""

from abc import ABC, abstractmethod

import typing as t
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any

from ._base import Page, PaginationInfo, SortCriteria, SortDirection
from .conditions import Boolean, Operator


@dataclass(frozen=True)
class Where:
    field: str
    operator: Operator
    value: Any = None
    boolean: Boolean = Boolean.AND


@dataclass(frozen=True)
class WhereDate:
    field: str
    operator: Operator
    value: date
    boolean: Boolean = Boolean.AND


@dataclass(frozen=True)
class WhereFuzzy:
    field: str
    term: str
    distance: int
    boolean: Boolean = Boolean.AND


@dataclass(frozen=True)
class WhereGroup:
    clauses: tuple["Clause", ...]
    boolean: Boolean = Boolean.AND
    negated: bool = False


@dataclass(frozen=True)
class WhereHas:
    relation: str
    clauses: tuple["Clause", ...] = ()
    boolean: Boolean = Boolean.AND


Clause = Where | WhereDate | WhereFuzzy | WhereGroup | WhereHas

_DATE_OPERATORS = frozenset(
    {Operator.EQ, Operator.NE, Operator.GT, Operator.LT, Operator.GTE, Operator.LTE},
)


def as_boolean(value: "Boolean | str") -> Boolean:
    if isinstance(value, Boolean):
        return value
    return Boolean(value.strip().lower())


def or_runs(clauses: Iterable[Clause]) -> list[list[Clause]]:
    """Split clauses into AND-joined runs separated by ``OR``.

    A clause list matches when any run has all of its clauses matching.
    The boolean of the first clause is ignored.
    """
    runs: list[list[Clause]] = []
    for clause in clauses:
        if not runs or clause.boolean is Boolean.OR:
            runs.append([clause])
        else:
            runs[-1].append(clause)
    return runs


class ClauseBuilder:
    """Records where clauses; used directly for nested groups."""

    def __init__(self) -> None:
        self._clauses: list[Clause] = []

    @property
    def clauses(self) -> tuple[Clause, ...]:
        return tuple(self._clauses)

    def _push(self, clause: Clause) -> t.Self:
        self._clauses.append(clause)
        return self

    def where(
        self,
        field: str,
        operator: Operator | str = Operator.EQ,
        value: Any = None,
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        """Add a comparison clause.

        Args:
            field: Field name
            operator: Comparison or pattern operator (name or alias)
            value: Comparison value
            boolean: How the clause joins the previous ones

        Returns:
            Builder for chaining
        """
        op = Operator.parse(operator)
        if op is None or not op.is_comparison:
            msg = f"where() does not support operator {operator!r}"
            raise ValueError(msg)
        return self._push(Where(field, op, value, as_boolean(boolean)))

    def or_where(
        self,
        field: str,
        operator: Operator | str = Operator.EQ,
        value: Any = None,
    ) -> t.Self:
        return self.where(field, operator, value, Boolean.OR)

    def where_group(
        self,
        fn: Callable[["ClauseBuilder"], Any],
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        """Add a parenthesized group built by ``fn``; empty groups are skipped."""
        nested = ClauseBuilder()
        fn(nested)
        if not nested.clauses:
            return self
        return self._push(WhereGroup(nested.clauses, as_boolean(boolean)))

    def where_not_group(
        self,
        fn: Callable[["ClauseBuilder"], Any],
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        """Add a group that matches only records the clauses of ``fn`` reject."""
        nested = ClauseBuilder()
        fn(nested)
        if not nested.clauses:
            return self
        return self._push(WhereGroup(nested.clauses, as_boolean(boolean), negated=True))

    def where_in(
        self,
        field: str,
        values: Iterable[Any],
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        return self._push(Where(field, Operator.IN, tuple(values), as_boolean(boolean)))

    def where_not_in(
        self,
        field: str,
        values: Iterable[Any],
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        return self._push(
            Where(field, Operator.NOT_IN, tuple(values), as_boolean(boolean)),
        )

    def where_between(
        self,
        field: str,
        bounds: Iterable[Any],
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        low, high = bounds
        return self._push(
            Where(field, Operator.BETWEEN, (low, high), as_boolean(boolean)),
        )

    def where_not_between(
        self,
        field: str,
        bounds: Iterable[Any],
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        low, high = bounds
        return self._push(
            Where(field, Operator.NOT_BETWEEN, (low, high), as_boolean(boolean)),
        )

    def where_null(self, field: str, boolean: Boolean | str = Boolean.AND) -> t.Self:
        return self._push(Where(field, Operator.NOT_EXISTS, None, as_boolean(boolean)))

    def where_not_null(
        self,
        field: str,
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        return self._push(Where(field, Operator.EXISTS, None, as_boolean(boolean)))

    def where_date(
        self,
        field: str,
        operator: Operator | str,
        value: date,
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        op = Operator.parse(operator)
        if op not in _DATE_OPERATORS:
            msg = f"where_date() does not support operator {operator!r}"
            raise ValueError(msg)
        return self._push(WhereDate(field, op, value, as_boolean(boolean)))

    def where_fuzzy(
        self,
        field: str,
        term: str,
        distance: int,
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        return self._push(WhereFuzzy(field, term, distance, as_boolean(boolean)))

    def where_has(
        self,
        relation: str,
        fn: Callable[["ClauseBuilder"], Any] | None = None,
        boolean: Boolean | str = Boolean.AND,
    ) -> t.Self:
        """Require a related record (``relation`` may be dotted) matching ``fn``."""
        nested = ClauseBuilder()
        if fn is not None:
            fn(nested)
        return self._push(WhereHas(relation, nested.clauses, as_boolean(boolean)))


class QueryBuilder(ClauseBuilder, ABC):
    """A store query under construction.

    Concrete builders translate ``clauses``, ``orders`` and ``eager_loads``
    into a query when one of the async terminals runs.
    """

    def __init__(self) -> None:
        super().__init__()
        self.orders: list[SortCriteria] = []
        self.eager_loads: list[str] = []
        self._limit: int | None = None
        self._offset: int | None = None

    def order_by(
        self,
        field: str,
        direction: SortDirection | str = SortDirection.ASC,
    ) -> t.Self:
        if not isinstance(direction, SortDirection):
            parsed = SortDirection.parse(direction)
            if parsed is None:
                msg = f"Invalid sort direction {direction!r}"
                raise ValueError(msg)
            direction = parsed
        self.orders.append(SortCriteria(field, direction))
        return self

    def with_relations(self, *paths: str | Iterable[str]) -> t.Self:
        for path in paths:
            names = [path] if isinstance(path, str) else list(path)
            self.eager_loads.extend(name for name in names if name not in self.eager_loads)
        return self

    def limit(self, value: int | None) -> t.Self:
        self._limit = value
        return self

    def offset(self, value: int | None) -> t.Self:
        self._offset = value
        return self

    @abstractmethod
    async def get(self, columns: list[str] | None = None) -> list[Any]:
        """Execute the query and return the matching records."""

    @abstractmethod
    async def count(self) -> int:
        """Count matching records, ignoring limit and offset."""

    @abstractmethod
    async def delete(self) -> int:
        """Delete matching records and return how many were removed."""

    @abstractmethod
    async def update(self, attributes: Mapping[str, Any]) -> int:
        """Set ``attributes`` on matching records and return how many changed.

        The primary key is never changed.
        """

    async def first(self, columns: list[str] | None = None) -> Any | None:
        self.limit(1)
        records = await self.get(columns)
        return records[0] if records else None

    async def paginate(
        self,
        per_page: int,
        page: int = 1,
        columns: list[str] | None = None,
    ) -> Page[Any]:
        total = await self.count()
        info = PaginationInfo(page=max(page, 1), page_size=per_page, total_items=total)
        self.offset(info.offset).limit(per_page)
        return Page(items=await self.get(columns), info=info)


@t.runtime_checkable
class RecordStore(t.Protocol):
    """Persistence capability a repository is built on."""

    primary_key: str

    def query(self) -> QueryBuilder: ...

    async def insert(self, attributes: Mapping[str, Any]) -> Any: ...

    async def insert_many(self, records: Iterable[Mapping[str, Any]]) -> list[Any]: ...

    async def update(self, record_id: Any, attributes: Mapping[str, Any]) -> Any: ...

    async def delete(self, ids: Iterable[Any]) -> int: ...

"""Criteria and the criteria stack.

A criterion applies one reusable modification to a query builder. A
repository keeps an ordered ``CriteriaStack`` and folds it over a fresh
builder before every read. Criteria hold no state that changes between
applications, so applying the same stack to two fresh builders yields the
same clause tree.
"""

from abc import ABC, abstractmethod

import typing as t
from collections.abc import Callable, Iterable, Iterator
from dataclasses import replace
from typing import Any

from repokit.logger import get_logger

from ._base import InvalidCriterion, SortDirection
from .cache import canonicalize
from .conditions import Boolean, FilterCondition, Operator
from .parser import build_condition
from .query_builder import ClauseBuilder, QueryBuilder

logger = get_logger(__name__)

BuilderT = t.TypeVar("BuilderT", bound=ClauseBuilder)


def apply_condition(builder: BuilderT, condition: FilterCondition) -> BuilderT:
    """Apply one normalized condition to a builder.

    Conditions on a relation path become an existence check on that
    relation with the leaf condition inside it.
    """
    if (relation := condition.relation) is not None:
        leaf = replace(condition, path=condition.field, boolean=Boolean.AND)
        return builder.where_has(
            relation,
            lambda sub: apply_condition(sub, leaf),
            condition.boolean,
        )
    field, value, boolean = condition.field, condition.value, condition.boolean
    match condition.operator:
        case Operator.IN:
            return builder.where_in(field, value, boolean)
        case Operator.NOT_IN:
            return builder.where_not_in(field, value, boolean)
        case Operator.BETWEEN:
            return builder.where_between(field, value, boolean)
        case Operator.NOT_BETWEEN:
            return builder.where_not_between(field, value, boolean)
        case Operator.EXISTS:
            return builder.where_not_null(field, boolean)
        case Operator.NOT_EXISTS:
            return builder.where_null(field, boolean)
        case Operator.DATE_EQ:
            return builder.where_date(field, Operator.EQ, value, boolean)
        case Operator.DATE_BETWEEN:
            low, high = value
            return builder.where_group(
                lambda group: group.where_date(field, Operator.GTE, low).where_date(
                    field, Operator.LTE, high
                ),
                boolean,
            )
        case operator:
            return builder.where(field, operator, value, boolean)


class Criterion(ABC):
    """A composable query modification."""

    @abstractmethod
    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        """Apply this criterion and return the builder."""

    def to_dict(self) -> dict[str, Any]:
        """Embedded configuration used in the cache identity."""
        return {
            name: value for name, value in vars(self).items() if not name.startswith("_")
        }

    def cache_identity(self) -> dict[str, Any]:
        cls = type(self)
        return {
            "type": f"{cls.__module__}.{cls.__qualname__}",
            "params": canonicalize(self.to_dict()),
        }

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v!r}" for k, v in self.to_dict().items())
        return f"{type(self).__name__}({params})"


class WhereCriterion(Criterion):
    """Constrain a field with a single comparison."""

    def __init__(
        self,
        field: str,
        operator: Operator | str = Operator.EQ,
        value: Any = None,
        boolean: Boolean | str = Boolean.AND,
    ) -> None:
        parsed = Operator.parse(operator)
        if parsed is None:
            msg = f"Unknown operator {operator!r}"
            raise ValueError(msg)
        self.field = field
        self.operator = parsed
        self.value = value
        self.boolean = boolean if isinstance(boolean, Boolean) else Boolean(boolean)

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        condition = build_condition(self.field, self.operator, self.value, self.boolean)
        if condition is None:
            msg = f"Invalid value {self.value!r} for {self.operator.value} on {self.field}"
            raise ValueError(msg)
        return apply_condition(builder, condition)


class OrderByCriterion(Criterion):
    def __init__(
        self,
        field: str,
        direction: SortDirection | str = SortDirection.ASC,
    ) -> None:
        self.field = field
        self.direction = (
            direction if isinstance(direction, SortDirection) else SortDirection(direction)
        )

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        return builder.order_by(self.field, self.direction)


class WithRelationsCriterion(Criterion):
    def __init__(self, *relations: str) -> None:
        self.relations = list(relations)

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        return builder.with_relations(self.relations)


class ScopeCriterion(Criterion):
    """Wrap a closure as a criterion.

    Closures cannot be serialized, so the identity is the given ``name``;
    two scopes with the same name must apply the same conditions.
    """

    def __init__(self, name: str, fn: Callable[[QueryBuilder], Any]) -> None:
        self.name = name
        self._fn = fn

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        result = self._fn(builder)
        return result if isinstance(result, QueryBuilder) else builder

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name}


class CriteriaStack:
    """Ordered criteria owned by one repository instance."""

    def __init__(self, criteria: Iterable[Criterion] = ()) -> None:
        self._criteria: list[Criterion] = []
        self._skipped = False
        for criterion in criteria:
            self.push(criterion)

    def push(self, criterion: Any) -> t.Self:
        """Append a criterion.

        Raises:
            InvalidCriterion: the value is not a Criterion
        """
        if not isinstance(criterion, Criterion):
            raise InvalidCriterion(criterion)
        self._criteria.append(criterion)
        return self

    def pop(self, criterion: Criterion | type[Criterion]) -> Criterion | None:
        """Remove the first entry of the same type.

        Returns:
            The removed criterion, or ``None`` when no entry matched
        """
        target = criterion if isinstance(criterion, type) else type(criterion)
        for index, entry in enumerate(self._criteria):
            if type(entry) is target:
                return self._criteria.pop(index)
        return None

    def skip(self, flag: bool = True) -> t.Self:
        self._skipped = flag
        return self

    @property
    def skipped(self) -> bool:
        return self._skipped

    def clear(self) -> t.Self:
        self._criteria = []
        return self

    def apply_all(self, builder: QueryBuilder) -> QueryBuilder:
        """Fold every criterion over ``builder`` in push order."""
        if self._skipped:
            return builder
        for criterion in self._criteria:
            logger.debug(f"Applying criterion {criterion!r}")
            builder = criterion.apply(builder)
        return builder

    def serialize(self) -> list[dict[str, Any]]:
        """Identities of the criteria that would be applied."""
        if self._skipped:
            return []
        return [criterion.cache_identity() for criterion in self._criteria]

    def __iter__(self) -> Iterator[Criterion]:
        return iter(list(self._criteria))

    def __len__(self) -> int:
        return len(self._criteria)

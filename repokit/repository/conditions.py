"""Normalized query condition model.

Parsed request input is turned into these values before any query is built:
- Operator and Boolean enumerations
- FilterCondition: one (path, operator, value, boolean) tuple
- SearchSpec: global or per-field free-text search
- ParsedRequest: everything a request asked for
"""

from enum import Enum

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ._base import SortCriteria


class Operator(Enum):
    """Comparison operators for filter conditions."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    NOT_LIKE = "not_like"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    NOT_BETWEEN = "not_between"
    DATE_EQ = "date_eq"
    DATE_BETWEEN = "date_between"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"

    @classmethod
    def parse(cls, value: "str | Operator | None") -> "Operator | None":
        """Resolve an operator from its name or a SQL-style alias."""
        if isinstance(value, Operator):
            return value
        if not isinstance(value, str):
            return None
        text = value.strip().lower()
        if text in _ALIASES:
            return _ALIASES[text]
        try:
            return cls(text)
        except ValueError:
            return None

    @property
    def requires_sequence(self) -> bool:
        return self in (Operator.IN, Operator.NOT_IN)

    @property
    def requires_pair(self) -> bool:
        return self in (Operator.BETWEEN, Operator.NOT_BETWEEN, Operator.DATE_BETWEEN)

    @property
    def takes_value(self) -> bool:
        return self not in (Operator.EXISTS, Operator.NOT_EXISTS)

    @property
    def is_pattern(self) -> bool:
        return self in (Operator.LIKE, Operator.ILIKE, Operator.NOT_LIKE)

    @property
    def is_numeric_comparison(self) -> bool:
        return self in (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE)

    @property
    def is_comparison(self) -> bool:
        """Operators a builder applies through its plain ``where``."""
        return self in _COMPARISONS


_ALIASES: dict[str, Operator] = {
    "=": Operator.EQ,
    "==": Operator.EQ,
    "!=": Operator.NE,
    "<>": Operator.NE,
    ">": Operator.GT,
    "<": Operator.LT,
    ">=": Operator.GTE,
    "<=": Operator.LTE,
    "notin": Operator.NOT_IN,
    "not in": Operator.NOT_IN,
    "not like": Operator.NOT_LIKE,
    "date": Operator.DATE_EQ,
    "null": Operator.NOT_EXISTS,
    "not_null": Operator.EXISTS,
}

_COMPARISONS = frozenset(
    {
        Operator.EQ,
        Operator.NE,
        Operator.GT,
        Operator.LT,
        Operator.GTE,
        Operator.LTE,
        Operator.LIKE,
        Operator.ILIKE,
        Operator.NOT_LIKE,
    },
)


class Boolean(Enum):
    """How a condition joins the clauses before it."""

    AND = "and"
    OR = "or"


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, str | bytes)


@dataclass(frozen=True)
class FilterCondition:
    """A single normalized filter.

    ``path`` is dot separated: the last segment is the field, the preceding
    segments name the relation the field lives on.
    """

    path: str
    operator: Operator
    value: Any = None
    boolean: Boolean = Boolean.AND

    def __post_init__(self) -> None:
        if not self.path or not self.path.strip("."):
            msg = "FilterCondition path must not be empty"
            raise ValueError(msg)
        if self.operator.requires_sequence and not _is_sequence(self.value):
            msg = f"{self.operator.value} requires a sequence value"
            raise ValueError(msg)
        if self.operator.requires_pair and (
            not _is_sequence(self.value) or len(self.value) != 2
        ):
            msg = f"{self.operator.value} requires a 2-element sequence"
            raise ValueError(msg)
        if not self.operator.takes_value and self.value is not None:
            msg = f"{self.operator.value} does not take a value"
            raise ValueError(msg)

    @property
    def relation(self) -> str | None:
        head, _, _ = self.path.rpartition(".")
        return head or None

    @property
    def field(self) -> str:
        return self.path.rpartition(".")[2]

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "operator": self.operator.value,
            "value": list(self.value) if _is_sequence(self.value) else self.value,
            "boolean": self.boolean.value,
        }


class SearchMode(Enum):
    """Search mode enumeration."""

    GLOBAL = "global"
    PER_FIELD = "per_field"


GLOBAL_FIELD = "*"


@dataclass(frozen=True)
class SearchSpec:
    """Parsed free-text search.

    ``terms`` maps a field name (or ``"*"`` for a global search) to the raw
    term with phrase quotes and fuzzy suffix already removed. A global search
    may also carry ``+required`` and ``-excluded`` words: each required word
    must match some searchable field, an excluded word must match none.
    """

    mode: SearchMode
    terms: Mapping[str, str] = field(default_factory=dict)
    phrase_fields: frozenset[str] = frozenset()
    fuzzy_distances: Mapping[str, int] = field(default_factory=dict)
    combinator: Boolean = Boolean.OR
    required: tuple[str, ...] = ()
    excluded: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.terms and not self.required and not self.excluded

    def is_phrase(self, name: str) -> bool:
        return name in self.phrase_fields

    def fuzzy_distance(self, name: str) -> int | None:
        return self.fuzzy_distances.get(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "terms": dict(self.terms),
            "phrase_fields": sorted(self.phrase_fields),
            "fuzzy_distances": dict(self.fuzzy_distances),
            "combinator": self.combinator.value,
            "required": list(self.required),
            "excluded": list(self.excluded),
        }


@dataclass(frozen=True)
class ParsedRequest:
    """Everything a request asked the repository to do."""

    search: SearchSpec | None = None
    search_fields: Mapping[str, Operator] | None = None
    filters: tuple[FilterCondition, ...] = ()
    or_group: tuple[FilterCondition, ...] = ()
    order: tuple[SortCriteria, ...] = ()
    with_relations: tuple[str, ...] = ()
    skip_cache: bool = False

    @property
    def is_empty(self) -> bool:
        return (
            (self.search is None or self.search.is_empty)
            and not self.filters
            and not self.or_group
            and not self.order
            and not self.with_relations
        )

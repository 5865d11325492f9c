"""In-memory record store.

Stores records as dictionaries and evaluates the clause tree of a
``MemoryQueryBuilder`` in Python. Relations are embedded: a relation is a key
holding a mapping (to-one) or a list of mappings (to-many), and dotted
relation paths walk through them. Eager loads are recorded but have no
effect since related records are always present.

Comparison follows SQL conventions where it matters for filtering: ``NULL``
matches nothing but the null checks, ``LIKE`` is a pattern match (``%`` and
``_``), ``ILIKE`` ignores case. String filter values are coerced to the type
of the stored value before comparing.
"""

import copy
import re
from functools import lru_cache

from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

from ._base import DuplicateEntityError, SortDirection
from .conditions import Operator
from .parser import coerce_comparable, coerce_literal, to_date
from .query_builder import (
    Clause,
    QueryBuilder,
    Where,
    WhereDate,
    WhereFuzzy,
    WhereGroup,
    WhereHas,
    or_runs,
)

Record = dict[str, Any]


def resolve(record: Mapping[str, Any], path: str) -> Any:
    """Read a possibly dotted field from a record; missing values are ``None``."""
    value: Any = record
    for name in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(name)
    return value


def related_records(record: Mapping[str, Any], relation: str) -> list[Mapping[str, Any]]:
    current: list[Mapping[str, Any]] = [record]
    for name in relation.split("."):
        found: list[Mapping[str, Any]] = []
        for item in current:
            value = item.get(name)
            if isinstance(value, Mapping):
                found.append(value)
            elif isinstance(value, list | tuple):
                found.extend(v for v in value if isinstance(v, Mapping))
        current = found
    return current


@lru_cache(maxsize=256)
def like_pattern(pattern: str, ignore_case: bool = False) -> re.Pattern[str]:
    """Compile a SQL ``LIKE`` pattern to a regular expression."""
    regex = "".join(
        ".*" if char == "%" else "." if char == "_" else re.escape(char)
        for char in pattern
    )
    return re.compile(regex, re.DOTALL | (re.IGNORECASE if ignore_case else 0))


def levenshtein(left: str, right: str) -> int:
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, lchar in enumerate(left, 1):
        current = [i]
        for j, rchar in enumerate(right, 1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (lchar != rchar),
                ),
            )
        previous = current
    return previous[-1]


def fuzzy_match(value: Any, term: str, distance: int) -> bool:
    """Match when the whole value or any of its words is within ``distance``."""
    if value is None:
        return False
    text = str(value).lower()
    needle = term.lower()
    candidates = [text, *text.split()]
    return any(levenshtein(candidate, needle) <= distance for candidate in candidates)


def _align(left: Any, right: Any) -> tuple[Any, Any]:
    if isinstance(right, str) and not isinstance(left, str):
        if isinstance(left, bool):
            right = coerce_literal(right)
        elif (coerced := coerce_comparable(right)) is not None:
            right = coerced
    elif (
        isinstance(left, str)
        and right is not None
        and not isinstance(right, str | bool)
        and (coerced := coerce_comparable(left)) is not None
    ):
        left = coerced
    if isinstance(left, datetime) and type(right) is date:
        left = left.date()
    elif type(left) is date and isinstance(right, datetime):
        right = right.date()
    return left, right


def _equals(left: Any, right: Any) -> bool:
    left, right = _align(left, right)
    return left == right


def _ordered(op: Operator, left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    left, right = _align(left, right)
    try:
        match op:
            case Operator.GT:
                return left > right
            case Operator.LT:
                return left < right
            case Operator.GTE:
                return left >= right
            case Operator.LTE:
                return left <= right
    except TypeError:
        return False
    return False


def compare(left: Any, op: Operator, right: Any) -> bool:
    """Evaluate ``left <op> right`` with SQL null semantics."""
    match op:
        case Operator.EXISTS:
            return left is not None
        case Operator.NOT_EXISTS:
            return left is None
    if left is None:
        return False
    match op:
        case Operator.EQ:
            return _equals(left, right)
        case Operator.NE:
            return not _equals(left, right)
        case Operator.GT | Operator.LT | Operator.GTE | Operator.LTE:
            return _ordered(op, left, right)
        case Operator.LIKE:
            return bool(like_pattern(str(right)).fullmatch(str(left)))
        case Operator.ILIKE:
            return bool(like_pattern(str(right), True).fullmatch(str(left)))
        case Operator.NOT_LIKE:
            return not like_pattern(str(right)).fullmatch(str(left))
        case Operator.IN:
            return any(_equals(left, item) for item in right)
        case Operator.NOT_IN:
            return not any(_equals(left, item) for item in right)
        case Operator.BETWEEN:
            low, high = right
            return _ordered(Operator.GTE, left, low) and _ordered(Operator.LTE, left, high)
        case Operator.NOT_BETWEEN:
            low, high = right
            return _ordered(Operator.LT, left, low) or _ordered(Operator.GT, left, high)
    msg = f"Unsupported operator {op.value}"
    raise ValueError(msg)


def matches(record: Mapping[str, Any], clauses: Iterable[Clause]) -> bool:
    runs = or_runs(clauses)
    if not runs:
        return True
    return any(all(_matches_clause(record, clause) for clause in run) for run in runs)


def _matches_clause(record: Mapping[str, Any], clause: Clause) -> bool:
    match clause:
        case WhereGroup(clauses=inner, negated=negated):
            return matches(record, inner) != negated
        case WhereHas(relation=relation, clauses=inner):
            return any(matches(item, inner) for item in related_records(record, relation))
        case WhereDate(field=field, operator=op, value=value):
            day = to_date(resolve(record, field))
            return day is not None and compare(day, op, value)
        case WhereFuzzy(field=field, term=term, distance=distance):
            return fuzzy_match(resolve(record, field), term, distance)
        case Where(field=field, operator=op, value=value):
            return compare(resolve(record, field), op, value)
    msg = f"Unsupported clause {clause!r}"
    raise TypeError(msg)


def _sort_key(value: Any) -> tuple[int, Any]:
    # nulls sort first ascending, as in SQLite and MySQL
    return (0, 0) if value is None else (1, value)


class MemoryQueryBuilder(QueryBuilder):
    def __init__(self, store: "MemoryStore") -> None:
        super().__init__()
        self.store = store

    def _matching(self) -> list[Record]:
        return [record for record in self.store.rows() if matches(record, self._clauses)]

    def _sorted(self, rows: list[Record]) -> list[Record]:
        for order in reversed(self.orders):
            rows.sort(
                key=lambda row, name=order.field: _sort_key(resolve(row, name)),
                reverse=order.direction is SortDirection.DESC,
            )
        return rows

    async def get(self, columns: list[str] | None = None) -> list[Record]:
        rows = self._sorted(self._matching())
        start = self._offset or 0
        end = None if self._limit is None else start + self._limit
        selected = rows[start:end]
        if columns and columns != ["*"]:
            return [{name: copy.deepcopy(row.get(name)) for name in columns} for row in selected]
        return [copy.deepcopy(row) for row in selected]

    async def count(self) -> int:
        return len(self._matching())

    async def delete(self) -> int:
        key = self.store.primary_key
        return await self.store.delete([row[key] for row in self._matching()])

    async def update(self, attributes: Mapping[str, Any]) -> int:
        key = self.store.primary_key
        changes = {name: value for name, value in attributes.items() if name != key}
        if not changes:
            return 0
        matched = [row[key] for row in self._matching()]
        for record_id in matched:
            await self.store.update(record_id, changes)
        return len(matched)


class MemoryStore:
    """Dictionary-backed record store.

    Args:
        records: Initial records
        primary_key: Field holding the record id; integer ids are assigned
            when missing
        entity_name: Name used in error messages
    """

    def __init__(
        self,
        records: Iterable[Mapping[str, Any]] = (),
        primary_key: str = "id",
        entity_name: str = "Record",
    ) -> None:
        self.primary_key = primary_key
        self.entity_name = entity_name
        self._records: dict[Any, Record] = {}
        self._next_id = 1
        for record in records:
            self._add(record)

    def _add(self, attributes: Mapping[str, Any]) -> Record:
        record = copy.deepcopy(dict(attributes))
        record_id = record.get(self.primary_key)
        if record_id is None:
            record_id = self._next_id
            record[self.primary_key] = record_id
        if record_id in self._records:
            raise DuplicateEntityError(self.entity_name, self.primary_key, record_id)
        if isinstance(record_id, int):
            self._next_id = max(self._next_id, record_id + 1)
        self._records[record_id] = record
        return record

    def rows(self) -> list[Record]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def query(self) -> MemoryQueryBuilder:
        return MemoryQueryBuilder(self)

    async def insert(self, attributes: Mapping[str, Any]) -> Record:
        return copy.deepcopy(self._add(attributes))

    async def insert_many(self, records: Iterable[Mapping[str, Any]]) -> list[Record]:
        """Insert every record, or none of them when one is a duplicate."""
        snapshot, next_id = dict(self._records), self._next_id
        try:
            created = [self._add(attributes) for attributes in records]
        except DuplicateEntityError:
            self._records, self._next_id = snapshot, next_id
            raise
        return copy.deepcopy(created)

    async def update(
        self,
        record_id: Any,
        attributes: Mapping[str, Any],
    ) -> Record | None:
        record = self._records.get(record_id)
        if record is None:
            return None
        record.update(copy.deepcopy(dict(attributes)))
        record[self.primary_key] = record_id
        return copy.deepcopy(record)

    async def delete(self, ids: Iterable[Any]) -> int:
        removed = 0
        for record_id in ids:
            if self._records.pop(record_id, None) is not None:
                removed += 1
        return removed

    async def get(self, record_id: Any) -> Record | None:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

"""Request parameter parsing.

Turns untrusted, loosely structured request parameters into the normalized
values of ``conditions``. Parsing is pure: nothing here touches a query
builder, and the caller's input is never mutated.

Malformed pieces of input (unknown fields, unknown operators, values that
cannot be coerced) drop the offending clause. The one strict rule is the
``searchFields`` override, which raises ``InvalidSearchFields`` when it names
no accepted operator.
"""

import copy
import re

import typing as t
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from typing import Any

from repokit.logger import get_logger

from ._base import CriteriaSettings, InvalidSearchFields, SortCriteria, SortDirection
from .conditions import (
    GLOBAL_FIELD,
    Boolean,
    FilterCondition,
    Operator,
    ParsedRequest,
    SearchMode,
    SearchSpec,
)
from .query_string import decode

logger = get_logger(__name__)

SearchableFields = Mapping[str, "str | Operator"] | Sequence[str]

_PAIR = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*:(.*)$", re.DOTALL)
_FUZZY = re.compile(r"^(.*\S)~(\d+)$", re.DOTALL)
_MODIFIER = re.compile(r"^([+-])(\w+)$")
_TRUTHY = frozenset({"true", "1", "yes", "on"})


def normalize_searchable(fields: SearchableFields | None) -> dict[str, Operator]:
    """Normalize a searchable field declaration to ``{path: Operator}``.

    Accepts a mapping of path to operator (name or alias) or a plain list of
    paths, which default to equality.
    """
    if not fields:
        return {}
    if isinstance(fields, Mapping):
        items = fields.items()
    else:
        items = ((name, Operator.EQ) for name in fields)
    normalized: dict[str, Operator] = {}
    for name, operator in items:
        parsed = Operator.parse(operator)
        if parsed is None:
            msg = f"Unknown operator {operator!r} declared for searchable field {name!r}"
            raise ValueError(msg)
        normalized[str(name)] = parsed
    return normalized


def split_csv(value: Any) -> list[str]:
    """Split a comma separated string (or a list of them) into trimmed items."""
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, Sequence):
        parts = [str(item) for item in value if item is not None]
    else:
        parts = [str(value)]
    return [part.strip() for part in parts if part.strip()]


def split_modifiers(term: str) -> tuple[str, tuple[str, ...], tuple[str, ...]]:
    """Pull ``+word`` and ``-word`` tokens out of a global search term.

    Returns the remaining optional term with the required and excluded words.
    A term without modifiers is returned untouched.
    """
    required: list[str] = []
    excluded: list[str] = []
    rest: list[str] = []
    for token in term.split():
        if match := _MODIFIER.match(token):
            (required if match.group(1) == "+" else excluded).append(match.group(2))
        else:
            rest.append(token)
    if not required and not excluded:
        return term, (), ()
    return " ".join(rest), tuple(required), tuple(excluded)


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value.strip().lower() in _TRUTHY


def coerce_literal(value: Any) -> Any:
    """Turn ``"true"``/``"false"`` string literals into booleans."""
    if isinstance(value, str):
        match value.strip().lower():
            case "true":
                return True
            case "false":
                return False
    return value


def coerce_comparable(value: Any) -> Any:
    """Coerce a value for an ordering comparison.

    Numbers and dates pass through; strings become int, float, date or
    datetime in that order of preference.

    Returns:
        The coerced value, or ``None`` when no coercion applies
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float | date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    for convert in (int, float):
        try:
            return convert(text)
        except ValueError:
            pass
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def to_date(value: Any) -> date | None:
    """Normalize a value to a calendar date, dropping any time of day."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()).date()
        except ValueError:
            return None
    return None


def as_list(value: Any) -> list[Any]:
    """Treat a comma separated string or a sequence as a list of values."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, Mapping):
        return list(value.values())
    if isinstance(value, Sequence):
        return list(value)
    return [value]


def build_condition(
    path: str,
    operator: Operator,
    value: Any,
    boolean: Boolean = Boolean.AND,
) -> FilterCondition | None:
    """Normalize a raw value for ``operator`` and build the condition.

    Returns:
        FilterCondition, or ``None`` when the value does not fit the operator
    """
    match operator:
        case Operator.EQ | Operator.NE:
            if value is None or (
                isinstance(value, str) and value.strip().lower() in ("", "null")
            ):
                operator = (
                    Operator.NOT_EXISTS if operator is Operator.EQ else Operator.EXISTS
                )
                value = None
            else:
                value = coerce_literal(value)
        case Operator.EXISTS | Operator.NOT_EXISTS:
            value = None
        case Operator.GT | Operator.LT | Operator.GTE | Operator.LTE:
            value = coerce_comparable(value)
            if value is None:
                logger.debug(f"Dropping {operator.value} on {path}: value is not comparable")
                return None
        case Operator.LIKE | Operator.ILIKE | Operator.NOT_LIKE:
            if not isinstance(value, str) or not value:
                return None
        case Operator.IN | Operator.NOT_IN:
            value = [coerce_literal(item) for item in as_list(value)]
            if not value:
                return None
        case Operator.BETWEEN | Operator.NOT_BETWEEN:
            bounds = as_list(value)
            if len(bounds) != 2:
                logger.debug(f"Dropping {operator.value} on {path}: needs two values")
                return None
            value = [
                item if (coerced := coerce_comparable(item)) is None else coerced
                for item in bounds
            ]
        case Operator.DATE_EQ:
            value = to_date(value)
            if value is None:
                return None
        case Operator.DATE_BETWEEN:
            dates = [to_date(item) for item in as_list(value)]
            if len(dates) == 1:
                dates *= 2
            if len(dates) != 2 or None in dates:
                logger.debug(f"Dropping date_between on {path}: invalid dates")
                return None
            value = dates
    try:
        return FilterCondition(path, operator, value, boolean)
    except ValueError as e:
        logger.debug(f"Dropping condition on {path}: {e}")
        return None


class RequestParser:
    """Parse request parameters into a ``ParsedRequest``.

    Args:
        field_searchable: Declared searchable fields; dotted paths address
            fields on relations
        settings: Parameter names, accepted override operators and the
            default sort direction
    """

    def __init__(
        self,
        field_searchable: SearchableFields | None = None,
        settings: CriteriaSettings | None = None,
    ) -> None:
        self.searchable = normalize_searchable(field_searchable)
        self.settings = settings or CriteriaSettings()
        self.accepted_operators = frozenset(
            op
            for op in map(Operator.parse, self.settings.accepted_conditions)
            if op is not None
        )

    def parse(self, params: Mapping[str, Any] | str | None) -> ParsedRequest:
        if params is None:
            params = {}
        elif isinstance(params, str):
            params = decode(params)
        params = copy.deepcopy(dict(params))
        param = self.settings.param

        search_fields = self.parse_search_fields(params.get(param("searchFields")))
        filters, or_group = self.parse_filters(params.get(param("filter")))
        return ParsedRequest(
            search=self.parse_search(
                params.get(param("search")),
                params.get(param("searchJoin")),
            ),
            search_fields=search_fields,
            filters=filters,
            or_group=or_group,
            order=self.parse_order(
                params.get(param("orderBy")),
                params.get(param("sortedBy")),
            ),
            with_relations=tuple(split_csv(params.get(param("with")))),
            skip_cache=is_truthy(params.get(param("skipCache"))),
        )

    def parse_search_fields(self, raw: Any) -> dict[str, Operator] | None:
        """Parse a ``searchFields`` override.

        ``"name:like;email:="`` assigns operators from the accepted list; a
        bare ``"name"`` keeps the declared operator of a declared field.

        Raises:
            InvalidSearchFields: entries were given but none was accepted
        """
        if isinstance(raw, str):
            entries = raw.split(";")
        elif isinstance(raw, Mapping):
            entries = [f"{key}:{value}" for key, value in raw.items()]
        elif isinstance(raw, Sequence):
            entries = [str(item) for item in raw]
        else:
            return None
        entries = [entry.strip() for entry in entries if entry and entry.strip()]
        if not entries:
            return None

        accepted: dict[str, Operator] = {}
        for entry in entries:
            name, sep, condition = entry.partition(":")
            name = name.strip()
            if not name:
                continue
            if sep:
                operator = Operator.parse(condition)
                if operator is not None and operator in self.accepted_operators:
                    accepted[name] = operator
            elif name in self.searchable:
                accepted[name] = self.searchable[name]
        if not accepted:
            raise InvalidSearchFields(entries, self.settings.accepted_conditions)
        return accepted

    def parse_search(self, raw: Any, join: Any = None) -> SearchSpec | None:
        combinator = (
            Boolean.AND
            if isinstance(join, str) and join.strip().lower() == "and"
            else Boolean.OR
        )
        pairs: list[tuple[str, Any]] = []
        if isinstance(raw, Mapping):
            mode = SearchMode.PER_FIELD
            pairs = [(str(key).strip(), value) for key, value in raw.items()]
        elif isinstance(raw, str):
            segments = raw.split(";")
            if any(_PAIR.match(segment) for segment in segments):
                mode = SearchMode.PER_FIELD
                for segment in segments:
                    if (match := _PAIR.match(segment)) is None:
                        if segment.strip():
                            logger.debug(f"Dropping malformed search pair {segment!r}")
                        continue
                    pairs.append((match.group(1), match.group(2)))
            else:
                mode = SearchMode.GLOBAL
                pairs = [(GLOBAL_FIELD, raw)]
        else:
            return None

        terms: dict[str, str] = {}
        phrases: set[str] = set()
        fuzzy: dict[str, int] = {}
        required: tuple[str, ...] = ()
        excluded: tuple[str, ...] = ()
        for name, value in pairs:
            if (
                not name
                or isinstance(value, bool)
                or not isinstance(value, str | int | float)
            ):
                continue
            term = str(value).strip()
            if match := _FUZZY.match(term):
                term = match.group(1).strip()
                fuzzy[name] = int(match.group(2))
            if len(term) >= 2 and term.startswith('"') and term.endswith('"'):
                term = term[1:-1]
                phrases.add(name)
            if mode is SearchMode.GLOBAL and name not in phrases and name not in fuzzy:
                term, required, excluded = split_modifiers(term)
            if not term.strip():
                fuzzy.pop(name, None)
                phrases.discard(name)
                continue
            terms[name] = term
        if not terms and not required and not excluded:
            return None
        return SearchSpec(
            mode=mode,
            terms=terms,
            phrase_fields=frozenset(phrases),
            fuzzy_distances=fuzzy,
            combinator=combinator,
            required=required,
            excluded=excluded,
        )

    def parse_filters(
        self,
        raw: Any,
    ) -> tuple[tuple[FilterCondition, ...], tuple[FilterCondition, ...]]:
        """Parse the ``filter`` mapping.

        Returns:
            Tuple of (AND-joined filters, OR-group members)
        """
        if raw is None:
            return (), ()
        if not isinstance(raw, Mapping):
            logger.debug(f"Ignoring non-mapping filter parameter {raw!r}")
            return (), ()
        filters: list[FilterCondition] = []
        or_group: tuple[FilterCondition, ...] = ()
        for key, value in raw.items():
            path = str(key).strip()
            if path.lower() == "or":
                or_group = self.parse_or_group(value)
                continue
            if path not in self.searchable:
                logger.debug(f"Ignoring filter on undeclared field {path!r}")
                continue
            if (condition := self.parse_filter_value(path, value)) is not None:
                filters.append(condition)
        return tuple(filters), or_group

    def parse_filter_value(self, path: str, value: Any) -> FilterCondition | None:
        if isinstance(value, Mapping):
            if "operator" not in value and "value" not in value:
                logger.debug(f"Ignoring filter on {path}: no operator or value")
                return None
            inner = value.get("value")
            default = "in" if isinstance(inner, list) else "eq"
            operator = Operator.parse(value.get("operator") or default)
            if operator is None:
                logger.debug(f"Ignoring filter on {path}: unknown operator")
                return None
            return build_condition(path, operator, inner)
        if isinstance(value, list | tuple):
            if not value:
                return None
            return build_condition(path, Operator.IN, list(value))
        return build_condition(path, Operator.EQ, value)

    def parse_or_group(self, raw: Any) -> tuple[FilterCondition, ...]:
        """Parse ``filter[or]`` triples into OR-joined conditions."""
        if isinstance(raw, Mapping):
            items = list(raw.values())
        elif isinstance(raw, list | tuple):
            items = list(raw)
        elif isinstance(raw, str):
            items = [raw]
        else:
            return ()
        conditions: list[FilterCondition] = []
        for item in items:
            triple = self._as_triple(item)
            if triple is None:
                logger.debug(f"Dropping malformed or-group entry {item!r}")
                continue
            path, condition, value = triple
            if path not in self.searchable:
                logger.debug(f"Ignoring or-group filter on undeclared field {path!r}")
                continue
            operator = Operator.parse(condition)
            if operator is None:
                continue
            built = build_condition(path, operator, value, Boolean.OR)
            if built is not None:
                conditions.append(built)
        return tuple(conditions)

    @staticmethod
    def _as_triple(item: Any) -> tuple[str, str, Any] | None:
        if isinstance(item, str):
            text = item.strip()
            if text.startswith("[") and text.endswith("]"):
                text = text[1:-1]
            parts: list[t.Any] = [part.strip() for part in text.split(",", 2)]
        elif isinstance(item, Mapping):
            if "field" not in item:
                return None
            parts = [item["field"], item.get("operator", "="), item.get("value")]
        elif isinstance(item, list | tuple):
            parts = list(item)
        else:
            return None
        if len(parts) == 2:
            parts.insert(1, "=")
        if len(parts) != 3 or not isinstance(parts[0], str) or not parts[0].strip():
            return None
        return parts[0].strip(), str(parts[1]), parts[2]

    def parse_order(self, order_by: Any, sorted_by: Any) -> tuple[SortCriteria, ...]:
        """Pair ``orderBy`` fields with ``sortedBy`` directions by position.

        A shorter direction list reuses its first entry.
        """
        fields = split_csv(order_by)
        directions = split_csv(sorted_by)
        default = SortDirection.parse(self.settings.default_direction) or SortDirection.ASC
        order: list[SortCriteria] = []
        for position, name in enumerate(fields):
            if not directions:
                direction: SortDirection | None = default
            else:
                text = directions[position] if position < len(directions) else directions[0]
                direction = SortDirection.parse(text)
            if direction is None:
                logger.debug(f"Dropping order on {name}: invalid direction")
                continue
            order.append(SortCriteria(name, direction))
        return tuple(order)

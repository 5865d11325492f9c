"""Criterion built from request parameters.

``RequestCriteria`` parses request input once (see ``parser``) and applies
the result in a fixed order:

1. eager loads (``with``)
2. the search group
3. filters, each AND-joined
4. the OR-group, as one AND-joined parenthesized group
5. ordering

Search always precedes filters, whatever order the parameters arrived in.
Inside the search group the first clause is AND-joined and the remaining
clauses use the search combinator (OR unless ``searchJoin=and``): the group
as a whole narrows the results while any one matching field satisfies it.
A global search adds one more AND-joined group per ``+required`` word and
one negated group per ``-excluded`` word, each matching the word against
every searchable field.
"""

import copy

from collections.abc import Callable, Mapping
from typing import Any

from repokit.logger import get_logger

from ._base import CriteriaSettings
from .conditions import GLOBAL_FIELD, Boolean, Operator, ParsedRequest, SearchMode
from .criteria import Criterion, apply_condition
from .parser import RequestParser, SearchableFields, build_condition
from .query_builder import ClauseBuilder, QueryBuilder
from .query_string import decode

logger = get_logger(__name__)


class RequestCriteria(Criterion):
    """Filter, search, ordering and eager loads from request parameters.

    Args:
        params: Decoded request parameters or a raw query string; copied,
            never mutated
        field_searchable: Searchable fields mapped to their default operator
        settings: Criteria settings (parameter names, accepted operators)
    """

    def __init__(
        self,
        params: Mapping[str, Any] | str | None,
        field_searchable: SearchableFields | None = None,
        settings: CriteriaSettings | None = None,
    ) -> None:
        self.params: Mapping[str, Any] | str = (
            params if isinstance(params, str) else copy.deepcopy(dict(params or {}))
        )
        self.settings = settings or CriteriaSettings()
        self._parser = RequestParser(field_searchable, self.settings)
        self._parsed: ParsedRequest | None = None

    @property
    def searchable(self) -> dict[str, Operator]:
        return self._parser.searchable

    @property
    def parsed(self) -> ParsedRequest:
        if self._parsed is None:
            self._parsed = self._parser.parse(self.params)
        return self._parsed

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        parsed = self.parsed
        if parsed.with_relations:
            builder.with_relations(parsed.with_relations)
        self.apply_search(builder, parsed)
        for condition in parsed.filters:
            apply_condition(builder, condition)
        if parsed.or_group:

            def or_group(group: ClauseBuilder) -> None:
                for condition in parsed.or_group:
                    apply_condition(group, condition)

            builder.where_group(or_group, Boolean.AND)
        for order in parsed.order:
            builder.order_by(order.field, order.direction)
        return builder

    def search_fields(self, parsed: ParsedRequest) -> dict[str, Operator]:
        """Fields a search may touch: the override if given, else the declared set."""
        if parsed.search_fields is not None:
            return dict(parsed.search_fields)
        return dict(self.searchable)

    def search_clauses(
        self,
        parsed: ParsedRequest,
    ) -> list[tuple[str, Operator, str, int | None]]:
        """Expand the search into ``(path, operator, token, fuzzy distance)``."""
        search = parsed.search
        if search is None or search.is_empty:
            return []
        fields = self.search_fields(parsed)
        if search.mode is SearchMode.GLOBAL:
            has_term = GLOBAL_FIELD in search.terms
            targets = [(path, GLOBAL_FIELD) for path in fields] if has_term else []
        else:
            targets = [(path, path) for path in search.terms if path in fields]
            for path in search.terms:
                if path not in fields:
                    logger.debug(f"Ignoring search on unsearchable field {path!r}")

        clauses: list[tuple[str, Operator, str, int | None]] = []
        for path, key in targets:
            raw = search.terms[key]
            distance = search.fuzzy_distance(key)
            tokens = [raw] if search.is_phrase(key) or distance is not None else raw.split()
            clauses.extend((path, fields[path], token, distance) for token in tokens)
        return clauses

    def apply_search(self, builder: QueryBuilder, parsed: ParsedRequest) -> None:
        search = parsed.search
        if search is None or search.is_empty:
            return
        clauses = self.search_clauses(parsed)
        if clauses:
            builder.where_group(self._search_group(clauses, search.combinator), Boolean.AND)
        if search.mode is not SearchMode.GLOBAL:
            return
        fields = self.search_fields(parsed)
        for word in search.required:
            any_field = [(path, fields[path], word, None) for path in fields]
            builder.where_group(self._search_group(any_field, Boolean.OR), Boolean.AND)
        for word in search.excluded:
            any_field = [(path, fields[path], word, None) for path in fields]
            builder.where_not_group(self._search_group(any_field, Boolean.OR), Boolean.AND)

    @classmethod
    def _search_group(
        cls,
        clauses: list[tuple[str, Operator, str, int | None]],
        combinator: Boolean,
    ) -> Callable[[ClauseBuilder], None]:
        def build(group: ClauseBuilder) -> None:
            for position, (path, operator, token, distance) in enumerate(clauses):
                boolean = Boolean.AND if position == 0 else combinator
                cls._apply_search_clause(group, path, operator, token, distance, boolean)

        return build

    @classmethod
    def _apply_search_clause(
        cls,
        builder: ClauseBuilder,
        path: str,
        operator: Operator,
        token: str,
        distance: int | None,
        boolean: Boolean,
    ) -> None:
        relation, _, field = path.rpartition(".")
        if relation:
            builder.where_has(
                relation,
                lambda sub: cls._apply_search_clause(
                    sub, field, operator, token, distance, Boolean.AND
                ),
                boolean,
            )
            return
        if distance is not None:
            builder.where_fuzzy(field, token, distance, boolean)
            return
        if operator.is_pattern:
            builder.where(field, operator, f"%{token}%", boolean)
            return
        condition = build_condition(field, operator, token, boolean)
        if condition is None:
            logger.debug(f"Dropping search on {field}: {token!r} does not fit {operator.value}")
            return
        apply_condition(builder, condition)

    def to_dict(self) -> dict[str, Any]:
        return {
            "params": decode(self.params) if isinstance(self.params, str) else self.params,
            "searchable": {path: op.value for path, op in sorted(self.searchable.items())},
        }

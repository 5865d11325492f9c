"""Repository core.

A ``Repository`` owns a criteria stack and a cache layer and runs every read
through the same pipeline:

1. build a fresh query from the store and apply the criteria stack
2. apply transient modifiers and the one-shot scope closure
3. execute through the cache layer
4. reset transient state, so nothing but the criteria survives the call
5. apply field visibility to mapping results

Writes validate, announce, mutate the store, invalidate cached reads for the
entity and announce again.
"""

import typing as t
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from typing import Any, ClassVar

from repokit.cache import CacheBackend
from repokit.logger import get_logger

from ._base import (
    EntityNotFoundError,
    Page,
    RepositoryError,
    RepositorySettings,
    SortDirection,
)
from .cache import CacheKeyDeriver, CacheLayer, cache_tags
from .conditions import Operator
from .criteria import CriteriaStack, Criterion, apply_condition
from .events import EventDispatcher, RepositoryEvent, RepositoryEventType
from .parser import SearchableFields, build_condition
from .query_builder import ClauseBuilder, QueryBuilder, RecordStore
from .request_criteria import RequestCriteria
from .validation import Action, Validator

logger = get_logger(__name__)

Where = Mapping[str, Any] | Iterable[Sequence[Any]]
Scope = Callable[[QueryBuilder], Any]


class Repository[RecordT]:
    """Data access for one entity over a ``RecordStore``.

    Subclasses declare ``field_searchable`` (path to default operator) for
    request criteria, and ``hidden``/``visible`` to shape mapping results.

    Args:
        store: Record store providing queries and writes
        settings: Cache, criteria and pagination settings
        cache: Tag-aware cache backend; ``None`` disables caching
        validator: Validates create and update attributes
        events: Receives lifecycle events for writes
    """

    entity_name: ClassVar[str | None] = None
    field_searchable: ClassVar[SearchableFields] = {}
    hidden: ClassVar[list[str]] = []
    visible: ClassVar[list[str]] = []

    def __init__(
        self,
        store: RecordStore,
        settings: RepositorySettings | None = None,
        cache: CacheBackend | None = None,
        validator: Validator | None = None,
        events: EventDispatcher | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or RepositorySettings()
        self.entity = type(self).entity_name or (
            type(self).__name__.removesuffix("Repository") or "Record"
        )
        self.validator = validator
        self.events = events
        self.criteria = CriteriaStack()
        self.key_deriver = CacheKeyDeriver(self.settings.cache.key_prefix)
        self.cache = CacheLayer(cache, self.settings.cache, cache_tags(self.entity))
        self._modifiers: list[tuple[tuple[Any, ...] | None, Scope]] = []
        self._scope: Scope | None = None
        self._skip_cache = False
        self._skip_visibility = False
        self._metrics: dict[str, int] = {}
        self.boot()

    def boot(self) -> None:
        """Hook for subclasses, called at the end of construction."""

    @property
    def primary_key(self) -> str:
        return self.store.primary_key

    @property
    def cache_tags(self) -> list[str]:
        return self.cache.tags

    @property
    def metrics(self) -> dict[str, int]:
        return dict(self._metrics)

    async def _increment_metric(self, operation: str, success: bool = True) -> None:
        """Track operation metrics."""
        metric_key = f"{operation}_{'success' if success else 'error'}"
        self._metrics[metric_key] = self._metrics.get(metric_key, 0) + 1

    async def _handle_error(self, error: Exception, operation: str) -> t.NoReturn:
        """Count a failed operation and re-raise it as a ``RepositoryError``."""
        await self._increment_metric(operation, success=False)
        if isinstance(error, RepositoryError):
            raise error
        msg = f"Repository operation failed: {error}"
        raise RepositoryError(
            msg,
            entity_type=self.entity,
            operation=operation,
        ) from error

    # Criteria

    def push_criteria(self, criterion: Criterion) -> t.Self:
        self.criteria.push(criterion)
        return self

    def pop_criteria(self, criterion: Criterion | type[Criterion]) -> t.Self:
        self.criteria.pop(criterion)
        return self

    def skip_criteria(self, flag: bool = True) -> t.Self:
        self.criteria.skip(flag)
        return self

    def clear_criteria(self) -> t.Self:
        self.criteria.clear()
        return self

    def get_criteria(self) -> list[Criterion]:
        return list(self.criteria)

    def apply_criteria(self, builder: QueryBuilder) -> QueryBuilder:
        return self.criteria.apply_all(builder)

    def request_criteria(self, params: Mapping[str, Any] | str | None) -> RequestCriteria:
        """Build request criteria bound to this repository's searchable fields."""
        return RequestCriteria(params, self.field_searchable, self.settings.criteria)

    def with_request(self, params: Mapping[str, Any] | str | None) -> t.Self:
        """Push request criteria; a ``skipCache`` flag in them bypasses the cache."""
        return self.push_criteria(self.request_criteria(params))

    # Transient modifiers, consumed by the next read

    def with_relations(self, *relations: str) -> t.Self:
        self._modifiers.append(
            (("with", *relations), lambda builder: builder.with_relations(relations)),
        )
        return self

    def order_by(self, field: str, direction: SortDirection | str = "asc") -> t.Self:
        if isinstance(direction, str):
            direction = SortDirection(direction.strip().lower())
        self._modifiers.append(
            (
                ("order_by", field, direction.value),
                lambda builder: builder.order_by(field, direction),
            ),
        )
        return self

    def where_has(
        self,
        relation: str,
        fn: Callable[[ClauseBuilder], Any] | None = None,
    ) -> t.Self:
        """Constrain the next read by a related record; not cacheable."""
        self._modifiers.append((None, lambda builder: builder.where_has(relation, fn)))
        return self

    def scope_query(self, fn: Scope) -> t.Self:
        """Apply ``fn`` to the query of the next read only; not cacheable."""
        self._scope = fn
        return self

    def skip_cache(self, flag: bool = True) -> t.Self:
        self._skip_cache = flag
        return self

    def skip_visibility(self, flag: bool = True) -> t.Self:
        self._skip_visibility = flag
        return self

    def _reset(self) -> None:
        self._modifiers = []
        self._scope = None
        self._skip_cache = False
        self._skip_visibility = False

    # Cache

    def cache_key(self, method: str, args: Any = None) -> str:
        transient = [descriptor for descriptor, _ in self._modifiers]
        if transient:
            args = {"args": args, "transient": transient}
        return self.key_deriver.derive(
            type(self),
            method,
            args,
            self.criteria,
            entity=self.entity,
        )

    async def clear_cache(self) -> int:
        return await self.cache.invalidate()

    def _request_skips_cache(self) -> bool:
        if self.criteria.skipped:
            return False
        return any(
            isinstance(criterion, RequestCriteria) and criterion.parsed.skip_cache
            for criterion in self.criteria
        )

    # Read pipeline

    def _build(self) -> tuple[QueryBuilder, bool]:
        builder = self.apply_criteria(self.store.query())
        cacheable = True
        for descriptor, modifier in self._modifiers:
            modifier(builder)
            cacheable = cacheable and descriptor is not None
        if self._scope is not None:
            self._scope(builder)
            cacheable = False
        return builder, cacheable

    async def _read(
        self,
        method: str,
        args: Any,
        execute: Callable[[QueryBuilder], Awaitable[Any]],
    ) -> Any:
        skip_visibility = self._skip_visibility
        try:
            builder, cacheable = self._build()
            skip = self._skip_cache or not cacheable or self._request_skips_cache()
            key = self.cache_key(method, args)
            result = await self.cache.get_or_compute(
                key,
                method,
                lambda: execute(builder),
                skip=skip,
            )
            await self._increment_metric(method, True)
        except Exception as e:
            await self._handle_error(e, method)
        finally:
            self._reset()
        return result if skip_visibility else self._present(result)

    def _present(self, result: Any) -> Any:
        match result:
            case Page():
                items = [self._visible_fields(item) for item in result.items]
                return replace(result, items=items)
            case list():
                return [self._visible_fields(item) for item in result]
            case _:
                return self._visible_fields(result)

    def _visible_fields(self, record: Any) -> Any:
        if not isinstance(record, Mapping):
            return record
        if self.visible:
            return {key: value for key, value in record.items() if key in self.visible}
        if self.hidden:
            return {
                key: value for key, value in record.items() if key not in self.hidden
            }
        return record

    @staticmethod
    def _normalize_where(where: Where | None) -> Where | None:
        if where is None or isinstance(where, Mapping):
            return where
        return [tuple(entry) for entry in where]

    def _apply_where(self, builder: QueryBuilder, where: Where) -> QueryBuilder:
        if isinstance(where, Mapping):
            entries: list[Sequence[Any]] = [
                (field, Operator.EQ, value) for field, value in where.items()
            ]
        else:
            entries = list(where)
        for entry in entries:
            if len(entry) != 3:
                msg = f"Where entries must be (field, operator, value), got {entry!r}"
                raise ValueError(msg)
            field, operator, value = entry
            op = Operator.parse(operator)
            condition = build_condition(field, op, value) if op is not None else None
            if condition is None:
                msg = f"Invalid where condition {entry!r}"
                raise ValueError(msg)
            apply_condition(builder, condition)
        return builder

    # Reads

    async def all(self, columns: list[str] | None = None) -> list[RecordT]:
        return await self._read("all", {"columns": columns}, lambda b: b.get(columns))

    async def get(self, columns: list[str] | None = None) -> list[RecordT]:
        return await self.all(columns)

    async def first(self, columns: list[str] | None = None) -> RecordT | None:
        return await self._read("first", {"columns": columns}, lambda b: b.first(columns))

    async def paginate(
        self,
        limit: int | None = None,
        page: int = 1,
        columns: list[str] | None = None,
    ) -> Page[RecordT]:
        """Read one page of records.

        Args:
            limit: Page size; defaults to ``pagination.limit`` and is capped
                at ``pagination.max_limit``
            page: Page number (1-based)
            columns: Columns to select

        Returns:
            Page of records with pagination information

        Raises:
            ValueError: ``limit`` is zero or negative
        """
        pagination = self.settings.pagination
        if limit is None:
            limit = pagination.limit
        if limit < 1:
            self._reset()
            msg = f"Page size must be positive, got {limit}"
            raise ValueError(msg)
        limit = min(limit, pagination.max_limit)
        return await self._read(
            "paginate",
            {"limit": limit, "page": page, "columns": columns},
            lambda b: b.paginate(limit, page, columns),
        )

    async def find(self, record_id: Any, columns: list[str] | None = None) -> RecordT | None:
        return await self._read(
            "find",
            {"id": record_id, "columns": columns},
            lambda b: b.where(self.primary_key, Operator.EQ, record_id).first(columns),
        )

    async def find_or_fail(
        self,
        record_id: Any,
        columns: list[str] | None = None,
    ) -> RecordT:
        """Find a record by id.

        Raises:
            EntityNotFoundError: no record has this id
        """
        record = await self.find(record_id, columns)
        if record is None:
            raise EntityNotFoundError(self.entity, record_id)
        return record

    async def find_by_field(
        self,
        field: str,
        value: Any,
        columns: list[str] | None = None,
    ) -> list[RecordT]:
        return await self.find_where({field: value}, columns)

    async def find_where(
        self,
        where: Where,
        columns: list[str] | None = None,
    ) -> list[RecordT]:
        """Read records matching every condition in ``where``.

        ``where`` is a mapping of field to value (equality; ``None`` matches
        null) or an iterable of ``(field, operator, value)`` triples.
        """
        where = self._normalize_where(where)
        return await self._read(
            "find_where",
            {"where": where, "columns": columns},
            lambda b: self._apply_where(b, where).get(columns),
        )

    async def find_where_first(
        self,
        where: Where,
        columns: list[str] | None = None,
    ) -> RecordT | None:
        where = self._normalize_where(where)
        return await self._read(
            "find_where_first",
            {"where": where, "columns": columns},
            lambda b: self._apply_where(b, where).first(columns),
        )

    async def find_where_in(
        self,
        field: str,
        values: Iterable[Any],
        columns: list[str] | None = None,
    ) -> list[RecordT]:
        values = list(values)
        return await self._read(
            "find_where_in",
            {"field": field, "values": values, "columns": columns},
            lambda b: b.where_in(field, values).get(columns),
        )

    async def find_where_not_in(
        self,
        field: str,
        values: Iterable[Any],
        columns: list[str] | None = None,
    ) -> list[RecordT]:
        values = list(values)
        return await self._read(
            "find_where_not_in",
            {"field": field, "values": values, "columns": columns},
            lambda b: b.where_not_in(field, values).get(columns),
        )

    async def find_where_between(
        self,
        field: str,
        bounds: Sequence[Any],
        columns: list[str] | None = None,
    ) -> list[RecordT]:
        bounds = list(bounds)
        return await self._read(
            "find_where_between",
            {"field": field, "bounds": bounds, "columns": columns},
            lambda b: b.where_between(field, bounds).get(columns),
        )

    async def count(self, where: Where | None = None) -> int:
        where = self._normalize_where(where)

        async def execute(builder: QueryBuilder) -> int:
            if where is not None:
                self._apply_where(builder, where)
            return await builder.count()

        return t.cast("int", await self._read("count", {"where": where}, execute))

    async def exists(self, record_id: Any) -> bool:
        async def execute(builder: QueryBuilder) -> bool:
            return await builder.where(self.primary_key, Operator.EQ, record_id).count() > 0

        return t.cast("bool", await self._read("exists", {"id": record_id}, execute))

    async def get_by_criteria(
        self,
        criterion: Criterion,
        columns: list[str] | None = None,
    ) -> list[RecordT]:
        """Read with a single criterion instead of the stack; never cached."""
        skip_visibility = self._skip_visibility
        try:
            builder = criterion.apply(self.store.query())
            result = await builder.get(columns)
            await self._increment_metric("get_by_criteria", True)
        except Exception as e:
            await self._handle_error(e, "get_by_criteria")
        finally:
            self._reset()
        return result if skip_visibility else self._present(result)

    # Writes

    def _validate(self, attributes: Mapping[str, Any], action: Action) -> dict[str, Any]:
        if self.validator is None:
            return dict(attributes)
        return self.validator.validate(attributes, action)

    async def _dispatch(self, event_type: RepositoryEventType, **payload: Any) -> None:
        if self.events is None:
            return
        cls = type(self)
        await self.events.dispatch(
            RepositoryEvent(
                type=event_type,
                entity=self.entity,
                repository=f"{cls.__module__}.{cls.__qualname__}",
                payload=payload,
            ),
        )

    def _record_id(self, record: Any) -> Any:
        if isinstance(record, Mapping):
            return record.get(self.primary_key)
        return getattr(record, self.primary_key, None)

    async def _fetch(self, record_id: Any) -> Any:
        """Load a record directly from the store, ignoring criteria and cache."""
        return await self.store.query().where(self.primary_key, Operator.EQ, record_id).first()

    async def create(self, attributes: Mapping[str, Any]) -> RecordT:
        try:
            attributes = self._validate(attributes, "create")
            await self._dispatch(RepositoryEventType.CREATING, attributes=attributes)
            record = await self.store.insert(attributes)
            await self.cache.invalidate("create")
            await self._dispatch(RepositoryEventType.CREATED, record=record)
            await self._increment_metric("create", True)
        except Exception as e:
            await self._handle_error(e, "create")
        return self._present(record)

    async def create_many(self, records: Iterable[Mapping[str, Any]]) -> list[RecordT]:
        """Create several records at once.

        Every record is validated before any is written, and the store inserts
        all of them or none.
        """
        try:
            validated = [self._validate(attributes, "create") for attributes in records]
            await self._dispatch(RepositoryEventType.CREATING, records=validated)
            created = await self.store.insert_many(validated)
            await self.cache.invalidate("create")
            await self._dispatch(
                RepositoryEventType.BULK_CREATED,
                records=created,
                count=len(created),
            )
            await self._increment_metric("create_many", True)
        except Exception as e:
            await self._handle_error(e, "create_many")
        return self._present(created)

    async def update(self, attributes: Mapping[str, Any], record_id: Any) -> RecordT:
        """Update a record by id.

        Raises:
            EntityNotFoundError: no record has this id
            ValidationFailed: the validator rejected the attributes
        """
        try:
            attributes = self._validate(attributes, "update")
            original = await self._fetch(record_id)
            if original is None:
                raise EntityNotFoundError(self.entity, record_id)
            await self._dispatch(
                RepositoryEventType.UPDATING,
                id=record_id,
                attributes=attributes,
                original=original,
            )
            record = await self.store.update(record_id, attributes)
            if record is None:
                raise EntityNotFoundError(self.entity, record_id)
            await self.cache.invalidate("update")
            await self._dispatch(RepositoryEventType.UPDATED, id=record_id, record=record)
            await self._increment_metric("update", True)
        except Exception as e:
            await self._handle_error(e, "update")
        return self._present(record)

    async def update_where(self, where: Where, attributes: Mapping[str, Any]) -> int:
        """Set ``attributes`` on every record matching ``where``.

        Returns:
            Number of records updated
        """
        try:
            where = self._normalize_where(where)
            attributes = self._validate(attributes, "update")
            builder = self._apply_where(self.store.query(), where)
            await self._dispatch(
                RepositoryEventType.UPDATING,
                where=where,
                attributes=attributes,
            )
            updated = await builder.update(attributes)
            await self.cache.invalidate("update")
            await self._dispatch(
                RepositoryEventType.BULK_UPDATED,
                where=where,
                attributes=attributes,
                count=updated,
            )
            await self._increment_metric("update_where", True)
        except Exception as e:
            await self._handle_error(e, "update_where")
        return updated

    async def update_or_create(
        self,
        attributes: Mapping[str, Any],
        values: Mapping[str, Any] | None = None,
    ) -> RecordT:
        """Update the first record matching ``attributes`` or create one."""
        values = dict(values or {})
        builder = self._apply_where(self.store.query(), attributes)
        existing = await builder.first()
        if existing is not None:
            return await self.update(values, self._record_id(existing))
        return await self.create({**attributes, **values})

    async def delete(self, record_id: Any) -> int:
        """Delete a record by id.

        Raises:
            EntityNotFoundError: no record has this id
        """
        try:
            original = await self._fetch(record_id)
            if original is None:
                raise EntityNotFoundError(self.entity, record_id)
            await self._dispatch(RepositoryEventType.DELETING, id=record_id, record=original)
            deleted = await self.store.delete([record_id])
            await self.cache.invalidate("delete")
            await self._dispatch(RepositoryEventType.DELETED, id=record_id, record=original)
            await self._increment_metric("delete", True)
        except Exception as e:
            await self._handle_error(e, "delete")
        return deleted

    async def delete_multiple(self, ids: Iterable[Any]) -> int:
        ids = list(ids)
        try:
            await self._dispatch(RepositoryEventType.DELETING, ids=ids)
            deleted = await self.store.delete(ids)
            await self.cache.invalidate("delete")
            await self._dispatch(RepositoryEventType.BULK_DELETED, ids=ids, count=deleted)
            await self._increment_metric("delete_multiple", True)
        except Exception as e:
            await self._handle_error(e, "delete_multiple")
        return deleted

    async def delete_where(self, where: Where) -> int:
        try:
            where = self._normalize_where(where)
            builder = self._apply_where(self.store.query(), where)
            await self._dispatch(RepositoryEventType.DELETING, where=where)
            deleted = await builder.delete()
            await self.cache.invalidate("delete")
            await self._dispatch(RepositoryEventType.BULK_DELETED, where=where, count=deleted)
            await self._increment_metric("delete_where", True)
        except Exception as e:
            await self._handle_error(e, "delete_where")
        return deleted

"""SQLAlchemy record store.

Translates the clause tree of a ``SqlQueryBuilder`` into a SQLAlchemy 2
``select`` and runs it on an async session:

- relation clauses become ``EXISTS`` via ``any()`` (to-many) or ``has()``
  (to-one), nested for dotted paths
- eager loads use ``selectinload``
- fuzzy matching calls the database ``levenshtein`` function (PostgreSQL
  ``fuzzystrmatch``)

Results are returned as dictionaries of column values plus any eager-loaded
relations, so they can be cached and shaped like any other record.
"""

from collections.abc import Iterable, Mapping
from sqlalchemy import Date, and_, false, func, not_, or_, select, true
from sqlalchemy import delete as sql_delete
from sqlalchemy import update as sql_update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import ColumnElement, Select
from typing import Any

from repokit.logger import get_logger

from ._base import DuplicateEntityError, SortDirection
from .conditions import Operator
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

logger = get_logger(__name__)

RelationTree = dict[str, "RelationTree"]


def relation_tree(paths: Iterable[str]) -> RelationTree:
    """Turn ``["author", "author.company"]`` into ``{"author": {"company": {}}}``."""
    tree: RelationTree = {}
    for path in paths:
        node = tree
        for name in path.split("."):
            node = node.setdefault(name, {})
    return tree


def compare(column: Any, op: Operator, value: Any) -> ColumnElement[bool]:
    match op:
        case Operator.EQ:
            return column == value
        case Operator.NE:
            return column != value
        case Operator.GT:
            return column > value
        case Operator.LT:
            return column < value
        case Operator.GTE:
            return column >= value
        case Operator.LTE:
            return column <= value
        case Operator.LIKE:
            return column.like(value)
        case Operator.ILIKE:
            return column.ilike(value)
        case Operator.NOT_LIKE:
            return column.not_like(value)
        case Operator.IN:
            return column.in_(list(value))
        case Operator.NOT_IN:
            return column.not_in(list(value))
        case Operator.BETWEEN:
            return column.between(*value)
        case Operator.NOT_BETWEEN:
            return not_(column.between(*value))
        case Operator.EXISTS:
            return column.is_not(None)
        case Operator.NOT_EXISTS:
            return column.is_(None)
    msg = f"Unsupported operator {op.value}"
    raise ValueError(msg)


class SqlQueryBuilder(QueryBuilder):
    def __init__(self, store: "SqlStore") -> None:
        super().__init__()
        self.store = store

    @staticmethod
    def _column(model: type, name: str) -> Any:
        mapper = sa_inspect(model)
        if name not in mapper.column_attrs:
            msg = f"{model.__name__} has no column {name!r}"
            raise ValueError(msg)
        return getattr(model, name)

    def compile(
        self,
        clauses: Iterable[Clause] | None = None,
        model: type | None = None,
    ) -> ColumnElement[bool] | None:
        """Compile clauses (default: this builder's) into one condition."""
        model = model or self.store.model
        runs = or_runs(self._clauses if clauses is None else clauses)
        parts = [
            and_(*(self._compile_clause(model, clause) for clause in run)) for run in runs
        ]
        if not parts:
            return None
        return parts[0] if len(parts) == 1 else or_(*parts)

    def _compile_clause(self, model: type, clause: Clause) -> ColumnElement[bool]:
        match clause:
            case WhereGroup(clauses=inner, negated=negated):
                compiled = self.compile(inner, model)
                if compiled is None:
                    return true()
                # NULL comparisons count as no match
                return not_(func.coalesce(compiled, false())) if negated else compiled
            case WhereHas(relation=relation, clauses=inner):
                return self._exists(model, relation.split("."), inner)
            case WhereDate(field=field, operator=op, value=value):
                column = func.date(self._column(model, field), type_=Date)
                return compare(column, op, value)
            case WhereFuzzy(field=field, term=term, distance=distance):
                column = func.lower(self._column(model, field))
                return func.levenshtein(column, term.lower()) <= distance
            case Where(field=field, operator=op, value=value):
                return compare(self._column(model, field), op, value)
        msg = f"Unsupported clause {clause!r}"
        raise TypeError(msg)

    def _exists(
        self,
        model: type,
        path: list[str],
        clauses: Iterable[Clause],
    ) -> ColumnElement[bool]:
        name, *rest = path
        relationship = sa_inspect(model).relationships.get(name)
        if relationship is None:
            msg = f"{model.__name__} has no relation {name!r}"
            raise ValueError(msg)
        target = relationship.mapper.class_
        if rest:
            inner = self._exists(target, rest, clauses)
        else:
            inner = self.compile(clauses, target)
        attribute = getattr(model, name)
        method = attribute.any if relationship.uselist else attribute.has
        return method() if inner is None else method(inner)

    def _loaders(self) -> dict[str, Any]:
        """``selectinload`` options keyed by the eager load path they serve."""
        loaders: dict[str, Any] = {}
        for path in self.eager_loads:
            model, loader = self.store.model, None
            for name in path.split("."):
                relationship = sa_inspect(model).relationships.get(name)
                if relationship is None:
                    logger.debug(f"Skipping eager load of unknown relation {path!r}")
                    loader = None
                    break
                attribute = getattr(model, name)
                loader = (
                    selectinload(attribute)
                    if loader is None
                    else loader.selectinload(attribute)
                )
                model = relationship.mapper.class_
            if loader is not None:
                loaders[path] = loader
        return loaders

    def _order_clauses(self) -> list[Any]:
        mapper = sa_inspect(self.store.model)
        clauses = []
        for order in self.orders:
            if order.field not in mapper.column_attrs:
                logger.debug(f"Skipping order on unknown column {order.field!r}")
                continue
            column = getattr(self.store.model, order.field)
            clauses.append(
                column.desc() if order.direction is SortDirection.DESC else column.asc(),
            )
        return clauses

    def statement(self) -> Select[Any]:
        stmt = select(self.store.model)
        if (condition := self.compile()) is not None:
            stmt = stmt.where(condition)
        if loaders := self._loaders():
            stmt = stmt.options(*loaders.values())
        if orders := self._order_clauses():
            stmt = stmt.order_by(*orders)
        if self._offset:
            stmt = stmt.offset(self._offset)
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        return stmt

    async def get(self, columns: list[str] | None = None) -> list[dict[str, Any]]:
        tree = relation_tree(self._loaders())
        async with self.store.session() as session:
            rows = (await session.scalars(self.statement())).all()
            records = [self.store.to_dict(row, tree) for row in rows]
        if columns and columns != ["*"]:
            return [{name: record.get(name) for name in columns} for record in records]
        return records

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self.store.model)
        if (condition := self.compile()) is not None:
            stmt = stmt.where(condition)
        async with self.store.session() as session:
            return int(await session.scalar(stmt) or 0)

    async def delete(self) -> int:
        stmt = sql_delete(self.store.model).execution_options(synchronize_session=False)
        if (condition := self.compile()) is not None:
            stmt = stmt.where(condition)
        async with self.store.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return int(result.rowcount or 0)

    async def update(self, attributes: Mapping[str, Any]) -> int:
        values = {
            key: value
            for key, value in self.store._columns(attributes).items()
            if key != self.store.primary_key
        }
        if not values:
            return 0
        stmt = (
            sql_update(self.store.model)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if (condition := self.compile()) is not None:
            stmt = stmt.where(condition)
        async with self.store.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return int(result.rowcount or 0)


class SqlStore:
    """Record store for one mapped SQLAlchemy model.

    Args:
        session_factory: Async session factory; ``expire_on_commit=False`` is
            recommended
        model: Mapped model class
        primary_key: Primary key attribute; defaults to the mapper's first
            primary key column
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: type,
        primary_key: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.model = model
        self.mapper = sa_inspect(model)
        self.primary_key = primary_key or self.mapper.primary_key[0].key

    def session(self) -> AsyncSession:
        return self.session_factory()

    def query(self) -> SqlQueryBuilder:
        return SqlQueryBuilder(self)

    def to_dict(self, instance: Any, relations: RelationTree | None = None) -> dict[str, Any]:
        """Column values of ``instance`` plus the given loaded relations."""
        mapper = sa_inspect(type(instance))
        data = {prop.key: getattr(instance, prop.key) for prop in mapper.column_attrs}
        for name, nested in (relations or {}).items():
            value = getattr(instance, name, None)
            if value is None:
                data[name] = None
            elif isinstance(value, Iterable):
                data[name] = [self.to_dict(item, nested) for item in value]
            else:
                data[name] = self.to_dict(value, nested)
        return data

    def _columns(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        return {
            key: value for key, value in attributes.items() if key in self.mapper.column_attrs
        }

    async def insert(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        async with self.session() as session:
            instance = self.model(**self._columns(attributes))
            session.add(instance)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateEntityError(
                    self.model.__name__,
                    self.primary_key,
                    attributes.get(self.primary_key),
                ) from e
            await session.refresh(instance)
            return self.to_dict(instance)

    async def insert_many(
        self,
        records: Iterable[Mapping[str, Any]],
    ) -> list[dict[str, Any]]:
        """Insert every record in one transaction."""
        records = list(records)
        async with self.session() as session:
            instances = [self.model(**self._columns(attributes)) for attributes in records]
            session.add_all(instances)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateEntityError(
                    self.model.__name__,
                    self.primary_key,
                    [attributes.get(self.primary_key) for attributes in records],
                ) from e
            for instance in instances:
                await session.refresh(instance)
            return [self.to_dict(instance) for instance in instances]

    async def update(
        self,
        record_id: Any,
        attributes: Mapping[str, Any],
    ) -> dict[str, Any] | None:
        async with self.session() as session:
            instance = await session.get(self.model, record_id)
            if instance is None:
                return None
            for key, value in self._columns(attributes).items():
                if key != self.primary_key:
                    setattr(instance, key, value)
            await session.commit()
            await session.refresh(instance)
            return self.to_dict(instance)

    async def delete(self, ids: Iterable[Any]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        column = getattr(self.model, self.primary_key)
        stmt = (
            sql_delete(self.model)
            .where(column.in_(ids))
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return int(result.rowcount or 0)

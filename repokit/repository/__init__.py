"""Repository layer.

Provides a repository pattern implementation with:
- Request criteria compiling search, filters, ordering and eager loads
- A per-repository criteria stack applied before every read
- Read caching keyed by method, arguments and active criteria
- Tag-based cache invalidation on writes
- In-memory and SQLAlchemy record stores (``repokit.repository.sql``)
"""

from ._base import (
    CriteriaSettings,
    DuplicateEntityError,
    EntityNotFoundError,
    InvalidCriterion,
    InvalidSearchFields,
    Page,
    PaginationInfo,
    PaginationSettings,
    RepositoryCacheSettings,
    RepositoryError,
    RepositorySettings,
    SortCriteria,
    SortDirection,
    ValidationFailed,
)
from .cache import CacheKeyDeriver, CacheLayer, CacheMetrics, cache_tags
from .conditions import (
    Boolean,
    FilterCondition,
    Operator,
    ParsedRequest,
    SearchMode,
    SearchSpec,
)
from .criteria import (
    CriteriaStack,
    Criterion,
    OrderByCriterion,
    ScopeCriterion,
    WhereCriterion,
    WithRelationsCriterion,
    apply_condition,
)
from .events import (
    EventDispatcher,
    ListenerRegistry,
    RepositoryEvent,
    RepositoryEventType,
)
from .memory import MemoryQueryBuilder, MemoryStore
from .parser import RequestParser
from .query_builder import ClauseBuilder, QueryBuilder, RecordStore
from .repository import Repository
from .request_criteria import RequestCriteria
from .validation import PydanticValidator, Validator

__all__ = [
    "Boolean",
    "CacheKeyDeriver",
    "CacheLayer",
    "CacheMetrics",
    "ClauseBuilder",
    "CriteriaSettings",
    "CriteriaStack",
    "Criterion",
    "DuplicateEntityError",
    "EntityNotFoundError",
    "EventDispatcher",
    "FilterCondition",
    "InvalidCriterion",
    "InvalidSearchFields",
    "ListenerRegistry",
    "MemoryQueryBuilder",
    "MemoryStore",
    "Operator",
    "OrderByCriterion",
    "Page",
    "PaginationInfo",
    "PaginationSettings",
    "ParsedRequest",
    "PydanticValidator",
    "QueryBuilder",
    "RecordStore",
    "Repository",
    "RepositoryCacheSettings",
    "RepositoryError",
    "RepositoryEvent",
    "RepositoryEventType",
    "RepositorySettings",
    "RequestCriteria",
    "RequestParser",
    "ScopeCriterion",
    "SearchMode",
    "SearchSpec",
    "SortCriteria",
    "SortDirection",
    "ValidationFailed",
    "Validator",
    "WhereCriterion",
    "WithRelationsCriterion",
    "apply_condition",
    "cache_tags",
]

"""Repository base types.

Provides the pieces shared by every repository component:
- Error hierarchy for repository operations
- Sort and pagination value types
- Settings for criteria parsing, caching and pagination
"""

from enum import Enum

import typing as t
from dataclasses import dataclass, field
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import SettingsConfigDict
from typing import Any

from repokit.config import Settings


class RepositoryError(Exception):
    """Base exception for repository operations."""

    def __init__(
        self,
        message: str,
        entity_type: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.operation = operation
        super().__init__(message)


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(
            f"{entity_type} with ID {entity_id} not found",
            entity_type=entity_type,
            operation="find",
        )
        self.entity_id = entity_id


class DuplicateEntityError(RepositoryError):
    """Raised when trying to create a duplicate entity."""

    def __init__(self, entity_type: str, conflict_field: str, value: Any) -> None:
        super().__init__(
            f"{entity_type} with {conflict_field}={value} already exists",
            entity_type=entity_type,
            operation="create",
        )
        self.conflict_field = conflict_field
        self.value = value


class InvalidCriterion(RepositoryError):
    """Raised when a value pushed onto a criteria stack is not a Criterion."""

    def __init__(self, value: Any) -> None:
        super().__init__(
            f"{type(value).__name__} does not implement the Criterion interface",
            operation="push_criteria",
        )
        self.value = value


class InvalidSearchFields(RepositoryError):
    """Raised when a searchFields override names no accepted operator."""

    def __init__(self, requested: list[str], accepted: list[str]) -> None:
        super().__init__(
            "None of the search fields were accepted. "
            f"Accepted conditions: {','.join(accepted)}",
            operation="search",
        )
        self.requested = requested
        self.accepted = accepted


class ValidationFailed(RepositoryError):
    """Raised by a validator to block a write."""

    def __init__(
        self,
        errors: list[dict[str, Any]] | dict[str, Any],
        entity_type: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(
            f"Validation failed: {errors}",
            entity_type=entity_type,
            operation=action,
        )
        self.errors = errors


class SortDirection(Enum):
    """Sort direction enumeration."""

    ASC = "asc"
    DESC = "desc"

    @classmethod
    def parse(cls, value: str | None) -> "SortDirection | None":
        if value is None:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class SortCriteria:
    """Sort criteria specification."""

    field: str
    direction: SortDirection = SortDirection.ASC


@dataclass
class PaginationInfo:
    """Pagination information."""

    page: int = 1
    page_size: int = 15
    total_items: int | None = None
    total_pages: int | None = None

    def __post_init__(self) -> None:
        if self.total_items is not None and self.total_pages is None:
            self.total_pages = (self.total_items + self.page_size - 1) // self.page_size

    @property
    def offset(self) -> int:
        """Calculate offset for database queries."""
        return (self.page - 1) * self.page_size

    @property
    def has_next(self) -> bool:
        """Check if there's a next page."""
        return self.total_pages is not None and self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        """Check if there's a previous page."""
        return self.page > 1


@dataclass
class Page[RecordT]:
    """One page of results plus its pagination information."""

    items: list[RecordT]
    info: PaginationInfo = field(default_factory=PaginationInfo)

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> t.Iterator[RecordT]:
        return iter(self.items)


DEFAULT_PARAMS: dict[str, str] = {
    "search": "search",
    "searchFields": "searchFields",
    "searchJoin": "searchJoin",
    "filter": "filter",
    "orderBy": "orderBy",
    "sortedBy": "sortedBy",
    "with": "with",
    "skipCache": "skipCache",
}

DEFAULT_ACCEPTED_CONDITIONS: list[str] = [
    "=",
    "!=",
    "<>",
    ">",
    "<",
    ">=",
    "<=",
    "like",
    "ilike",
    "not_like",
    "in",
    "not_in",
    "notin",
    "between",
    "not_between",
]


class CriteriaSettings(Settings):
    """Request criteria parsing settings."""

    model_config = SettingsConfigDict(env_prefix="REPOSITORY_CRITERIA_")

    params: dict[str, str] = Field(default_factory=lambda: DEFAULT_PARAMS.copy())
    accepted_conditions: list[str] = Field(
        default_factory=lambda: DEFAULT_ACCEPTED_CONDITIONS.copy(),
    )
    default_direction: str = "asc"

    @field_validator("params")
    @classmethod
    def fill_missing_params(cls, v: dict[str, str]) -> dict[str, str]:
        return DEFAULT_PARAMS | v

    @field_validator("default_direction")
    @classmethod
    def validate_direction(cls, v: str) -> str:
        if SortDirection.parse(v) is None:
            msg = "default_direction must be 'asc' or 'desc'"
            raise ValueError(msg)
        return v.lower()

    def param(self, name: str) -> str:
        """Request parameter name configured for a logical parameter."""
        return self.params.get(name, name)


class CacheCleanSettings(BaseModel):
    """Which writes invalidate cached reads."""

    enabled: bool = True
    on: dict[str, bool] = Field(
        default_factory=lambda: {"create": True, "update": True, "delete": True},
    )

    def should_clean(self, action: str) -> bool:
        return self.enabled and self.on.get(action, True)


class RepositoryCacheSettings(Settings):
    """Repository cache configuration settings."""

    model_config = SettingsConfigDict(env_prefix="REPOSITORY_CACHE_")

    enabled: bool = True
    ttl: int = Field(default=1800, ge=0, description="Cache TTL in seconds")
    key_prefix: str = Field(default="repository", description="Cache key prefix")
    only: list[str] | None = None
    exclude: list[str] | None = None
    clean: CacheCleanSettings = Field(default_factory=CacheCleanSettings)


class PaginationSettings(BaseModel):
    """Pagination defaults."""

    limit: int = Field(default=15, ge=1)
    max_limit: int = Field(default=1000, ge=1)


class RepositorySettings(Settings):
    """Repository configuration settings."""

    model_config = SettingsConfigDict(env_prefix="REPOSITORY_")

    cache: RepositoryCacheSettings = Field(default_factory=RepositoryCacheSettings)
    criteria: CriteriaSettings = Field(default_factory=CriteriaSettings)
    pagination: PaginationSettings = Field(default_factory=PaginationSettings)

    @field_validator("pagination")
    @classmethod
    def validate_pagination(cls, v: PaginationSettings) -> PaginationSettings:
        if v.limit > v.max_limit:
            msg = "pagination limit cannot exceed max_limit"
            raise ValueError(msg)
        return v

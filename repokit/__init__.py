from .config import Settings
from .logger import configure_logging, get_logger
from .repository import (
    CriteriaStack,
    Criterion,
    EntityNotFoundError,
    MemoryStore,
    Repository,
    RepositoryError,
    RepositorySettings,
    RequestCriteria,
)

__all__ = [
    "CriteriaStack",
    "Criterion",
    "EntityNotFoundError",
    "MemoryStore",
    "Repository",
    "RepositoryError",
    "RepositorySettings",
    "RequestCriteria",
    "Settings",
    "configure_logging",
    "get_logger",
]

__version__ = "0.1.0"

"""Repository lifecycle events.

Writes announce themselves before and after the store is mutated. The
repository only depends on the ``EventDispatcher`` protocol; the in-process
``ListenerRegistry`` is provided for applications without an event bus.
"""

from enum import Enum
from uuid import UUID, uuid4

import asyncio
import typing as t
from collections import defaultdict
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from repokit.logger import get_logger

logger = get_logger(__name__)


class RepositoryEventType(Enum):
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    UPDATED = "updated"
    DELETING = "deleting"
    DELETED = "deleted"
    BULK_DELETED = "bulk_deleted"
    BULK_CREATED = "bulk_created"
    BULK_UPDATED = "bulk_updated"


class RepositoryEvent(BaseModel):
    """A write on a repository."""

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    event_id: UUID = Field(default_factory=uuid4)
    type: RepositoryEventType
    entity: str = Field(description="Entity name of the repository")
    repository: str = Field(description="Qualified repository class name")
    payload: dict[str, t.Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)

    def __str__(self) -> str:
        return f"RepositoryEvent({self.entity}.{self.type.value}, {self.event_id})"


EventHandler = t.Callable[[RepositoryEvent], t.Any]


@t.runtime_checkable
class EventDispatcher(t.Protocol):
    async def dispatch(self, event: RepositoryEvent) -> None: ...


class ListenerRegistry:
    """In-process dispatcher calling registered handlers in order.

    Handlers may be plain callables or coroutine functions. A failing
    handler is logged and does not affect the write or other handlers.
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[RepositoryEventType, list[EventHandler]] = (
            defaultdict(list)
        )

    def listen(
        self,
        event_type: RepositoryEventType | str,
        handler: EventHandler,
    ) -> EventHandler:
        self._handlers[RepositoryEventType(event_type)].append(handler)
        return handler

    def on(self, event_type: RepositoryEventType | str) -> t.Callable[[EventHandler], EventHandler]:
        """Decorator form of ``listen``."""

        def decorator(handler: EventHandler) -> EventHandler:
            return self.listen(event_type, handler)

        return decorator

    def forget(self, event_type: RepositoryEventType | str | None = None) -> None:
        if event_type is None:
            self._handlers.clear()
        else:
            self._handlers.pop(RepositoryEventType(event_type), None)

    def handlers(self, event_type: RepositoryEventType) -> list[EventHandler]:
        return list(self._handlers.get(event_type, []))

    async def dispatch(self, event: RepositoryEvent) -> None:
        for handler in self.handlers(event.type):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Event handler {handler!r} failed for {event}: {e}")

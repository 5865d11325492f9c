"""Write validation.

A validator receives the attributes of a create or update and returns the
attributes to persist, or raises ``ValidationFailed`` to block the write.
"""

import typing as t
from collections.abc import Mapping
from pydantic import BaseModel, ValidationError

from ._base import ValidationFailed

Action = t.Literal["create", "update"]


@t.runtime_checkable
class Validator(t.Protocol):
    def validate(
        self,
        attributes: Mapping[str, t.Any],
        action: Action,
    ) -> dict[str, t.Any]: ...


class PydanticValidator:
    """Validate writes against pydantic models.

    Args:
        create: Model for create attributes
        update: Model for update attributes; only the given fields are
            returned so partial updates stay partial
    """

    def __init__(
        self,
        create: type[BaseModel] | None = None,
        update: type[BaseModel] | None = None,
    ) -> None:
        self.models: dict[str, type[BaseModel] | None] = {
            "create": create,
            "update": update,
        }

    def validate(
        self,
        attributes: Mapping[str, t.Any],
        action: Action,
    ) -> dict[str, t.Any]:
        model = self.models.get(action)
        if model is None:
            return dict(attributes)
        try:
            instance = model.model_validate(dict(attributes))
        except ValidationError as e:
            raise ValidationFailed(
                e.errors(include_url=False),
                entity_type=model.__name__,
                action=action,
            ) from e
        return instance.model_dump(exclude_unset=action == "update")

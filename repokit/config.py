"""Settings base for repokit.

Every configurable component receives its settings object explicitly. Values
are resolved from (lowest to highest precedence): field defaults, environment
variables, an optional YAML file, and keyword overrides.
"""

from pathlib import Path

import rich.repr
import typing as t
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import TypeVar

SettingsT = TypeVar("SettingsT", bound="Settings")


def deep_update(*dicts: dict[str, t.Any]) -> dict[str, t.Any]:
    """Deep merge multiple dictionaries."""
    result: dict[str, t.Any] = {}
    for d in dicts:
        if isinstance(d, dict):
            for key, value in d.items():
                if (
                    key in result
                    and isinstance(result[key], dict)
                    and isinstance(value, dict)
                ):
                    result[key] = deep_update(result[key], value)
                else:
                    result[key] = value
    return result


@rich.repr.auto
class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        arbitrary_types_allowed=True,
        validate_default=True,
        env_nested_delimiter="__",
        protected_namespaces=("settings_",),
    )

    @classmethod
    def from_yaml(
        cls: type[SettingsT],
        path: str | Path,
        section: str | None = None,
        **overrides: t.Any,
    ) -> SettingsT:
        """Build settings from a YAML file.

        Args:
            path: YAML file to read; a missing file yields defaults
            section: Optional top-level key holding this settings group
            **overrides: Values that take precedence over the file

        Returns:
            Settings instance
        """
        path = Path(path)
        data: dict[str, t.Any] = {}
        if path.exists():
            loaded = yaml.safe_load(path.read_text()) or {}
            if not isinstance(loaded, dict):
                msg = f"Settings file {path} must contain a mapping"
                raise ValueError(msg)
            data = loaded.get(section, {}) if section else loaded
        return cls(**deep_update(data or {}, overrides))

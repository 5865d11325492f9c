"""Loguru-based logging for repokit.

Modules obtain a bound logger with ``get_logger(__name__)``; the host
application decides where output goes by calling ``configure_logging``.
Standard library ``logging`` records can be routed into loguru through
``InterceptHandler``.
"""

import logging
import sys
from inspect import currentframe

import typing as t
from loguru import logger as _logger
from pydantic_settings import SettingsConfigDict

from .config import Settings

__all__ = ["InterceptHandler", "LoggerSettings", "configure_logging", "get_logger"]


class LoggerSettings(Settings):
    """Logger settings."""

    model_config = SettingsConfigDict(env_prefix="REPOSITORY_LOG_")

    log_level: str = "INFO"
    serialize: bool = False
    colorize: bool = True
    intercept_stdlib: bool = False

    format: dict[str, str] = {
        "time": "<b><e>[</e> <w>{time:YYYY-MM-DD HH:mm:ss.SSS}</w> <e>]</e></b>",
        "level": " <level>{level:>8}</level>",
        "sep": " <b><w>in</w></b> ",
        "name": "<b>{extra[mod_name]:>20}</b>",
        "line": "<b><e>[</e><w>{line:^5}</w><e>]</e></b>",
        "message": "  <level>{message}</level>",
    }

    @property
    def format_string(self) -> str:
        return "".join(self.format.values())


def _patch(record: dict[str, t.Any]) -> None:
    """Ensure the ``mod_name`` extra used by the format always exists."""
    record["extra"].setdefault("mod_name", record["name"])


def get_logger(name: str) -> t.Any:
    """Return the shared loguru logger bound to a module name."""
    return _logger.bind(mod_name=name.removeprefix("repokit."))


def configure_logging(settings: LoggerSettings | None = None) -> t.Any:
    """Install a stderr sink for repokit output.

    Args:
        settings: Logger settings; defaults are read from the environment

    Returns:
        The configured loguru logger
    """
    settings = settings or LoggerSettings()
    _logger.remove()
    _logger.configure(patcher=_patch)  # type: ignore[arg-type]
    _logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        format=settings.format_string,
        serialize=settings.serialize,
        colorize=settings.colorize,
        backtrace=False,
        diagnose=False,
    )
    if settings.intercept_stdlib:
        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    return _logger


class InterceptHandler(logging.Handler):
    """Handler to intercept standard library logging and route to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        """Emit log record via Loguru."""
        try:
            level: str | int = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = (currentframe(), 0)
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        _logger.opt(depth=depth, exception=record.exc_info).bind(
            mod_name=record.name,
        ).log(level, record.getMessage())

"""
structlog configuration for processes embedding the core.

Services log through module-level ``structlog.get_logger()`` proxies, so
configuring once at startup (or again in tests) applies everywhere.
"""

from __future__ import annotations

import logging

import structlog

from workboard.core.config import Settings

_LEVELS = logging.getLevelNamesMapping()


def level_number(level: str | int) -> int:
    """Resolve ``"info"``/``"WARNING"``/``20`` to a numeric level."""
    if isinstance(level, int):
        return level
    try:
        return _LEVELS[level.upper()]
    except KeyError:
        raise ValueError(f"Unknown log level: {level!r}") from None


def build_processors(fmt: str = "json") -> list:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


def configure_logging(level: str | int = "info", fmt: str = "json") -> None:
    """Configure structlog with the given minimum level and output format."""
    structlog.configure(
        processors=build_processors(fmt),
        wrapper_class=structlog.make_filtering_bound_logger(level_number(level)),
        cache_logger_on_first_use=False,
    )


def configure_from_settings(settings: Settings) -> None:
    configure_logging(settings.log_level, settings.log_format)

from __future__ import annotations

import logging
from typing import Any

import structlog


def resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    value = getattr(logging, level.upper(), logging.INFO)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: str | int = logging.INFO, *, json_logs: bool = True) -> None:
    numeric = resolve_level(level)
    logging.basicConfig(format="%(message)s", level=numeric)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=True,
    )


def get_logger(**initial_values: Any) -> Any:
    # lazy proxy: module-level loggers pick up configure_logging() on first use
    return structlog.get_logger(**initial_values)


__all__ = ["configure_logging", "get_logger", "resolve_level"]

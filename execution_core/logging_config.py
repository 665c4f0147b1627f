"""
Logging Configuration Module
============================

Centralized logging setup for the execution core.

Features:
- Module-specific log level overrides
- Correlation ids carried across async calls (contextvars)
- Optional JSON output for log aggregation
- Optional rotating file handler
"""

from __future__ import annotations

import contextvars
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator


# Module-specific log level defaults
MODULE_LOG_LEVELS = {
    "execution_core.atomic_engine": logging.INFO,
    "execution_core.orchestrator": logging.INFO,
    "execution_core.venue": logging.INFO,
    "execution_core.slippage_gate": logging.INFO,
    "execution_core.tca_analyzer": logging.INFO,
    "execution_core.execution_rl": logging.WARNING,
    "execution_core.state_store": logging.WARNING,
    "ccxt": logging.WARNING,
}

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    'correlation_id', default=None
)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None = None) -> str:
    """
    Set a correlation id in the current context. Generates one if not provided.

    Returns:
        The correlation id that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())[:8]
    _correlation_id.set(correlation_id)
    return correlation_id


def clear_correlation_id() -> None:
    _correlation_id.set(None)


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """Set a correlation id for the enclosed block and restore the previous one."""
    token = _correlation_id.set(correlation_id or str(uuid.uuid4())[:8])
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Adds correlation_id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {"timestamp": "...", "level": "INFO", "logger": "...", "message": "...",
     "correlation_id": "abc12345"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None),
        }
        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


@dataclass
class LoggingConfig:
    """
    Centralized logging configuration.
    """
    root_level: int = logging.INFO
    format_string: str = "%(asctime)s | %(correlation_id)s | %(levelname)-8s | %(name)s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    module_levels: dict[str, int] = field(default_factory=lambda: MODULE_LOG_LEVELS.copy())
    json_format: bool = False
    log_file: str | None = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    @classmethod
    def from_dict(cls, config: dict[str, Any] | None) -> "LoggingConfig":
        """Build from the `logging` config section. Levels may be names or ints."""
        config = config or {}
        levels = MODULE_LOG_LEVELS.copy()
        for module_name, level in (config.get("module_levels") or {}).items():
            levels[module_name] = _parse_level(level)
        return cls(
            root_level=_parse_level(config.get("level", logging.INFO)),
            module_levels=levels,
            json_format=bool(config.get("json", False)),
            log_file=config.get("file"),
            max_bytes=config.get("max_bytes", 10 * 1024 * 1024),
            backup_count=config.get("backup_count", 5),
        )

    def apply(self) -> None:
        """Replace root handlers and apply module levels."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.root_level)
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        if self.json_format:
            formatter: logging.Formatter = StructuredJsonFormatter()
        else:
            formatter = logging.Formatter(self.format_string, self.date_format)
        correlation_filter = CorrelationIdFilter()

        handlers: list[logging.Handler] = [logging.StreamHandler()]
        if self.log_file:
            Path(self.log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(RotatingFileHandler(
                self.log_file,
                maxBytes=self.max_bytes,
                backupCount=self.backup_count,
                encoding="utf-8",
            ))
        for handler in handlers:
            handler.setLevel(self.root_level)
            handler.setFormatter(formatter)
            handler.addFilter(correlation_filter)
            root_logger.addHandler(handler)

        for module_name, level in self.module_levels.items():
            logging.getLogger(module_name).setLevel(level)

    def set_module_level(self, module_name: str, level: int) -> None:
        self.module_levels[module_name] = level
        logging.getLogger(module_name).setLevel(level)

    def set_all_debug(self) -> None:
        for module_name in self.module_levels:
            self.set_module_level(module_name, logging.DEBUG)


def _parse_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value

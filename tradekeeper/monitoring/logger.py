"""
Structured logging for the engine.

structlog over stdlib logging. Every component logs UPPER_SNAKE event names
with keyword context; the engine binds ``trading_mode`` and ``wallet_id``
once so loop output carries them without threading them through each call.
"""
import logging
import sys
from decimal import Decimal
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

import structlog


def _plain_values(_logger: Any, _method: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Render Decimal and Enum values as their plain string form."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
        elif isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structlog and the root handler(s).

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" for machine output, anything else for the console renderer
        log_file: Optional file that also receives every line (rotated at 10MB, 5 backups)
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _plain_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(handler)

    get_logger(__name__).info("LOGGING_CONFIGURED", log_level=log_level, log_format=log_format, log_file=log_file)


def bind_engine_context(**context: Any) -> None:
    """Attach context (e.g. trading_mode, wallet_id) to every subsequent log line."""
    structlog.contextvars.bind_contextvars(**context)


def clear_engine_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)

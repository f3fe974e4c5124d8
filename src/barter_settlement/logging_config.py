"""Structured logging for the settlement engine (structlog over stdlib logging).

Production writes one JSON object per line; development gets the colored
console renderer. Events are dotted names (``swap.terminated``,
``ledger.transfer``, ``sweep.auto_cancel.finished``) and carry ids as
fields. The request middleware binds ``request_id`` into the context, so
every line a request produces can be correlated.

Usage:
    from barter_settlement.logging_config import setup_logging, get_logger
    setup_logging(log_level="INFO", json_logs=True)
    logger = get_logger(__name__)
    logger.info("swap.accepted", swap_id=swap.id, risk_tier="low")
"""

from __future__ import annotations

import enum
import logging
import sys
import uuid
from decimal import Decimal
from typing import Any

import structlog

SERVICE_NAME = "barter-settlement"

_QUIET_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "aiosqlite",
    "asyncio",
    "httpx",
    "httpcore",
)


def _stringify_domain_values(
    _logger: Any, _method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Render UUIDs, Decimals and enum members as plain strings."""
    for key, value in event_dict.items():
        if isinstance(value, uuid.UUID | Decimal):
            event_dict[key] = str(value)
        elif isinstance(value, enum.Enum):
            event_dict[key] = str(value.value)
    return event_dict


def _add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Route structlog and stdlib logging through one handler on stdout.

    Args:
        log_level: Standard level name; unknown names fall back to INFO.
        json_logs: JSON lines for log shipping instead of the console renderer.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stringify_domain_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        shared_processors.append(_add_service)
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        final_processors: list[structlog.types.Processor] = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ]
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        final_processors = [structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=final_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Logger bound to ``name`` (normally the module's ``__name__``)."""
    return structlog.get_logger(name)

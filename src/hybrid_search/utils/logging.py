"""Structlog setup: JSON lines in production, console output elsewhere."""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog

_SECRET_KEYS = frozenset({"api_key", "authorization", "x-api-key", "token", "password"})
_QUIET_IN_PRODUCTION = ("httpx", "httpcore", "uvicorn.access")


def redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]  # noqa: ANN401
) -> MutableMapping[str, Any]:
    """Mask values logged under credential-like keys."""
    for key in event_dict:
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = "***"
    return event_dict


def _renderer(environment: str) -> structlog.types.Processor:
    if environment == "production":
        return structlog.processors.JSONRenderer()
    # Colour codes would clutter captured test output.
    return structlog.dev.ConsoleRenderer(colors=environment == "development")


def configure_logging(environment: str, log_level: str = "INFO") -> None:
    """Configure structlog and route stdlib logging through it.

    Every entry carries the context bound with
    :func:`structlog.contextvars.bound_contextvars`, which is how a search
    request's ``request_id`` reaches the executor and transport logs.

    Args:
        environment: ``"production"`` for JSON lines; ``"development"`` for a
            colourised console; anything else (e.g. ``"test"``) for plain console.
        log_level:   Standard Python log-level name, e.g. ``"INFO"``.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(environment),
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    if environment == "production":
        for name in _QUIET_IN_PRODUCTION:
            logging.getLogger(name).setLevel(logging.WARNING)

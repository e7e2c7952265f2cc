"""Structlog setup for the API process and per-request log context."""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any

import structlog

# Chatty at INFO; only their warnings are kept in production.
_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "sentence_transformers", "transformers")


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _renderer(environment: str) -> structlog.types.Processor:
    if environment == "production":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging(environment: str, log_level: str = "INFO") -> None:
    """Route structlog and stdlib records through one stdout handler.

    ``production`` renders one JSON object per line and quietens the HTTP and
    model libraries; every other environment uses the console renderer.

    Args:
        environment: Deployment name from settings.
        log_level:   Level name such as ``"DEBUG"``; unknown names mean INFO.
    """
    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(environment), foreign_pre_chain=pre_chain
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    quiet = logging.WARNING if environment == "production" else logging.INFO
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)


def bind_search_context(**context: Any) -> str:
    """Start a fresh log context for one search request.

    Every event logged afterwards in this task (and in tasks it spawns)
    carries ``search_id`` plus *context*.

    Returns:
        The generated ``search_id``.
    """
    search_id = uuid.uuid4().hex[:12]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(search_id=search_id, **context)
    return search_id

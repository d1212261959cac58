"""structlog setup shared by the CLI, the wizard and the setup API.

Every record, whether emitted through structlog or a stdlib
``logging.getLogger(__name__)`` logger, passes through the same processor
chain: correlation ids from context, level, logger name, ISO timestamp,
access-token scrubbing and finally a console or JSON renderer.

Usage::

    from folio_setup.observability.logging import configure_logging, get_logger

    configure_logging(json_output=True)
    get_logger(__name__).info("provision_started", region="us-east-1")
"""

from __future__ import annotations

import logging
import os
import re
import sys
from contextvars import ContextVar
from typing import Any

import structlog

# Correlation id of the setup API request being served.
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# Name of the wizard operation (provision, run_migration, ...) in flight.
operation_ctx: ContextVar[str | None] = ContextVar("operation", default=None)

REDACTED = "sbp_[redacted]"
_ACCESS_TOKEN_RE = re.compile(r"sbp_[A-Za-z0-9_]+")

# Libraries whose INFO output is request-level noise.
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

_configured = False


def _add_correlation(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    for key, var in (("request_id", request_id_ctx), ("operation", operation_ctx)):
        value = var.get()
        if value is not None:
            event_dict[key] = value
    return event_dict


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _ACCESS_TOKEN_RE.sub(REDACTED, value)
    return value


def _redact_access_tokens(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Replace anything shaped like a Management API token."""
    return {key: _scrub(value) for key, value in event_dict.items()}


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        _add_correlation,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        _redact_access_tokens,
    ]


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Install the structlog pipeline on the root logger. Runs once per process.

    Args:
        level: Level name. Falls back to ``LOG_LEVEL``, then INFO.
        json_output: JSON lines instead of console output. Falls back to
            ``LOG_FORMAT == "json"``.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT") == "json"

    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def reset_logging_for_tests() -> None:
    global _configured
    _configured = False
    structlog.reset_defaults()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

"""Observability helpers (structured logging)."""

from .logging import configure_logging, get_logger, operation_ctx, request_id_ctx

__all__ = [
    "configure_logging",
    "get_logger",
    "operation_ctx",
    "request_id_ctx",
]

"""Observability: structured logging and the per-run event channel."""

from shellgate.observability.events import DispatchError, EventChannel, Subscriber
from shellgate.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "EventChannel",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "Subscriber",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]

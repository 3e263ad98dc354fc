"""Observability exports: structlog configuration and correlation helpers."""

from taskwave.observability.logging import (
    LogFormat,
    LoggingConfig,
    bound_task,
    configure_logging,
    logging_config_from_mapping,
    redact_event,
    redact_text,
)

__all__ = [
    "LogFormat",
    "LoggingConfig",
    "bound_task",
    "configure_logging",
    "logging_config_from_mapping",
    "redact_event",
    "redact_text",
]

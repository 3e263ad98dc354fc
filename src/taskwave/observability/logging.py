"""Structured logging setup built on structlog with secret redaction."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

import structlog

LogFormat = Literal["json", "console"]

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_ROOT_LOGGER_NAME: Final[str] = "taskwave"
_HANDLER_MARKER: Final[str] = "_taskwave_handler"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
    "client_secret",
    "access_token",
    "refresh_token",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_PROVIDER_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Logging knobs mirrored from the ``[observability]`` config section."""

    level: int | str = "INFO"
    fmt: LogFormat = "json"
    log_file: Path | str | None = None
    redact_secrets: bool = True


def logging_config_from_mapping(observability: Mapping[str, object] | None) -> LoggingConfig:
    """Build :class:`LoggingConfig` from an ``[observability]`` mapping."""

    section = dict(observability or {})
    level = section.get("log_level", "INFO")
    fmt = section.get("log_format", "json")
    log_file = section.get("log_file")
    return LoggingConfig(
        level=level if isinstance(level, (int, str)) else "INFO",
        fmt="console" if fmt == "console" else "json",
        log_file=log_file if isinstance(log_file, (str, Path)) and str(log_file) else None,
        redact_secrets=bool(section.get("redact_secrets", True)),
    )


def configure_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """
    Route structlog events through stdlib handlers on the ``taskwave`` logger.

    Calling this again replaces the handlers installed by a previous call.
    """

    resolved = config or LoggingConfig()
    level = _parse_log_level(resolved.level)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if resolved.redact_secrets:
        shared_processors.append(redact_event)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    renderer: Any
    if resolved.fmt == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    for existing in list(logger.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            logger.removeHandler(existing)
            existing.close()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if resolved.log_file is not None:
        log_path = Path(resolved.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    for handler in handlers:
        setattr(handler, _HANDLER_MARKER, True)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(level)
    logger.propagate = False
    return logger


@contextmanager
def bound_task(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields (``task_id``, ``wave`` ...) for log events in scope."""

    present = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**present):
        yield


def redact_event(
    _logger: object, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor that masks secret-looking keys and inline credentials."""

    for key in list(event_dict):
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


def redact_text(text: str) -> str:
    """Mask inline credentials in free text such as captured command output."""

    return _redact_string(text)


def _redact_value(value: object, *, key_context: str | None) -> object:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, tuple):
        return tuple(_redact_value(item, key_context=None) for item in value)
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=str(key)) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _PROVIDER_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value

    if not isinstance(value, str):
        raise ValueError(f"level must be int or str, got {type(value).__name__}")

    normalized = value.strip().upper()
    parsed = logging.getLevelName(normalized)
    if isinstance(parsed, int):
        return parsed

    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "LogFormat",
    "LoggingConfig",
    "bound_task",
    "configure_logging",
    "logging_config_from_mapping",
    "redact_event",
    "redact_text",
]

"""
taskwave — unit tests for observability logging

File: tests/unit/observability/test_logging.py
Last updated: 2026-10-18

Purpose
- Validate structured JSON logging with redaction and task correlation fields.

What this test file should cover
- JSON line validity and redaction guarantees.
- Correlation field propagation through ``bound_task``.
- Handler replacement on reconfiguration.
- Config mapping and level parsing.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pytest
import structlog

from taskwave.observability.logging import (
    _HANDLER_MARKER,
    LoggingConfig,
    bound_task,
    configure_logging,
    logging_config_from_mapping,
    redact_text,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    logger = logging.getLogger("taskwave")
    original_handlers = list(logger.handlers)
    original_propagate = logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in original_handlers:
            logger.removeHandler(handler)
            handler.close()
    for handler in original_handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    logger.propagate = original_propagate
    structlog.reset_defaults()


def _owned_handlers(logger: logging.Logger) -> list[logging.Handler]:
    return [handler for handler in logger.handlers if getattr(handler, _HANDLER_MARKER, False)]


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def _flush(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        handler.flush()


def test_json_logging_redacts_secrets_and_binds_task_fields(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "taskwave.jsonl"
    root = configure_logging(LoggingConfig(level="INFO", log_file=log_path))
    logger = structlog.get_logger("taskwave.tests")

    with bound_task(task_id="T-1", wave=0, worktree=None):
        logger.info(
            "task_started",
            api_key="sk-FAKE",
            detail="token=tok-FAKE and Bearer abc.def",
            nested={"password": "hunter2", "safe": "ok"},
        )
    logger.info("after_scope")
    _flush(root)

    first, second = _read_json_lines(log_path)
    assert first["event"] == "task_started"
    assert first["level"] == "info"
    assert first["logger"] == "taskwave.tests"
    assert first["task_id"] == "T-1"
    assert first["wave"] == 0
    assert "worktree" not in first
    assert first["api_key"] == "***REDACTED***"
    assert first["detail"] == "token=***REDACTED*** and Bearer ***REDACTED***"
    assert first["nested"] == {"password": "***REDACTED***", "safe": "ok"}
    assert "task_id" not in second


def test_level_filtering(tmp_path: Path) -> None:
    log_path = tmp_path / "taskwave.jsonl"
    root = configure_logging(LoggingConfig(level="WARNING", log_file=log_path))
    logger = structlog.get_logger("taskwave.tests")

    logger.info("hidden")
    logger.warning("shown")
    _flush(root)

    assert [item["event"] for item in _read_json_lines(log_path)] == ["shown"]


def test_reconfiguring_replaces_previous_handlers(tmp_path: Path) -> None:
    first = configure_logging(LoggingConfig(log_file=tmp_path / "one.jsonl"))
    previous = _owned_handlers(first)
    root = configure_logging(LoggingConfig(fmt="console"))

    owned = _owned_handlers(root)
    assert len(owned) == 1
    assert not any(handler in root.handlers for handler in previous)
    assert root.propagate is False


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    log_path = tmp_path / "taskwave.jsonl"
    root = configure_logging(LoggingConfig(log_file=log_path, redact_secrets=False))
    structlog.get_logger("taskwave.tests").info("credentials_logged", api_key="visible")
    _flush(root)
    assert _read_json_lines(log_path)[0]["api_key"] == "visible"


def test_logging_config_from_mapping() -> None:
    config = logging_config_from_mapping(
        {"log_level": "DEBUG", "log_format": "console", "log_file": "", "redact_secrets": False}
    )
    assert config == LoggingConfig(level="DEBUG", fmt="console", log_file=None, redact_secrets=False)
    assert logging_config_from_mapping(None) == LoggingConfig()
    assert logging_config_from_mapping({"log_format": "xml"}).fmt == "json"


def test_unsupported_level_is_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported logging level"):
        configure_logging(LoggingConfig(level="LOUD"))


def test_redact_text_masks_provider_keys() -> None:
    text = redact_text("key sk-ant-abcdefghijklmnop and password: hunter2")
    assert "abcdefghijklmnop" not in text
    assert "hunter2" not in text
    assert text.startswith("key ***REDACTED***")

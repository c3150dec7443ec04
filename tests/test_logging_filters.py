"""Tests for sensitive data filtering and invocation correlation in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest

from botkit.core.config import LogSettings
from botkit.core.logging import (
    InvocationContextFilter,
    JsonFormatter,
    SensitiveDataFilter,
    bind_invocation,
    clear_invocation_id,
    configure_logging,
    reset_invocation,
    set_invocation_id,
)


def _capture(name: str) -> tuple[logging.Logger, StringIO]:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(InvocationContextFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger, stream


def test_sensitive_filter_redacts_tokens():
    """Ensure bot tokens and secrets never reach the log output."""

    logger, stream = _capture("test_redaction")

    logger.info(
        "gateway.connect",
        extra={
            "bot_token": "MTA-secret-token",
            "Client_Secret": "another-secret",
            "safe_field": "visible",
        },
    )

    output = stream.getvalue()

    assert "MTA-secret-token" not in output
    assert "another-secret" not in output
    assert "[REDACTED]" in output
    assert "visible" in output


def test_sensitive_filter_redacts_message_content():
    """User message bodies are personal data and are redacted."""

    logger, stream = _capture("test_content_redaction")

    logger.info(
        "message.received",
        extra={"message_content": "my address is 1 Main St", "length": 22},
    )

    output = stream.getvalue()

    assert "1 Main St" not in output
    assert "length" in output


def test_sensitive_filter_allows_safe_fields():
    """Verify safe fields pass through unmodified."""

    logger, stream = _capture("test_safe_fields")

    logger.info(
        "command.finished",
        extra={"command": "ping", "user_id": "u-123", "duration_ms": 150.5},
    )

    payload = json.loads(stream.getvalue())

    assert payload["command"] == "ping"
    assert payload["user_id"] == "u-123"
    assert payload["duration_ms"] == 150.5
    assert "[REDACTED]" not in stream.getvalue()


def test_sensitive_filter_redacts_nested_dicts():
    """Ensure nested sensitive fields are redacted."""

    logger, stream = _capture("test_nested")

    logger.info(
        "webhook.sent",
        extra={
            "request": {"authorization": "Bot abc", "route": "/channels"},
            "items": [{"password": "hunter2"}],
        },
    )

    output = stream.getvalue()

    assert "Bot abc" not in output
    assert "hunter2" not in output
    assert "/channels" in output


def test_invocation_id_attached_from_context():
    logger, stream = _capture("test_invocation_id")

    set_invocation_id("inv-42")
    try:
        logger.info("cache.hit")
    finally:
        clear_invocation_id()
    logger.info("cache.miss")

    first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert first["invocation_id"] == "inv-42"
    assert "invocation_id" not in second


def test_invocation_command_and_user_in_records():
    logger, stream = _capture("test_invocation_context")

    token = bind_invocation("inv-7", command="ping", user_id="u-9")
    try:
        logger.info("rate_limit.checked")
        logger.info("plugin.hook", extra={"command": "override"})
    finally:
        reset_invocation(token)

    first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert first["invocation_id"] == "inv-7"
    assert first["command"] == "ping"
    assert first["user_id"] == "u-9"
    assert second["command"] == "override"


def test_exceptions_are_formatted():
    logger, stream = _capture("test_exc_info")

    try:
        raise ValueError("bad value")
    except ValueError:
        logger.exception("periodic_task.failed")

    payload = json.loads(stream.getvalue())
    assert payload["level"] == "error"
    assert "ValueError: bad value" in payload["exc_info"]


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_configure_logging_plain_stdout(restore_root_logger):
    configure_logging(LogSettings(level="debug", format="plain", output="stdout"))

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert not isinstance(root.handlers[0].formatter, JsonFormatter)
    assert logging.getLogger("asyncio").level == logging.WARNING


def test_configure_logging_rotating_file(restore_root_logger, tmp_path):
    log_file = tmp_path / "logs" / "bot.log"

    configure_logging(LogSettings(output="file", file_path=str(log_file)))
    logging.getLogger("botkit.test").warning("file.written", extra={"token": "abc"})
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = log_file.read_text()
    assert "file.written" in content
    assert "abc" not in content

"""Logging utilities with JSON formatting, redaction, and invocation correlation.

This module centralizes logging configuration, including:
- The invocation context (id, command, user) carried in a context variable
  so every log line emitted while a command runs can be traced back to it
- Sensitive data redaction on log records
- JSON formatter for machine-friendly logs
- Configurable stdout/file handlers with rotation support
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from botkit.core.config import LogSettings, settings

REDACTED = "[REDACTED]"

# Keys whose values never reach the log output, matched case-insensitively
SENSITIVE_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "token",
        "bot_token",
        "discord_token",
        "api_key",
        "authorization",
        "secret",
        "client_secret",
        "password",
        "cookie",
        "webhook_url",
        "message_content",
    }
)

# Standard LogRecord attributes; everything else on a record came from ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "stack"}


@dataclass(frozen=True)
class InvocationContext:
    """Identifies the command invocation a log line belongs to."""

    invocation_id: str
    command: str | None = None
    user_id: str | None = None

    def as_log_fields(self) -> dict[str, str]:
        return {key: value for key, value in asdict(self).items() if value is not None}


_invocation_var: ContextVar[InvocationContext | None] = ContextVar(
    "invocation_context", default=None
)


def bind_invocation(
    invocation_id: str,
    *,
    command: str | None = None,
    user_id: str | None = None,
) -> Token:
    """Make ``invocation_id`` (and optionally command and user) current.

    Returns:
        Token for ``reset_invocation``, which restores whatever was bound
        before, so nested invocations unwind correctly.
    """

    return _invocation_var.set(InvocationContext(invocation_id, command, user_id))


def reset_invocation(token: Token) -> None:
    _invocation_var.reset(token)


def get_invocation_context() -> InvocationContext | None:
    return _invocation_var.get()


def set_invocation_id(invocation_id: str | None) -> None:
    """Bind a bare invocation id, or unbind with None."""

    _invocation_var.set(InvocationContext(invocation_id) if invocation_id else None)


def get_invocation_id() -> str | None:
    context = _invocation_var.get()
    return context.invocation_id if context else None


def clear_invocation_id() -> None:
    _invocation_var.set(None)


def redact(value: Any, sensitive_keys: frozenset[str] | set[str]) -> Any:
    """Replace values stored under sensitive keys, descending into containers.

    Args:
        value: Arbitrary value from log record extras.
        sensitive_keys: Lower-cased key names to hide.

    Returns:
        A copy of mappings, lists and tuples with sensitive values replaced by
        ``REDACTED``; any other value unchanged.
    """

    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in sensitive_keys else redact(item, sensitive_keys)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact(item, sensitive_keys) for item in value)
    return value


def record_extras(record: LogRecord, sensitive_keys: frozenset[str] | set[str]) -> dict[str, Any]:
    """Collect the ``extra`` fields of a record, redacted."""

    extras = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }
    return redact(extras, sensitive_keys)


class InvocationContextFilter(logging.Filter):
    """Copy the current invocation context onto records that lack it.

    Fields passed explicitly through ``extra`` win over the context.
    """

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        context = get_invocation_context()
        if context is not None:
            for key, value in context.as_log_fields().items():
                if getattr(record, key, None) is None:
                    setattr(record, key, value)
        return True


class SensitiveDataFilter(logging.Filter):
    """Redact sensitive fields on the record before any formatter sees it."""

    def __init__(self, sensitive_keys: Iterable[str] | None = None) -> None:
        super().__init__()
        self.sensitive_keys = frozenset(k.lower() for k in sensitive_keys or SENSITIVE_KEYS_DEFAULT)

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        for key, value in record_extras(record, self.sensitive_keys).items():
            setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Layout: timestamp, level, logger, message, then the invocation context
    (``invocation_id``, ``command``, ``user_id``) when one is bound, then the
    record's extras, then ``exc_info`` for exceptions.
    """

    def __init__(
        self,
        *,
        sensitive_keys: Iterable[str] | None = None,
        ensure_ascii: bool = True,
    ) -> None:
        super().__init__()
        self.sensitive_keys = frozenset(k.lower() for k in sensitive_keys or SENSITIVE_KEYS_DEFAULT)
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = get_invocation_context()
        if context is not None:
            payload.update(context.as_log_fields())
        payload.update(record_extras(record, self.sensitive_keys))

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=self.ensure_ascii)


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    """Construct the logging handler based on configuration.

    Args:
        log_settings: Resolved logging settings from environment.

    Returns:
        Configured logging handler (stdout or rotating file).
    """

    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    file_path = Path(log_settings.file_path or "logs/bot.log")
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if log_settings.max_bytes:
        return RotatingFileHandler(
            file_path,
            maxBytes=log_settings.max_bytes,
            backupCount=log_settings.backup_count,
            encoding="utf-8",
        )
    return logging.FileHandler(file_path, encoding="utf-8")


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Configure root logger with JSON formatter and redaction.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.
    """

    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(InvocationContextFilter())
    handler.addFilter(SensitiveDataFilter())

    if cfg.format.lower() == "plain":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # asyncio debug chatter drowns out bot events at DEBUG level
    logging.getLogger("asyncio").setLevel(logging.WARNING)

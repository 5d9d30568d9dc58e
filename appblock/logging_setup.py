# -*- coding: utf-8 -*-
"""
Logging helpers for appblock.

- Context via contextvars: operation and rule_id, attached to every record
- Secret redaction (keys and inline patterns) before any handler formats a record
- configure_logging(settings): dictConfig built by AppSettings.logging_dict_config()

JSON output goes through python-json-logger; the filters below are wired in
by name from the dictConfig.
"""
from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.config
import re
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional

if TYPE_CHECKING:
    from appblock.settings import AppSettings

__all__ = [
    "ContextFilter",
    "RedactionFilter",
    "configure_logging",
    "log_context",
]

# -----------------------------
# Context variables
# -----------------------------
_cv_operation: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("operation", default=None)
_cv_rule_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("rule_id", default=None)


@contextlib.contextmanager
def log_context(operation: Optional[str] = None, rule_id: Optional[str] = None) -> Iterator[None]:
    """Set operation and rule_id for log records in this scope; restores the previous values on exit."""
    tokens = []
    if operation is not None:
        tokens.append((_cv_operation, _cv_operation.set(operation)))
    if rule_id is not None:
        tokens.append((_cv_rule_id, _cv_rule_id.set(rule_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


# -----------------------------
# Redaction
# -----------------------------
# LogRecord attributes that never carry user data
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_CREDENTIAL_KEYS = re.compile(r"(?i)^(password|credential|token|csrf[_-]?token|authorization|cookie)$")
_INLINE_CREDENTIAL = re.compile(r"(?i)\b(password|secret|token|credential|api[_-]?key)\b(\s*[:=]\s*)([^\s'\",;]+)")
_BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")


def _mask(value: Any) -> Any:
    if isinstance(value, str):
        value = _BEARER_RE.sub("Bearer ***", value)
        return _INLINE_CREDENTIAL.sub(lambda m: f"{m.group(1)}{m.group(2)}***", value)
    if isinstance(value, Mapping):
        return {k: "***" if _CREDENTIAL_KEYS.match(str(k)) else _mask(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask(v) for v in value]
    return value


# -----------------------------
# Filters
# -----------------------------
class ContextFilter(logging.Filter):
    """Attach operation/rule_id from contextvars to the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "operation"):
            record.operation = _cv_operation.get() or "-"
        if not hasattr(record, "rule_id"):
            record.rule_id = _cv_rule_id.get() or "-"
        return True


class RedactionFilter(logging.Filter):
    """
    Mask controller credentials before any handler formats the record.

    The message is rendered here so a token passed as a %-argument is caught
    too; extra fields named like credentials are replaced wholesale.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            rendered = record.getMessage()
        except (TypeError, ValueError):
            # broken format string; the handler reports it
            return True
        record.msg, record.args = _mask(rendered), None
        for key, value in list(vars(record).items()):
            if key in _RECORD_ATTRS:
                continue
            setattr(record, key, "***" if _CREDENTIAL_KEYS.match(key) else _mask(value))
        return True


def configure_logging(settings: "AppSettings") -> None:
    logging.config.dictConfig(settings.logging_dict_config())
    logging.getLogger("appblock").debug(
        "Logging configured", extra={"log_format": settings.logging.format.value, "app": settings.app_name}
    )

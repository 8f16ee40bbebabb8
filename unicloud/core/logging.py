"""Logging setup for unicloud.

Every record carries the cloud context it was emitted in: the operation id,
and the provider, account and operation of the session call in progress.
``log_context`` scopes that context; errors logged with ``exc_info`` add
whatever context their ``CloudProviderError`` carries.
"""

import json
import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from unicloud.core.exceptions import CloudProviderError

CONTEXT_FIELDS = ("provider_id", "account_id", "operation")

operation_id_var: ContextVar[str] = ContextVar("operation_id", default="")
cloud_context_var: ContextVar[dict[str, str] | None] = ContextVar("cloud_context", default=None)


@contextmanager
def log_context(**fields: str | None) -> Iterator[None]:
    """Attach provider/account/operation fields to records logged inside the block."""
    current = cloud_context_var.get() or {}
    token = cloud_context_var.set({**current, **{name: value for name, value in fields.items() if value}})
    try:
        yield
    finally:
        cloud_context_var.reset(token)


def current_context() -> dict[str, str]:
    return dict(cloud_context_var.get() or {})


class CloudContextFilter(logging.Filter):
    """Stamps ``operation_id`` and ``cloud`` onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context: dict[str, Any] = current_context()
        error = record.exc_info[1] if record.exc_info else None
        if isinstance(error, CloudProviderError):
            for name in CONTEXT_FIELDS:
                value = getattr(error, name)
                if value:
                    context.setdefault(name, value)
            if error.status_code is not None:
                context["status_code"] = error.status_code
            context["error"] = type(error).__name__

        record.operation_id = operation_id_var.get()
        record.cloud = context
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, cloud context at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        operation_id = getattr(record, "operation_id", "")
        if operation_id:
            log_data["operation_id"] = operation_id
        log_data.update(getattr(record, "cloud", None) or {})

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Readable single-line format, e.g. ``[3f2a9c1d] box/alice upload_file``."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _prefix(record: logging.LogRecord) -> str:
        parts = []
        operation_id = getattr(record, "operation_id", "")
        if operation_id:
            parts.append(f"[{operation_id[:8]}]")

        cloud = getattr(record, "cloud", None) or {}
        owner = "/".join(cloud[name] for name in ("provider_id", "account_id") if cloud.get(name))
        if owner:
            parts.append(owner)
        if cloud.get("operation"):
            parts.append(cloud["operation"])
        return " ".join(parts) + " " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET if color else ""
        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        message = (
            f"{timestamp} {color}{record.levelname:8}{reset} "
            f"{self._prefix(record)}{record.name}: {record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(debug: bool = False, json_logs: bool = False, level: str | None = None) -> None:
    """Configure the root logger.

    Args:
        debug: Force DEBUG level.
        json_logs: Emit JSON lines instead of the development format.
        level: Level name used when ``debug`` is off, e.g. ``Settings.LOG_LEVEL``.
    """
    log_level = logging.DEBUG if debug else getattr(logging, (level or "INFO").upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CloudContextFilter())
    handler.setFormatter(JSONFormatter() if json_logs else DevelopmentFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Request-level chatter from the HTTP and SQL layers
    for name in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def generate_operation_id() -> str:
    return uuid.uuid4().hex


def set_operation_id(operation_id: str) -> None:
    operation_id_var.set(operation_id)


def get_operation_id() -> str:
    return operation_id_var.get()

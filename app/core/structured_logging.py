"""
Structured logging with structlog.

Every stdlib ``logging`` call in the service is rendered through structlog:
JSON lines (or a console renderer for local runs) enriched with the
request/correlation ids and the authenticated user id from contextvars.
Fields passed via ``extra={...}`` become top-level keys.

Payment payloads pass through the logs often, so a redaction processor
masks provider secrets, API keys and MSISDNs before rendering.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from contextvars import ContextVar
from typing import Any, Optional

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)

APP_VERSION = "0.4.0"
SERVICE_NAME = "klya-entitlements"

_startup_time: float = time.time()

_SENSITIVE_KEY_PARTS = ("secret", "token", "api_key", "apikey", "authorization", "signature", "password")
_API_KEY_PATTERN = re.compile(r"\bkl_[A-Za-z0-9]+_[A-Za-z0-9_-]+")
# Ghana MSISDNs, local (0241234567) or international (+233241234567)
_MSISDN_PATTERN = re.compile(r"(?<!\d)(?:\+?233|0)(\d{2})\d{4}(\d{3})(?!\d)")


def get_uptime_s() -> float:
    return time.time() - _startup_time


def mask_phone(value: str) -> str:
    return _MSISDN_PATTERN.sub(lambda m: f"***{m.group(1)}****{m.group(2)}", value)


def _redact(key: str, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
        return "[REDACTED]"
    return mask_phone(_API_KEY_PATTERN.sub("kl_[REDACTED]", value))


def _redact_secrets(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: mask secrets, API keys and phone numbers."""
    return {k: _redact(k, v) for k, v in event_dict.items()}


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: inject correlation context from contextvars."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION

    for key, var in (
        ("request_id", request_id_var),
        ("correlation_id", correlation_id_var),
        ("user_id", user_id_var),
    ):
        value = var.get(None)
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_dir: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Configure structlog + the stdlib root logger.

    Defaults come from settings (``KLYA_LOG_LEVEL``, ``KLYA_LOG_FORMAT``,
    ``KLYA_LOG_DIR``). With no log_dir, output goes to stderr only.
    Call once, before the first log line.
    """
    from app.config import settings

    level = logging.getLevelName((log_level or settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    log_format = log_format or settings.log_format
    log_dir = log_dir if log_dir is not None else settings.log_dir

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        _inject_context,
        _redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.dev.ConsoleRenderer(colors=False)
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list = [logging.StreamHandler(sys.stderr)]
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, "klya.jsonl"),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            ))
        except OSError:
            # Read-only filesystem: stderr only
            pass

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for noisy in ("httpcore", "httpx", "asyncio", "alembic.runtime.migration"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

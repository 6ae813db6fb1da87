"""
Structured Logging with Structlog.

Every record carries the service name and version, plus whatever task or
user context the caller has bound. Credentials never reach the output:
the redaction processor masks them before rendering.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from riresume.config import settings

# Event keys whose values are secrets (API keys, webhook signatures, provider tokens)
REDACTED_KEYS = frozenset(
    {"api_key", "x_api_key", "authorization", "stripe_signature", "webhook_secret", "token"}
)

# Chatty client libraries; their request lines duplicate our own events
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "stripe")


def add_service_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential values; short prefixes are kept so keys stay identifiable."""
    for key in REDACTED_KEYS.intersection(event_dict):
        value = event_dict[key]
        event_dict[key] = f"{str(value)[:8]}***" if value else value
    return event_dict


def _renderer() -> Processor:
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Route structlog through the stdlib root logger at LOG_LEVEL.

    JSON output (LOG_FORMAT=json) is one object per line, e.g.
    {"event": "task_failed", "level": "warning", "task_id": "...",
     "service": "riresume-backend", "timestamp": "..."}
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_fields,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        _renderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """Bind context (task id, user id) to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**context):
        yield

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

# Bound by the HTTP middleware for the lifetime of one request
_request_id: ContextVar[Optional[str]] = ContextVar("claimgate_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(value: Optional[str] = None) -> str:
    """Bind ``value`` (or a fresh uuid4) as the request's correlation id and return it."""
    bound = value or uuid.uuid4().hex
    _request_id.set(bound)
    return bound


# Substrings of event keys whose values never reach a log sink intact
_SECRET_KEY_FRAGMENTS = (
    "password",
    "pepper",
    "secret",
    "token",
    "hash",
    "nonce",
    "authorization",
    "email",
)


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _stamp_request_id(
    _logger: Any, _method: str, event: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event.setdefault("correlation_id", request_id)
    return event


def _redact_sensitive(
    _logger: Any, _method: str, event: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credential material and PII before a log line is rendered.

    Only the first and last two characters survive, enough to correlate
    entries without exposing the value.
    """
    for key, value in list(event.items()):
        if key == "event" or not isinstance(value, str):
            continue
        if any(fragment in key.lower() for fragment in _SECRET_KEY_FRAGMENTS):
            event[key] = _mask(value)
    return event


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """JSON lines by default; ``console`` switches to the coloured dev renderer."""
    renderer: list[Any]
    if console:
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _stamp_request_id,
            _redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=_env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_LEAKY_FRAGMENTS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)database\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+",
        r"(?i)(password|pepper|secret|token|key|credential)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
)

_MAX_ERROR_MESSAGE = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL fragments, paths and credential assignments from text bound for a response."""
    if not isinstance(error, str) or not error:
        return "An error occurred"
    cleaned = error
    for pattern in _LEAKY_FRAGMENTS:
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > _MAX_ERROR_MESSAGE:
        cleaned = cleaned[: _MAX_ERROR_MESSAGE - 3] + "..."
    return cleaned

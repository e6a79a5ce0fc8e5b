from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request-scoped id, bound by the HTTP middleware and echoed in error envelopes
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context and return it."""
    value = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    value = correlation_id_var.get()
    if value and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = value
    return event_dict


# Substrings marking a credential-bearing key
_SECRET_KEYS = ("password", "secret", "token", "authorization", "credential")
# Record identifiers that merely contain "token" in their name
_SAFE_KEYS = frozenset({"token_id", "family_id", "token_type", "new_token_id", "session_id"})


def redact_value(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return value[:4] + "***"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask string values of credential-bearing keys, keeping a short prefix."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered in _SAFE_KEYS or not isinstance(value, str):
            continue
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = redact_value(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines are the default; ``dev_mode`` (or ``json_output=False``)
    switches to the colored console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach a client in an error message
_LEAKY_FRAGMENTS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)\b(?:select|insert|update|delete)\b.{0,80}",
        r"(?i)\b(?:psycopg|postgres(?:ql)?|redis)://\S+",
        r"(?i)(?:/srv|/var|/etc|/home|/tmp|/opt|/usr)/\S+",
        r"(?i)\b(?:password|secret|token|credential|key)\b\s*[:=]\s*\S+",
        r"(?i)traceback \(most recent call last\).*",
    )
)
_MAX_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip queries, paths, URLs and credentials from a client-facing message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    cleaned = error
    for pattern in _LEAKY_FRAGMENTS:
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > _MAX_MESSAGE_LENGTH:
        cleaned = cleaned[: _MAX_MESSAGE_LENGTH - 3] + "..."
    return cleaned

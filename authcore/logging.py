from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

REDACTED = "[redacted]"

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Client-supplied request ids are echoed into logs and headers
_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]{1,64}")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, generating one when absent or unsafe."""
    if not correlation_id or not _REQUEST_ID_RE.fullmatch(correlation_id):
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_SENSITIVE_KEY_MARKERS = ("password", "secret", "token", "pepper", "authorization", "email", "key")
# Derived values that are safe to log verbatim
_SAFE_KEYS = frozenset({"email_hash", "token_type"})


def _is_sensitive_key(key: str) -> bool:
    lower_key = key.lower()
    if lower_key in _SAFE_KEYS:
        return False
    return any(marker in lower_key for marker in _SENSITIVE_KEY_MARKERS)


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace string values of credential-like keys wholesale.

    Only the exact names in ``_SAFE_KEYS`` are exempt; ``password_hash`` and
    similar stored digests are masked like any other credential.
    """
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str):
            continue
        if _is_sensitive_key(key):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    JSON lines in production; colored console output when ``development_mode``
    is set or ``json_output`` is off.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def hash_identity(value: str) -> str:
    """Stable, non-reversible stand-in for an email or other identity in logs."""
    return hashlib.sha256(value.encode("utf-8", "surrogatepass")).hexdigest()


_ERROR_SCRUB_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)(select|insert|update|delete)\s+.{0,50}",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+",
        r"(?i)(password|secret|pepper|token|key|credential)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = REDACTED) -> str:
    """Scrub SQL, filesystem paths, credentials and tracebacks from an error string."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _ERROR_SCRUB_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result

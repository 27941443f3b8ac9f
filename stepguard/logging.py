"""Structured logging for stepguard.

Call sites log masked values. ``_redact_pii`` is the backstop in the
processor chain: passcodes and credentials never reach a sink, and a raw
email or phone number that slips through is masked the same way API
responses mask it. The request correlation id rides on structlog's
contextvars so every line emitted while serving a request carries it.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

from stepguard.service.masking import mask_email, mask_phone

_CORRELATION_KEY = "correlation_id"


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get(_CORRELATION_KEY)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the caller's X-Request-ID, or a fresh one, to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(**{_CORRELATION_KEY: cid})
    return cid


_REDACTED = "[redacted]"
_SECRET_FRAGMENTS = ("password", "secret", "token", "api_key", "authorization", "code_hash")
_CODE_KEYS = frozenset({"code", "otp", "passcode"})
_SAFE_KEYS = frozenset({"error_code", "status_code", "smtp_code", "event_code", "token_type"})


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS or not isinstance(value, str):
            continue
        if lower_key in _CODE_KEYS or any(f in lower_key for f in _SECRET_FRAGMENTS):
            event_dict[key] = _REDACTED
        elif "***" in value:
            # already masked
            continue
        elif "email" in lower_key:
            event_dict[key] = mask_email(value)
        elif "phone" in lower_key:
            event_dict[key] = mask_phone(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, console: bool = False
) -> None:
    """Install the processor chain; JSON lines unless a console renderer is asked for."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

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
    console=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

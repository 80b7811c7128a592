from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_SECRET_KEYS = frozenset(
    {
        "password",
        "new_password",
        "current_password",
        "secret",
        "token",
        "access_token",
        "refresh_token",
        "challenge_token",
        "code",
        "backup_code",
        "authorization",
    }
)
_EMAIL_KEYS = frozenset({"email", "to", "account_email"})
_PHONE_KEYS = frozenset({"phone", "phone_number"})


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the caller's X-Request-ID, or a fresh uuid, to this context."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    _request_id.set(cid)
    return cid


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = _request_id.get()
    if cid:
        event_dict.setdefault("request_id", cid)
    return event_dict


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _scrub_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Secrets never reach the sink; emails and phones are partially masked."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or not value:
            continue
        lowered = key.lower()
        if lowered in _SECRET_KEYS:
            event_dict[key] = "[redacted]"
        elif lowered in _EMAIL_KEYS and "@" in value:
            event_dict[key] = _mask_email(value)
        elif lowered in _PHONE_KEYS:
            event_dict[key] = f"***{value[-4:]}" if len(value) > 4 else "***"
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
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
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name).bind(component=name.rsplit(".", 1)[-1])

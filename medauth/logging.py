from __future__ import annotations

import logging
import os
import uuid
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

if TYPE_CHECKING:
    from medauth.service.auth import ClientContext

SECURITY_LOGGER_NAME = "medauth.security"

# Values under these keys never reach a log line
_SECRET_KEYS = ("password", "secret", "token", "authorization")
_REDACTED = "[REDACTED]"


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation ID to every log line until the next request."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def _mask_phone(value: str) -> str:
    digits = [c for c in value if c.isdigit()]
    return "***" + "".join(digits[-2:]) if len(digits) > 2 else _REDACTED


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Drop credentials; mask contact details so entries stay correlatable."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = _REDACTED
        elif not isinstance(value, str):
            continue
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif "phone" in lower_key:
            event_dict[key] = _mask_phone(value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    renderer = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer()]
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_pii,
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
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_security_logger = get_logger(SECURITY_LOGGER_NAME)


def log_security_event(
    event: str,
    *,
    client: Optional["ClientContext"] = None,
    level: str = "warning",
    logger: Optional[Any] = None,
    **fields: Any,
) -> None:
    """Write an entry to the security audit stream.

    Audit entries are kept apart from ordinary error logs: they carry
    ``audit=True`` plus the actor's IP, user agent and requested path so
    credential stuffing and privilege escalation attempts can be detected
    downstream.
    """
    log = logger or _security_logger
    if client is not None:
        fields.setdefault("ip_addr", client.ip_addr)
        fields.setdefault("user_agent", client.user_agent)
        fields.setdefault("path", client.path)
    log_fn = getattr(log, level, log.warning)
    log_fn(event, audit=True, **fields)

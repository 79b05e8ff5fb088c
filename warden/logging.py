from __future__ import annotations

import ipaddress
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID shared by every log line emitted while handling one auth request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = ("password", "secret", "token", "authorization", "email", "hash")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_value(value: str) -> str:
    # Preserve first/last 2 chars for debugging
    return value[:2] + "***" + value[-2:]


def _redact_mapping(data: Dict[str, Any], depth: int = 0) -> Dict[str, Any]:
    for key in list(data.keys()):
        value = data[key]
        if isinstance(value, dict) and depth < 3:
            # Audit details and notification context nest one level down
            data[key] = _redact_mapping(dict(value), depth + 1)
        elif isinstance(key, str) and any(pii in key.lower() for pii in _PII_KEYS):
            if isinstance(value, str) and len(value) > 4:
                data[key] = _mask_value(value)
    return data


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credential and contact fields before rendering."""
    return _redact_mapping(event_dict)


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def mask_email(email: Optional[str]) -> str:
    """Mask an email address for notifications and logs: ``al***@example.com``."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def mask_ip(ip: Optional[str]) -> str:
    """Keep the network part of an address and hide the host part."""
    if not ip:
        return "unknown"
    try:
        parsed = ipaddress.ip_address(ip.strip())
    except ValueError:
        return "unknown"
    if parsed.version == 4:
        octets = str(parsed).split(".")
        return ".".join(octets[:2] + ["x", "x"])
    groups = parsed.exploded.split(":")
    return ":".join(groups[:3] + ["x"] * 5)

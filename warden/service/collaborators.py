from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from warden.logging import get_logger, mask_email
from warden.storage.models import utcnow

logger = get_logger(__name__)


class AuditAction(str, Enum):
    REGISTER = "REGISTER"
    LOGIN = "LOGIN"
    LOGIN_FEDERATED = "LOGIN_FEDERATED"
    REFRESH = "REFRESH"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    SESSION_INVALIDATED = "SESSION_INVALIDATED"
    SESSION_EVICTED = "SESSION_EVICTED"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_SET = "PASSWORD_SET"
    PASSWORD_REMOVE = "PASSWORD_REMOVE"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET = "PASSWORD_RESET"
    ACCOUNT_LINK = "ACCOUNT_LINK"
    ACCOUNT_UNLINK = "ACCOUNT_UNLINK"


class NotificationKind(str, Enum):
    WELCOME = "welcome"
    NEW_DEVICE = "new_device"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_SET = "password_set"
    PASSWORD_REMOVED = "password_removed"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_LINKED = "account_linked"
    ACCOUNT_UNLINKED = "account_unlinked"


@dataclass(frozen=True)
class AuditEvent:
    action: AuditAction
    success: bool
    user_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    error_code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class Notifier(Protocol):
    async def notify(
        self, kind: NotificationKind, email: str, context: Dict[str, Any]
    ) -> None:
        """Deliver a user-facing notice; ``context`` carries masked device/IP data."""
        ...


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log instead of delivering them."""

    async def notify(
        self, kind: NotificationKind, email: str, context: Dict[str, Any]
    ) -> None:
        logger.info(
            "notification_dev_mode",
            kind=kind.value,
            to=mask_email(email),
            **context,
        )


class LoggingAuditSink:
    async def record(self, event: AuditEvent) -> None:
        payload = event.as_dict()
        payload["audit_action"] = payload.pop("action")
        # structlog's TimeStamper owns the "timestamp" key
        payload["occurred_at"] = payload.pop("timestamp")
        logger.info("audit_event", **payload)


class CollaboratorDispatcher:
    """Runs notifier and audit calls with a deadline, swallowing their failures.

    Callers invoke this only after the authoritative state change has
    committed and with no KeyedLock held.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditSink] = None,
        *,
        timeout_seconds: float = 2.0,
    ) -> None:
        self.notifier = notifier or LoggingNotifier()
        self.audit = audit or LoggingAuditSink()
        self.timeout_seconds = timeout_seconds

    async def notify(
        self,
        kind: NotificationKind,
        email: Optional[str],
        **context: Any,
    ) -> None:
        if not email:
            return
        try:
            await asyncio.wait_for(
                self.notifier.notify(kind, email, context), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("notification_failed", kind=kind.value, error="timeout")
        except Exception as exc:
            logger.warning("notification_failed", kind=kind.value, error=str(exc))

    async def audit_event(self, event: AuditEvent) -> None:
        try:
            await asyncio.wait_for(self.audit.record(event), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("audit_write_failed", action=event.action.value, error="timeout")
        except Exception as exc:
            logger.warning("audit_write_failed", action=event.action.value, error=str(exc))

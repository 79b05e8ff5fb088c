from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

DEFAULT_ROLE = "user"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevocationReason(str, Enum):
    """Why a session stopped being active."""

    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    EVICTED = "evicted"
    INVALIDATED = "invalidated"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_REMOVED = "password_removed"
    PASSWORD_RESET = "password_reset"
    EXPIRED = "expired"


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    federated_id: Optional[str] = None
    email_verified: bool = False
    role: str = DEFAULT_ROLE
    is_active: bool = True
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def has_federated_identity(self) -> bool:
        return bool(self.federated_id)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    last_activity_at: datetime
    refresh_expires_at: datetime
    device_fingerprint: str = ""
    device_label: str = "Unknown Device"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    active: bool = True
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[RevocationReason] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        *,
        ttl_minutes: int,
        now: Optional[datetime] = None,
        device_fingerprint: str = "",
        device_label: str = "Unknown Device",
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: Optional[str] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=created,
            last_activity_at=created,
            refresh_expires_at=created + timedelta(minutes=ttl_minutes),
            device_fingerprint=device_fingerprint,
            device_label=device_label,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.refresh_expires_at <= now


@dataclass
class PasswordHistoryEntry:
    user_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    """Single-use reset grant; only the digest of the emailed token is kept."""

    id: str
    user_id: str
    token_hash: str
    email: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        email: str,
        *,
        ttl_minutes: int,
        now: Optional[datetime] = None,
    ) -> "PasswordResetToken":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            email=email,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
        )

    def is_usable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now

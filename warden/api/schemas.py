from __future__ import annotations

import ipaddress
import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.service.errors import ErrorCode

MAX_USER_AGENT_LENGTH = 512
MAX_ASSERTION_LENGTH = 8192
MAX_PASSWORD_INPUT_LENGTH = 1024


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: str) -> str:
    """Validate and canonicalize an email address (lowercased, NFKC)."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class DeviceInfo(BaseModel):
    """Client signals captured when a session is established."""

    model_config = ConfigDict(extra="ignore")

    user_agent: Optional[str] = Field(default=None, max_length=MAX_USER_AGENT_LENGTH)
    ip_address: Optional[str] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    platform: Optional[str] = Field(default=None, max_length=64)
    remember_me: bool = False

    @field_validator("user_agent", "timezone", "platform")
    @classmethod
    def _clean_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = "".join(ch for ch in _normalize_unicode(value) if ch.isprintable()).strip()
        return cleaned or None

    @field_validator("ip_address")
    @classmethod
    def _validate_ip(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        try:
            return str(ipaddress.ip_address(value.strip()))
        except ValueError as exc:
            raise ValueError("ip_address is not a valid IP address") from exc


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return normalize_email(value)


class RegisterRequest(LoginRequest):
    display_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("display_name")
    @classmethod
    def _clean_display_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value).strip() or None


class AssertionRequest(BaseModel):
    assertion: str = Field(..., min_length=1, max_length=MAX_ASSERTION_LENGTH)

    @field_validator("assertion")
    @classmethod
    def _strip_assertion(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("assertion must not be blank")
        return stripped


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        valid = {code.value for code in ErrorCode}
        if value not in valid:
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class UserView(BaseModel):
    """User as exposed to callers; never carries the password hash."""

    id: str
    email: str
    role: str
    email_verified: bool
    is_active: bool
    has_password: bool
    has_federated_identity: bool
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None


class SessionView(BaseModel):
    id: str
    device_label: str
    location: str
    ip_address: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    is_current: bool = False


class TokenBundle(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime


class AuthMethods(BaseModel):
    has_password: bool
    has_federated_identity: bool
    auth_methods: List[str]
    account_type: str
    requirements: List[str]


class LoginResponse(BaseModel):
    user: UserView
    tokens: TokenBundle
    session: SessionView
    is_new_user: bool = False
    is_new_device: bool = False


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


class LogoutResponse(BaseModel):
    sessions_revoked: int


class PasswordChangeResponse(BaseModel):
    sessions_invalidated: int = 0


class LinkResponse(BaseModel):
    user: UserView
    linked: bool


class AccessClaimsView(BaseModel):
    user_id: str
    email: str
    role: str
    session_id: Optional[str] = None
    issued_at: datetime
    expires_at: datetime


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return normalize_email(value)


class PasswordResetRequested(BaseModel):
    """Identical for known and unknown emails."""

    message: str = "If an account with that email exists, reset instructions have been sent"


class ResetTokenStatus(BaseModel):
    email: str
    expires_at: datetime

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import ErrorCode, TokenError
from warden.storage.models import RevocationReason, Session, User, utcnow

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 48


class TokenState(str, Enum):
    ISSUED = "issued"
    ACTIVE = "active"
    REFRESHED = "refreshed"
    EXPIRED = "expired"
    REVOKED = "revoked"


class TokenStore(Protocol):
    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[Session]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> list[Session]: ...

    def deactivate_session(
        self, session_id: str, reason: RevocationReason, at: datetime
    ) -> bool: ...

    def touch_session(
        self, session_id: str, at: datetime, ip_address: Optional[str] = None
    ) -> bool: ...

    def replace_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        refresh_expires_at: datetime,
    ) -> bool: ...


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    role: str

    @classmethod
    def for_user(cls, user: User) -> "TokenClaims":
        return cls(user_id=user.id, email=user.email, role=user.role)


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime
    session_id: Optional[str] = None
    token_id: Optional[str] = None


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    refresh_token_hash: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    refresh_ttl_minutes: int
    expires_in: int


@dataclass(frozen=True)
class RefreshOutcome:
    session: Session
    user: User
    access_token: str
    access_expires_at: datetime
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


def hash_refresh_token(raw_token: str) -> str:
    """Digest stored in place of the refresh token; lookups use this as the key."""
    # surrogatepass keeps lone surrogates from JSON escapes hashable
    return hashlib.sha256(raw_token.encode("utf-8", "surrogatepass")).hexdigest()


class TokenAuthority:
    """Mints, verifies and revokes access/refresh token pairs.

    Access tokens are HS256 JWTs verified from the signature and claims alone.
    Refresh tokens are random opaque strings; only their SHA-256 digest is
    stored on the owning Session, and that digest is the lookup key.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def refresh_ttl_minutes(self, *, remember_me: bool = False) -> int:
        if remember_me:
            return self.settings.remember_me_refresh_ttl_minutes
        return self.settings.refresh_token_ttl_minutes

    # ---------------------------------------------------------------- issuing

    def issue(
        self,
        claims: TokenClaims,
        *,
        session_id: Optional[str] = None,
        remember_me: bool = False,
    ) -> IssuedTokens:
        """Create an access token and a fresh refresh token for ``claims``.

        The pair is ISSUED until the caller registers a Session carrying
        ``refresh_token_hash``; from then on the refresh token is ACTIVE.
        """
        now = self._now()
        access_token, access_exp = self._mint_access(claims, session_id, now)
        raw_refresh = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        ttl_minutes = self.refresh_ttl_minutes(remember_me=remember_me)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=raw_refresh,
            refresh_token_hash=hash_refresh_token(raw_refresh),
            access_expires_at=access_exp,
            refresh_expires_at=now + timedelta(minutes=ttl_minutes),
            refresh_ttl_minutes=ttl_minutes,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def _mint_access(
        self, claims: TokenClaims, session_id: Optional[str], now: datetime
    ) -> tuple[str, datetime]:
        expires_at = now + self.access_ttl
        payload: dict[str, Any] = {
            "sub": claims.user_id,
            "email": claims.email,
            "role": claims.role,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "jti": str(uuid.uuid4()),
            "typ": "access",
        }
        if session_id:
            payload["sid"] = session_id
        return self._encode_jwt(payload), expires_at

    # -------------------------------------------------------------- refreshing

    def refresh(self, raw_refresh_token: str) -> RefreshOutcome:
        """Exchange a refresh token for a new access token.

        Raises TokenError(REFRESH_INVALID) for unknown, revoked or evicted
        tokens and TokenError(REFRESH_EXPIRED) for tokens past their expiry.
        The refresh token itself is rotated only when configured to.
        """
        if not raw_refresh_token:
            raise TokenError(ErrorCode.REFRESH_INVALID)
        token_hash = hash_refresh_token(raw_refresh_token)
        session = self.store.get_session_by_refresh_hash(token_hash)
        if session is None:
            logger.info("refresh_rejected", reason="unknown_token")
            raise TokenError(ErrorCode.REFRESH_INVALID)
        if not session.active:
            if session.revoked_reason == RevocationReason.EXPIRED:
                logger.info("refresh_rejected", reason="expired", session_id=session.id)
                raise TokenError(ErrorCode.REFRESH_EXPIRED)
            logger.info(
                "refresh_rejected",
                reason="revoked",
                session_id=session.id,
                revoked_reason=session.revoked_reason.value if session.revoked_reason else None,
            )
            raise TokenError(ErrorCode.REFRESH_INVALID)

        now = self._now()
        if session.is_expired(now):
            self.store.deactivate_session(session.id, RevocationReason.EXPIRED, now)
            logger.info("refresh_rejected", reason="expired", session_id=session.id)
            raise TokenError(ErrorCode.REFRESH_EXPIRED)

        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            logger.warning("refresh_rejected", reason="user_unavailable", session_id=session.id)
            raise TokenError(ErrorCode.REFRESH_INVALID)

        new_raw: Optional[str] = None
        new_expiry: Optional[datetime] = None
        if self.settings.rotate_refresh_tokens:
            # Rotation replaces the secret but keeps the session's absolute expiry
            new_raw = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
            new_expiry = session.refresh_expires_at
            if not self.store.replace_refresh_hash(
                session.id, token_hash, hash_refresh_token(new_raw), new_expiry
            ):
                logger.info("refresh_rejected", reason="rotation_lost_race", session_id=session.id)
                raise TokenError(ErrorCode.REFRESH_INVALID)

        # Conditional activity update doubles as the check that the session
        # was not revoked or evicted since the lookup above.
        if not self.store.touch_session(session.id, now):
            logger.info("refresh_rejected", reason="revoked_concurrently", session_id=session.id)
            raise TokenError(ErrorCode.REFRESH_INVALID)

        access_token, access_exp = self._mint_access(
            TokenClaims.for_user(user), session.id, now
        )
        return RefreshOutcome(
            session=session,
            user=user,
            access_token=access_token,
            access_expires_at=access_exp,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_token=new_raw,
            refresh_expires_at=new_expiry,
        )

    def refresh_state(self, raw_refresh_token: str) -> Optional[TokenState]:
        """Lifecycle state of a refresh token, or None when no session holds it.

        Tokens that were issued but never registered, or rotated away, are
        unknown to the store and report None.
        """
        session = self.store.get_session_by_refresh_hash(hash_refresh_token(raw_refresh_token))
        if session is None:
            return None
        if session.active:
            if session.is_expired(self._now()):
                return TokenState.EXPIRED
            if session.last_activity_at > session.created_at:
                return TokenState.REFRESHED
            return TokenState.ACTIVE
        if session.revoked_reason == RevocationReason.EXPIRED:
            return TokenState.EXPIRED
        return TokenState.REVOKED

    # --------------------------------------------------------------- revoking

    def revoke(
        self, session_id: str, reason: RevocationReason = RevocationReason.LOGOUT
    ) -> bool:
        """Retire the refresh token bound to ``session_id``. Idempotent."""
        changed = self.store.deactivate_session(session_id, reason, self._now())
        if changed:
            logger.info("session_tokens_revoked", session_id=session_id, reason=reason.value)
        return changed

    def revoke_all(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: RevocationReason = RevocationReason.LOGOUT_ALL,
    ) -> int:
        now = self._now()
        revoked = 0
        for session in self.store.list_sessions(user_id, active_only=True):
            if except_session_id and session.id == except_session_id:
                continue
            if self.store.deactivate_session(session.id, reason, now):
                revoked += 1
        if revoked:
            logger.info(
                "user_tokens_revoked", user_id=user_id, count=revoked, reason=reason.value
            )
        return revoked

    # ------------------------------------------------------------ verification

    def verify_access(self, token: str) -> AccessClaims:
        """Stateless access-token check: signature, issuer, audience, expiry."""
        payload = self._decode_jwt(token)
        if payload.get("typ") != "access":
            raise TokenError(ErrorCode.TOKEN_INVALID)
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
            iat_ts = float(payload.get("iat", 0))
        except (TypeError, ValueError):
            raise TokenError(ErrorCode.TOKEN_INVALID) from None
        if exp_ts <= self._now().timestamp() - self._leeway.total_seconds():
            raise TokenError(ErrorCode.TOKEN_EXPIRED)
        user_id = payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise TokenError(ErrorCode.TOKEN_INVALID)
        return AccessClaims(
            user_id=user_id,
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "")),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            session_id=payload.get("sid"),
            token_id=payload.get("jti"),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(),
            signing_input.encode("utf-8", "surrogatepass"),
            hashlib.sha256,
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenError(ErrorCode.TOKEN_INVALID)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError(ErrorCode.TOKEN_INVALID) from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(ErrorCode.TOKEN_INVALID) from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenError(ErrorCode.TOKEN_INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise TokenError(ErrorCode.TOKEN_INVALID)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(ErrorCode.TOKEN_INVALID) from None
        if not isinstance(payload, dict):
            raise TokenError(ErrorCode.TOKEN_INVALID)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenError(ErrorCode.TOKEN_INVALID)
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenError(ErrorCode.TOKEN_INVALID)
        return payload

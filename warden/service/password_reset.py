from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from warden.logging import get_logger, mask_email
from warden.service.errors import ErrorCode, TokenError
from warden.storage.models import PasswordResetToken, User, utcnow

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 32
DEFAULT_RESET_TTL_MINUTES = 60


class ResetTokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def store_reset_token(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def consume_reset_token(self, token_hash: str, at: datetime) -> bool: ...

    def purge_reset_tokens(self, now: datetime) -> int: ...


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8", "surrogatepass")).hexdigest()


@dataclass(frozen=True)
class IssuedResetToken:
    token: str
    record: PasswordResetToken

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


@dataclass(frozen=True)
class VerifiedReset:
    record: PasswordResetToken
    user: User


class PasswordResetManager:
    """Issues and redeems single-use password reset tokens.

    The raw token goes to the account's email through the notifier and is
    never stored; lookups use its SHA-256 digest. Issuing a token retires
    any earlier unused one for the same user.
    """

    def __init__(
        self,
        store: ResetTokenStore,
        *,
        ttl_minutes: int = DEFAULT_RESET_TTL_MINUTES,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if ttl_minutes < 1:
            raise ValueError("ttl_minutes must be at least 1")
        self.store = store
        self.ttl_minutes = ttl_minutes
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def issue(self, user: User) -> IssuedResetToken:
        raw = secrets.token_urlsafe(RESET_TOKEN_BYTES)
        record = self.store.store_reset_token(
            PasswordResetToken.new(
                user.id,
                hash_reset_token(raw),
                user.email,
                ttl_minutes=self.ttl_minutes,
                now=self._now(),
            )
        )
        logger.info(
            "password_reset_requested",
            user_id=user.id,
            to=mask_email(user.email),
            expires_at=record.expires_at.isoformat(),
        )
        return IssuedResetToken(token=raw, record=record)

    def verify(self, raw_token: str) -> VerifiedReset:
        """Resolve a presented token to its owner without consuming it.

        Unknown, used and expired tokens, and tokens whose owner is gone or
        disabled, all raise TokenError(RESET_TOKEN_INVALID).
        """
        if not raw_token or not isinstance(raw_token, str):
            raise TokenError(ErrorCode.RESET_TOKEN_INVALID)
        record = self.store.get_reset_token(hash_reset_token(raw_token))
        if record is None or not record.is_usable(self._now()):
            logger.info("password_reset_rejected", reason="unusable_token")
            raise TokenError(ErrorCode.RESET_TOKEN_INVALID)
        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            # Burn the token so a later reactivation does not revive it
            self.store.consume_reset_token(record.token_hash, self._now())
            logger.warning("password_reset_rejected", reason="user_unavailable", user_id=record.user_id)
            raise TokenError(ErrorCode.RESET_TOKEN_INVALID)
        return VerifiedReset(record=record, user=user)

    def consume(self, record: PasswordResetToken) -> None:
        """Mark ``record`` used; a concurrent redemption makes this raise."""
        if not self.store.consume_reset_token(record.token_hash, self._now()):
            logger.info("password_reset_rejected", reason="already_used", user_id=record.user_id)
            raise TokenError(ErrorCode.RESET_TOKEN_INVALID)

    def cleanup(self) -> int:
        purged = self.store.purge_reset_tokens(self._now())
        if purged:
            logger.info("password_reset_tokens_purged", count=purged)
        return purged

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

from warden.logging import get_logger
from warden.service.errors import ErrorCode, NotFoundError
from warden.service.locks import KeyedLock
from warden.service.tokens import TokenAuthority
from warden.storage.models import RevocationReason, Session, utcnow

logger = get_logger(__name__)

DEFAULT_MAX_SESSIONS_PER_USER = 10


class SessionRepository(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def insert_session_evicting(
        self,
        session: Session,
        evict_ids: Iterable[str],
        at: datetime,
        reason: RevocationReason = RevocationReason.EVICTED,
    ) -> Tuple[Session, List[str]]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]: ...

    def touch_session(
        self, session_id: str, at: datetime, ip_address: Optional[str] = None
    ) -> bool: ...

    def list_expired_sessions(self, now: datetime) -> List[Session]: ...

    def purge_inactive_sessions(self, revoked_before: datetime) -> int: ...


@dataclass(frozen=True)
class RegisteredSession:
    session: Session
    evicted: List[Session] = field(default_factory=list)
    is_new_device: bool = False


@dataclass(frozen=True)
class SessionStats:
    active: int
    total: int
    newest_activity_at: Optional[datetime] = None
    oldest_activity_at: Optional[datetime] = None


@dataclass(frozen=True)
class CleanupReport:
    expired: int
    purged: int


def _lock_key(user_id: str) -> str:
    return f"user:{user_id}"


class SessionStore:
    """Registry of live sessions per user.

    Every mutation for one user runs inside that user's KeyedLock section, so
    concurrent registrations cannot both slip past the session limit. No
    hashing, network call or await happens while the section is held.
    """

    def __init__(
        self,
        store: SessionRepository,
        tokens: TokenAuthority,
        *,
        max_sessions_per_user: int = DEFAULT_MAX_SESSIONS_PER_USER,
        locks: Optional[KeyedLock] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_sessions_per_user < 1:
            raise ValueError("max_sessions_per_user must be at least 1")
        self.store = store
        self.tokens = tokens
        self.max_sessions_per_user = max_sessions_per_user
        self.locks = locks or KeyedLock()
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def register(self, user_id: str, session: Session) -> RegisteredSession:
        """Insert ``session`` as active and evict the oldest sessions over the limit.

        Returns once the new session and every eviction are committed; the
        result is not undone if the caller goes away afterwards.
        """
        if session.user_id != user_id:
            raise ValueError("session does not belong to user")
        with self.locks.hold(_lock_key(user_id)):
            now = self._now()
            history = self.store.list_sessions(user_id, active_only=False)
            known_fingerprints = {
                s.device_fingerprint for s in history if s.device_fingerprint
            }
            is_new_device = bool(session.device_fingerprint) and (
                session.device_fingerprint not in known_fingerprints
            )
            # Expired sessions must not occupy slots that fresh logins need
            for stale in history:
                if stale.active and stale.is_expired(now):
                    self.tokens.revoke(stale.id, RevocationReason.EXPIRED)

            # Victims are deactivated in the same store write as the insert, so
            # readers never observe limit + 1 and a refused insert evicts nobody
            active = self.store.list_sessions(user_id, active_only=True)
            overflow = len(active) + 1 - self.max_sessions_per_user
            candidates: List[Session] = []
            if overflow > 0:
                candidates = sorted(
                    active, key=lambda s: (s.created_at, s.last_activity_at, s.id)
                )[:overflow]
            stored, evicted_ids = self.store.insert_session_evicting(
                session, [victim.id for victim in candidates], now
            )
            evicted = [victim for victim in candidates if victim.id in evicted_ids]
        if evicted:
            logger.info(
                "sessions_evicted",
                user_id=user_id,
                count=len(evicted),
                limit=self.max_sessions_per_user,
            )
        logger.info(
            "session_registered",
            user_id=user_id,
            session_id=stored.id,
            new_device=is_new_device,
        )
        return RegisteredSession(session=stored, evicted=evicted, is_new_device=is_new_device)

    def list_active(self, user_id: str) -> List[Session]:
        """Active, unexpired sessions, newest first."""
        now = self._now()
        rows = [
            s for s in self.store.list_sessions(user_id, active_only=True)
            if not s.is_expired(now)
        ]
        rows.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return rows

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def touch(self, session_id: str, ip_address: Optional[str] = None) -> bool:
        """Record activity. Safe against concurrent eviction: inactive rows stay inactive."""
        return self.store.touch_session(session_id, self._now(), ip_address)

    def invalidate(
        self,
        session_id: str,
        user_id: str,
        reason: RevocationReason = RevocationReason.INVALIDATED,
    ) -> bool:
        """Deactivate one of ``user_id``'s sessions.

        Already-inactive sessions are a successful no-op (returns False).
        Sessions that do not exist or belong to someone else raise
        NotFoundError(SESSION_NOT_FOUND).
        """
        with self.locks.hold(_lock_key(user_id)):
            session = self.store.get_session(session_id)
            if session is None or session.user_id != user_id:
                raise NotFoundError(ErrorCode.SESSION_NOT_FOUND)
            return self.tokens.revoke(session_id, reason)

    def invalidate_all(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: RevocationReason = RevocationReason.LOGOUT_ALL,
    ) -> int:
        """Deactivate every active session of ``user_id`` except ``except_session_id``."""
        with self.locks.hold(_lock_key(user_id)):
            return self.tokens.revoke_all(
                user_id, except_session_id=except_session_id, reason=reason
            )

    def cleanup(self, retention: timedelta) -> CleanupReport:
        """Expire overdue sessions and purge inactive rows older than ``retention``."""
        now = self._now()
        expired = 0
        for session in self.store.list_expired_sessions(now):
            with self.locks.hold(_lock_key(session.user_id)):
                if self.tokens.revoke(session.id, RevocationReason.EXPIRED):
                    expired += 1
        purged = self.store.purge_inactive_sessions(now - retention)
        if expired or purged:
            logger.info("session_cleanup", expired=expired, purged=purged)
        return CleanupReport(expired=expired, purged=purged)

    def stats(self, user_id: str) -> SessionStats:
        rows = self.store.list_sessions(user_id, active_only=False)
        active = [s for s in rows if s.active and not s.is_expired(self._now())]
        activity = [s.last_activity_at for s in active]
        return SessionStats(
            active=len(active),
            total=len(rows),
            newest_activity_at=max(activity) if activity else None,
            oldest_activity_at=min(activity) if activity else None,
        )

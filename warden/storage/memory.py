from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    DEFAULT_ROLE,
    PasswordHistoryEntry,
    PasswordResetToken,
    RevocationReason,
    Session,
    User,
    utcnow,
)


def _email_key(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-process backing store acting as the single logical session authority.

    Every public method takes ``_data_lock`` for its whole body, so individual
    reads and writes are atomic. Multi-step invariants (session limits,
    account linking) are coordinated one level up by the service layer.
    Rows are returned as copies; mutate them through the store methods only.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self._email_index: Dict[str, str] = {}
        self._federated_index: Dict[str, str] = {}
        self._refresh_index: Dict[str, str] = {}
        self._user_sessions: Dict[str, Set[str]] = {}
        # RLock so persistence can run inside an outer acquisition
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # ------------------------------------------------------------------ users

    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        federated_id: Optional[str] = None,
        email_verified: bool = False,
        role: str = DEFAULT_ROLE,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> User:
        if not password_hash and not federated_id:
            raise ConstraintViolation(
                "user requires a password or a federated identity",
                {"field": "credentials"},
            )
        key = _email_key(email)
        with self._data_lock:
            if key in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if federated_id and federated_id in self._federated_index:
                raise ConstraintViolation(
                    "federated identity already linked", {"field": "federated_id"}
                )
            created = now or utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email.strip(),
                password_hash=password_hash,
                federated_id=federated_id,
                email_verified=email_verified,
                role=role,
                display_name=display_name,
                avatar_url=avatar_url,
                created_at=created,
                updated_at=created,
            )
            self.users[user.id] = user
            self._email_index[key] = user.id
            if federated_id:
                self._federated_index[federated_id] = user.id
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(_email_key(email))
            return self.get_user(user_id) if user_id else None

    def get_user_by_federated_id(self, federated_id: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._federated_index.get(federated_id)
            return self.get_user(user_id) if user_id else None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def update_password_hash(
        self,
        user_id: str,
        password_hash: Optional[str],
        *,
        now: Optional[datetime] = None,
    ) -> User:
        """Set or clear the password hash; clearing the last credential is refused."""
        with self._data_lock:
            user = self._require_user(user_id)
            if not password_hash and not user.federated_id:
                raise ConstraintViolation(
                    "cannot remove the only credential", {"field": "password_hash"}
                )
            user.password_hash = password_hash
            user.updated_at = now or utcnow()
            self._persist_state()
            return replace(user)

    def set_federated_identity(
        self,
        user_id: str,
        federated_id: str,
        *,
        email_verified: Optional[bool] = None,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            owner = self._federated_index.get(federated_id)
            if owner and owner != user_id:
                raise ConstraintViolation(
                    "federated identity already linked", {"field": "federated_id"}
                )
            if user.federated_id and user.federated_id != federated_id:
                self._federated_index.pop(user.federated_id, None)
            user.federated_id = federated_id
            self._federated_index[federated_id] = user_id
            if email_verified is not None:
                user.email_verified = email_verified
            if display_name and not user.display_name:
                user.display_name = display_name
            if avatar_url:
                user.avatar_url = avatar_url
            user.updated_at = now or utcnow()
            self._persist_state()
            return replace(user)

    def clear_federated_identity(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            if not user.password_hash:
                raise ConstraintViolation(
                    "cannot remove the only credential", {"field": "federated_id"}
                )
            if user.federated_id:
                self._federated_index.pop(user.federated_id, None)
            user.federated_id = None
            user.updated_at = now or utcnow()
            self._persist_state()
            return replace(user)

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login_at = at
            self._persist_state()
            return replace(user)

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    # ------------------------------------------------------- password history

    def add_password_history(self, entry: PasswordHistoryEntry, limit: int) -> None:
        with self._data_lock:
            self._require_user(entry.user_id)
            entries = self.password_history.setdefault(entry.user_id, [])
            entries.append(replace(entry))
            entries.sort(key=lambda e: e.created_at, reverse=True)
            del entries[max(limit, 0):]
            self._persist_state()

    def list_password_history(
        self, user_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        """Newest-first history entries, at most ``limit``."""
        with self._data_lock:
            entries = self.password_history.get(user_id, [])
            return [replace(e) for e in entries[: max(limit, 0)]]

    # --------------------------------------------------------------- sessions

    def _check_insertable(self, session: Session) -> None:
        self._require_user(session.user_id)
        if session.id in self.sessions:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        if session.refresh_token_hash in self._refresh_index:
            raise ConstraintViolation(
                "refresh token hash collision", {"field": "refresh_token_hash"}
            )

    def _add_session(self, session: Session) -> Session:
        stored = replace(session)
        self.sessions[stored.id] = stored
        self._refresh_index[stored.refresh_token_hash] = stored.id
        self._user_sessions.setdefault(stored.user_id, set()).add(stored.id)
        return stored

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            self._check_insertable(session)
            stored = self._add_session(session)
            self._persist_state()
            return replace(stored)

    def insert_session_evicting(
        self,
        session: Session,
        evict_ids: Iterable[str],
        at: datetime,
        reason: RevocationReason = RevocationReason.EVICTED,
    ) -> Tuple[Session, List[str]]:
        """Deactivate ``evict_ids`` and insert ``session`` as one atomic step.

        Nothing changes when the insert is refused. Returns the stored session
        and the ids that were still active and got deactivated.
        """
        with self._data_lock:
            self._check_insertable(session)
            evicted: List[str] = []
            for session_id in evict_ids:
                victim = self.sessions.get(session_id)
                if not victim or not victim.active:
                    continue
                victim.active = False
                victim.revoked_at = at
                victim.revoked_reason = reason
                evicted.append(session_id)
            stored = self._add_session(session)
            self._persist_state()
            return replace(stored), evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._refresh_index.get(token_hash)
            return self.get_session(session_id) if session_id else None

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            ids = self._user_sessions.get(user_id, set())
            rows = [self.sessions[sid] for sid in ids if sid in self.sessions]
            if active_only:
                rows = [s for s in rows if s.active]
            return [replace(s) for s in rows]

    def deactivate_session(
        self, session_id: str, reason: RevocationReason, at: datetime
    ) -> bool:
        """Mark a session inactive. Returns False when it was already inactive or missing."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.active:
                return False
            sess.active = False
            sess.revoked_at = at
            sess.revoked_reason = reason
            self._persist_state()
            return True

    def touch_session(
        self, session_id: str, at: datetime, ip_address: Optional[str] = None
    ) -> bool:
        """Update activity on an active session; inactive sessions are left untouched."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.active:
                return False
            if sess.last_activity_at < at:
                sess.last_activity_at = at
            if ip_address:
                sess.ip_address = ip_address
            self._persist_state()
            return True

    def replace_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        refresh_expires_at: datetime,
    ) -> bool:
        """Swap the refresh hash only if the session is active and still holds ``expected_hash``."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.active or sess.refresh_token_hash != expected_hash:
                return False
            if new_hash in self._refresh_index:
                raise ConstraintViolation(
                    "refresh token hash collision", {"field": "refresh_token_hash"}
                )
            self._refresh_index.pop(expected_hash, None)
            sess.refresh_token_hash = new_hash
            sess.refresh_expires_at = refresh_expires_at
            self._refresh_index[new_hash] = session_id
            self._persist_state()
            return True

    def list_expired_sessions(self, now: datetime) -> List[Session]:
        """Sessions still flagged active whose refresh expiry has passed."""
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.active and s.refresh_expires_at <= now
            ]

    def purge_inactive_sessions(self, revoked_before: datetime) -> int:
        with self._data_lock:
            stale = [
                sess
                for sess in self.sessions.values()
                if not sess.active and sess.revoked_at and sess.revoked_at < revoked_before
            ]
            for sess in stale:
                self.sessions.pop(sess.id, None)
                self._refresh_index.pop(sess.refresh_token_hash, None)
                owned = self._user_sessions.get(sess.user_id)
                if owned is not None:
                    owned.discard(sess.id)
            if stale:
                self._persist_state()
            return len(stale)

    # ---------------------------------------------------------- reset tokens

    def store_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        """Insert ``token`` and retire the user's earlier unused tokens."""
        with self._data_lock:
            self._require_user(token.user_id)
            if token.token_hash in self.reset_tokens:
                raise ConstraintViolation(
                    "reset token hash collision", {"field": "token_hash"}
                )
            for existing in self.reset_tokens.values():
                if existing.user_id == token.user_id and existing.used_at is None:
                    existing.used_at = token.created_at
            self.reset_tokens[token.token_hash] = replace(token)
            self._persist_state()
            return replace(token)

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            return replace(token) if token else None

    def consume_reset_token(self, token_hash: str, at: datetime) -> bool:
        """Mark the token used if it is still usable at ``at``; False otherwise."""
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            if not token or not token.is_usable(at):
                return False
            token.used_at = at
            self._persist_state()
            return True

    def purge_reset_tokens(self, now: datetime) -> int:
        """Drop used and expired reset tokens."""
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, token in self.reset_tokens.items()
                if not token.is_usable(now)
            ]
            for token_hash in stale:
                del self.reset_tokens[token_hash]
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------ persistence

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "password_history": [
                {
                    "user_id": entry.user_id,
                    "password_hash": entry.password_hash,
                    "created_at": self._serialize_datetime(entry.created_at),
                }
                for entries in self.password_history.values()
                for entry in entries
            ],
            "reset_tokens": [
                self._serialize_reset_token(t) for t in self.reset_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist auth store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
            self.sessions = {
                s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
            }
            self.password_history = {}
            for raw in data.get("password_history", []):
                entry = PasswordHistoryEntry(
                    user_id=raw["user_id"],
                    password_hash=raw["password_hash"],
                    created_at=self._deserialize_datetime(raw["created_at"]),
                )
                self.password_history.setdefault(entry.user_id, []).append(entry)
            for entries in self.password_history.values():
                entries.sort(key=lambda e: e.created_at, reverse=True)
            self.reset_tokens = {
                raw["token_hash"]: self._deserialize_reset_token(raw)
                for raw in data.get("reset_tokens", [])
            }
            self._email_index = {_email_key(u.email): u.id for u in self.users.values()}
            self._federated_index = {
                u.federated_id: u.id for u in self.users.values() if u.federated_id
            }
            self._refresh_index = {
                s.refresh_token_hash: s.id for s in self.sessions.values()
            }
            self._user_sessions = {}
            for sess in self.sessions.values():
                self._user_sessions.setdefault(sess.user_id, set()).add(sess.id)
        self.logger.info(
            "auth_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "federated_id": user.federated_id,
            "email_verified": user.email_verified,
            "role": user.role,
            "is_active": user.is_active,
            "display_name": user.display_name,
            "avatar_url": user.avatar_url,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data.get("password_hash"),
            federated_id=data.get("federated_id"),
            email_verified=data.get("email_verified", False),
            role=data.get("role", DEFAULT_ROLE),
            is_active=data.get("is_active", True),
            display_name=data.get("display_name"),
            avatar_url=data.get("avatar_url"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "refresh_expires_at": self._serialize_datetime(session.refresh_expires_at),
            "device_fingerprint": session.device_fingerprint,
            "device_label": session.device_label,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "active": session.active,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revoked_reason": session.revoked_reason.value if session.revoked_reason else None,
        }

    def _deserialize_session(self, data: dict) -> Session:
        reason = data.get("revoked_reason")
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            refresh_expires_at=self._deserialize_datetime(data["refresh_expires_at"]),
            device_fingerprint=data.get("device_fingerprint", ""),
            device_label=data.get("device_label", "Unknown Device"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            active=data.get("active", True),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=RevocationReason(reason) if reason else None,
        )

    def _serialize_reset_token(self, token: PasswordResetToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "email": token.email,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "used_at": self._serialize_datetime(token.used_at),
        }

    def _deserialize_reset_token(self, data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            email=data["email"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )

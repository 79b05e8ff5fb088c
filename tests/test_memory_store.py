"""Tests for the in-process store: uniqueness, credential invariants, persistence."""

from datetime import datetime, timedelta, timezone

import pytest

from warden.storage.errors import ConstraintViolation
from warden.storage.memory import MemoryStore
from warden.storage.models import (
    PasswordHistoryEntry,
    PasswordResetToken,
    RevocationReason,
    Session,
)

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("store@example.com", password_hash="$argon2id$fake", now=NOW)


class TestUsers:
    def test_email_is_unique_case_insensitively(self, memory_store, user):
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_user("STORE@example.com", password_hash="h")
        assert exc.value.field == "email"
        assert memory_store.get_user_by_email(" Store@Example.com ").id == user.id

    def test_user_needs_a_credential(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("nothing@example.com")

    def test_federated_id_is_unique(self, memory_store, user):
        memory_store.create_user("fed@example.com", federated_id="g-1")
        with pytest.raises(ConstraintViolation):
            memory_store.set_federated_identity(user.id, "g-1")
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("fed2@example.com", federated_id="g-1")

    def test_last_credential_cannot_be_removed(self, memory_store, user):
        with pytest.raises(ConstraintViolation):
            memory_store.update_password_hash(user.id, None)
        memory_store.set_federated_identity(user.id, "g-store")
        cleared = memory_store.update_password_hash(user.id, None)
        assert cleared.password_hash is None
        with pytest.raises(ConstraintViolation):
            memory_store.clear_federated_identity(user.id)
        assert memory_store.get_user(user.id).federated_id == "g-store"

    def test_relinking_moves_index(self, memory_store, user):
        memory_store.set_federated_identity(user.id, "g-old")
        memory_store.set_federated_identity(user.id, "g-new")
        assert memory_store.get_user_by_federated_id("g-old") is None
        assert memory_store.get_user_by_federated_id("g-new").id == user.id

    def test_returned_rows_are_copies(self, memory_store, user):
        fetched = memory_store.get_user(user.id)
        fetched.role = "admin"
        fetched.password_hash = None
        stored = memory_store.get_user(user.id)
        assert stored.role == "user"
        assert stored.password_hash == "$argon2id$fake"


class TestPasswordHistory:
    def test_history_trimmed_newest_first(self, memory_store, user):
        for i in range(7):
            memory_store.add_password_history(
                PasswordHistoryEntry(
                    user_id=user.id, password_hash=f"h{i}", created_at=NOW + timedelta(minutes=i)
                ),
                limit=5,
            )
        entries = memory_store.list_password_history(user.id, 5)
        assert [e.password_hash for e in entries] == ["h6", "h5", "h4", "h3", "h2"]
        assert len(memory_store.list_password_history(user.id, 2)) == 2


class TestSessions:
    def _session(self, user, token_hash, *, ttl_minutes=60, session_id=None):
        return Session.new(user.id, token_hash, ttl_minutes=ttl_minutes, now=NOW, session_id=session_id)

    def test_insert_rejects_duplicates(self, memory_store, user):
        memory_store.insert_session(self._session(user, "hash-a", session_id="s1"))
        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(self._session(user, "hash-b", session_id="s1"))
        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(self._session(user, "hash-a", session_id="s2"))

    def test_insert_requires_existing_user(self, memory_store):
        orphan = Session.new("ghost", "hash", ttl_minutes=5, now=NOW)
        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(orphan)

    def test_deactivate_once(self, memory_store, user):
        memory_store.insert_session(self._session(user, "hash-a", session_id="s1"))
        assert memory_store.deactivate_session("s1", RevocationReason.LOGOUT, NOW) is True
        assert memory_store.deactivate_session("s1", RevocationReason.EVICTED, NOW) is False
        assert memory_store.get_session("s1").revoked_reason == RevocationReason.LOGOUT
        assert memory_store.deactivate_session("missing", RevocationReason.LOGOUT, NOW) is False

    def test_replace_refresh_hash_is_conditional(self, memory_store, user):
        memory_store.insert_session(self._session(user, "hash-a", session_id="s1"))
        expires = NOW + timedelta(hours=1)
        assert memory_store.replace_refresh_hash("s1", "wrong", "hash-b", expires) is False
        assert memory_store.replace_refresh_hash("s1", "hash-a", "hash-b", expires) is True
        assert memory_store.get_session_by_refresh_hash("hash-a") is None
        assert memory_store.get_session_by_refresh_hash("hash-b").id == "s1"

    def test_expired_listing_and_purge(self, memory_store, user):
        memory_store.insert_session(self._session(user, "short", ttl_minutes=5, session_id="s1"))
        memory_store.insert_session(self._session(user, "long", ttl_minutes=600, session_id="s2"))
        later = NOW + timedelta(minutes=10)
        assert [s.id for s in memory_store.list_expired_sessions(later)] == ["s1"]

        memory_store.deactivate_session("s1", RevocationReason.EXPIRED, later)
        assert memory_store.purge_inactive_sessions(later) == 0
        assert memory_store.purge_inactive_sessions(later + timedelta(seconds=1)) == 1
        assert memory_store.get_session("s1") is None
        assert memory_store.get_session_by_refresh_hash("short") is None
        assert [s.id for s in memory_store.list_sessions(user.id, active_only=False)] == ["s2"]


class TestResetTokens:
    def test_new_token_retires_unused_ones(self, memory_store, user):
        first = PasswordResetToken.new(user.id, "r1", user.email, ttl_minutes=60, now=NOW)
        later = NOW + timedelta(minutes=1)
        second = PasswordResetToken.new(user.id, "r2", user.email, ttl_minutes=60, now=later)
        memory_store.store_reset_token(first)
        memory_store.store_reset_token(second)

        assert memory_store.get_reset_token("r1").used_at == later
        assert memory_store.consume_reset_token("r1", later) is False
        assert memory_store.consume_reset_token("r2", later) is True
        assert memory_store.consume_reset_token("r2", later) is False
        with pytest.raises(ConstraintViolation):
            memory_store.store_reset_token(second)

    def test_expired_token_cannot_be_consumed(self, memory_store, user):
        memory_store.store_reset_token(
            PasswordResetToken.new(user.id, "r1", user.email, ttl_minutes=5, now=NOW)
        )
        assert memory_store.consume_reset_token("r1", NOW + timedelta(minutes=5)) is False
        assert memory_store.purge_reset_tokens(NOW + timedelta(minutes=5)) == 1


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("persist@example.com", password_hash="h", now=NOW)
        store.set_federated_identity(user.id, "g-persist")
        store.add_password_history(
            PasswordHistoryEntry(user_id=user.id, password_hash="h", created_at=NOW), limit=5
        )
        store.insert_session(Session.new(user.id, "hash-p", ttl_minutes=60, now=NOW, session_id="sp"))
        store.deactivate_session("sp", RevocationReason.LOGOUT, NOW)
        store.store_reset_token(
            PasswordResetToken.new(user.id, "reset-p", user.email, ttl_minutes=60, now=NOW)
        )

        assert (tmp_path / "state" / "auth_store.json").exists()
        reloaded = MemoryStore(fs_root=str(tmp_path))

        again = reloaded.get_user_by_email("persist@example.com")
        assert again.id == user.id
        assert again.created_at == NOW
        assert reloaded.get_user_by_federated_id("g-persist").id == user.id
        assert len(reloaded.list_password_history(user.id, 5)) == 1
        session = reloaded.get_session_by_refresh_hash("hash-p")
        assert session.id == "sp"
        assert session.active is False
        assert session.revoked_reason == RevocationReason.LOGOUT
        assert reloaded.get_reset_token("reset-p").expires_at == NOW + timedelta(minutes=60)
        assert reloaded.consume_reset_token("reset-p", NOW) is True

"""Tests for access/refresh token issuance, refresh, revocation and verification."""

import base64
import json
from datetime import timedelta

import pytest

from warden.service.errors import ErrorCode, TokenError
from warden.service.tokens import (
    TokenAuthority,
    TokenClaims,
    TokenState,
    hash_refresh_token,
)
from warden.storage.models import RevocationReason, Session


@pytest.fixture
def tokens(memory_store, settings, clock):
    return TokenAuthority(memory_store, settings, clock=clock)


@pytest.fixture
def user(memory_store, hasher):
    return memory_store.create_user("tok@example.com", password_hash=hasher.hash("x"))


def _register(memory_store, tokens, user, clock, *, remember_me=False, session_id="sess-1"):
    issued = tokens.issue(TokenClaims.for_user(user), session_id=session_id, remember_me=remember_me)
    session = Session.new(
        user.id,
        issued.refresh_token_hash,
        ttl_minutes=issued.refresh_ttl_minutes,
        now=clock(),
        session_id=session_id,
    )
    memory_store.insert_session(session)
    return issued, session


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


class TestIssue:
    def test_refresh_token_stored_only_as_hash(self, memory_store, tokens, user, clock):
        issued, session = _register(memory_store, tokens, user, clock)
        stored = memory_store.get_session(session.id)
        assert stored.refresh_token_hash == hash_refresh_token(issued.refresh_token)
        assert issued.refresh_token not in json.dumps(memory_store._serialize_session(stored))

    def test_access_token_claims(self, memory_store, tokens, user, clock, settings):
        issued, session = _register(memory_store, tokens, user, clock)
        payload = _payload(issued.access_token)
        assert payload["sub"] == user.id
        assert payload["email"] == user.email
        assert payload["role"] == "user"
        assert payload["sid"] == session.id
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["exp"] - payload["iat"] == settings.access_token_ttl_minutes * 60
        assert issued.expires_in == settings.access_token_ttl_minutes * 60

    def test_remember_me_extends_refresh_lifetime(self, tokens, user, settings):
        normal = tokens.issue(TokenClaims.for_user(user))
        remembered = tokens.issue(TokenClaims.for_user(user), remember_me=True)
        assert normal.refresh_ttl_minutes == settings.refresh_token_ttl_minutes
        assert remembered.refresh_ttl_minutes == settings.remember_me_refresh_ttl_minutes

    def test_issued_token_unknown_until_registered(self, tokens, user):
        issued = tokens.issue(TokenClaims.for_user(user))
        assert tokens.refresh_state(issued.refresh_token) is None
        with pytest.raises(TokenError) as exc:
            tokens.refresh(issued.refresh_token)
        assert exc.value.code == ErrorCode.REFRESH_INVALID


class TestRefresh:
    def test_round_trip_preserves_claims(self, memory_store, tokens, user, clock):
        issued, session = _register(memory_store, tokens, user, clock)
        assert tokens.refresh_state(issued.refresh_token) == TokenState.ACTIVE

        outcome = tokens.refresh(issued.refresh_token)

        claims = tokens.verify_access(outcome.access_token)
        assert claims.user_id == user.id
        assert claims.email == user.email
        assert claims.role == user.role
        assert claims.session_id == session.id
        assert outcome.access_token != issued.access_token
        # Non-rotating by default: same refresh token keeps working
        assert outcome.refresh_token is None
        assert tokens.refresh(issued.refresh_token).user.id == user.id
        assert tokens.refresh_state(issued.refresh_token) == TokenState.REFRESHED

    def test_refresh_updates_last_activity(self, memory_store, tokens, user, clock):
        issued, session = _register(memory_store, tokens, user, clock)
        before = memory_store.get_session(session.id).last_activity_at
        clock.advance(timedelta(minutes=3))
        tokens.refresh(issued.refresh_token)
        assert memory_store.get_session(session.id).last_activity_at > before

    def test_revoked_token_is_invalid_not_expired(self, memory_store, tokens, user, clock):
        issued, session = _register(memory_store, tokens, user, clock)
        assert tokens.revoke(session.id) is True
        assert tokens.revoke(session.id) is False
        for _ in range(2):
            with pytest.raises(TokenError) as exc:
                tokens.refresh(issued.refresh_token)
            assert exc.value.code == ErrorCode.REFRESH_INVALID
        assert tokens.refresh_state(issued.refresh_token) == TokenState.REVOKED

    def test_expired_token_reports_expired(self, memory_store, tokens, user, clock, settings):
        issued, session = _register(memory_store, tokens, user, clock)
        clock.advance(timedelta(minutes=settings.refresh_token_ttl_minutes + 1))
        assert tokens.refresh_state(issued.refresh_token) == TokenState.EXPIRED
        for _ in range(2):
            with pytest.raises(TokenError) as exc:
                tokens.refresh(issued.refresh_token)
            assert exc.value.code == ErrorCode.REFRESH_EXPIRED
        stored = memory_store.get_session(session.id)
        assert stored.active is False
        assert stored.revoked_reason == RevocationReason.EXPIRED

    def test_disabled_user_cannot_refresh(self, memory_store, tokens, user, clock):
        issued, _ = _register(memory_store, tokens, user, clock)
        memory_store.set_user_active(user.id, False)
        with pytest.raises(TokenError) as exc:
            tokens.refresh(issued.refresh_token)
        assert exc.value.code == ErrorCode.REFRESH_INVALID

    def test_garbage_token_invalid(self, tokens):
        for raw in ("", "nope"):
            with pytest.raises(TokenError) as exc:
                tokens.refresh(raw)
            assert exc.value.code == ErrorCode.REFRESH_INVALID

    def test_rotation_when_configured(self, memory_store, settings, user, clock):
        rotating = TokenAuthority(
            memory_store, settings.model_copy(update={"rotate_refresh_tokens": True}), clock=clock
        )
        issued, session = _register(memory_store, rotating, user, clock)
        outcome = rotating.refresh(issued.refresh_token)
        assert outcome.refresh_token and outcome.refresh_token != issued.refresh_token
        assert outcome.refresh_expires_at == session.refresh_expires_at
        with pytest.raises(TokenError) as exc:
            rotating.refresh(issued.refresh_token)
        assert exc.value.code == ErrorCode.REFRESH_INVALID
        assert rotating.refresh(outcome.refresh_token).session.id == session.id


class TestRevokeAll:
    def test_revoke_all_except_current(self, memory_store, tokens, user, clock):
        registered = [
            _register(memory_store, tokens, user, clock, session_id=f"s{i}") for i in range(3)
        ]
        keep = registered[0][1].id
        assert tokens.revoke_all(user.id, except_session_id=keep) == 2
        assert tokens.refresh(registered[0][0].refresh_token).session.id == keep
        for issued, _ in registered[1:]:
            with pytest.raises(TokenError):
                tokens.refresh(issued.refresh_token)
        assert tokens.revoke_all(user.id, except_session_id=keep) == 0


class TestVerifyAccess:
    def test_expired_access_token(self, memory_store, tokens, user, clock, settings):
        issued, _ = _register(memory_store, tokens, user, clock)
        clock.advance(
            timedelta(
                minutes=settings.access_token_ttl_minutes,
                seconds=settings.clock_skew_leeway_seconds + 5,
            )
        )
        with pytest.raises(TokenError) as exc:
            tokens.verify_access(issued.access_token)
        assert exc.value.code == ErrorCode.TOKEN_EXPIRED

    def test_within_leeway_still_valid(self, memory_store, tokens, user, clock, settings):
        issued, _ = _register(memory_store, tokens, user, clock)
        clock.advance(timedelta(minutes=settings.access_token_ttl_minutes, seconds=5))
        assert tokens.verify_access(issued.access_token).user_id == user.id

    def test_tampered_signature(self, memory_store, tokens, user, clock):
        issued, _ = _register(memory_store, tokens, user, clock)
        header, payload, signature = issued.access_token.split(".")
        forged = _payload(issued.access_token)
        forged["role"] = "admin"
        forged_segment = (
            base64.urlsafe_b64encode(json.dumps(forged).encode()).decode().rstrip("=")
        )
        with pytest.raises(TokenError) as exc:
            tokens.verify_access(f"{header}.{forged_segment}.{signature}")
        assert exc.value.code == ErrorCode.TOKEN_INVALID

    def test_none_algorithm_rejected(self, tokens):
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        body = base64.urlsafe_b64encode(b'{"sub":"x"}').decode().rstrip("=")
        with pytest.raises(TokenError) as exc:
            tokens.verify_access(f"{header}.{body}.")
        assert exc.value.code == ErrorCode.TOKEN_INVALID

    def test_wrong_audience_rejected(self, memory_store, settings, user, clock):
        other = TokenAuthority(
            memory_store, settings.model_copy(update={"jwt_audience": "elsewhere"}), clock=clock
        )
        ours = TokenAuthority(memory_store, settings, clock=clock)
        token = other.issue(TokenClaims.for_user(user)).access_token
        with pytest.raises(TokenError) as exc:
            ours.verify_access(token)
        assert exc.value.code == ErrorCode.TOKEN_INVALID

    def test_malformed_tokens(self, tokens):
        for token in ("", "a.b", "not.a.jwt", None):
            with pytest.raises(TokenError):
                tokens.verify_access(token)

    def test_non_ascii_segments_rejected(self, memory_store, tokens, user, clock):
        issued, _ = _register(memory_store, tokens, user, clock)
        header, payload, _ = issued.access_token.split(".")
        for token in (
            f"{header}.{payload}.éé",
            f"{header}.{payload}.\ud800",
            f"{header}.\ud800.sig",
            f"é.{payload}.sig",
        ):
            with pytest.raises(TokenError) as exc:
                tokens.verify_access(token)
            assert exc.value.code == ErrorCode.TOKEN_INVALID

    def test_refresh_with_lone_surrogate_is_unknown(self, tokens):
        with pytest.raises(TokenError) as exc:
            tokens.refresh("\ud800abc")
        assert exc.value.code == ErrorCode.REFRESH_INVALID
        assert tokens.refresh_state("\ud800abc") is None

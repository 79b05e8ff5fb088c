"""Tests for the emailed password reset flow."""

from datetime import timedelta

import pytest

from conftest import STRONG_PASSWORDS
from warden.service.collaborators import AuditAction, NotificationKind
from warden.service.errors import ErrorCode, TokenError
from warden.service.password_reset import PasswordResetManager, hash_reset_token
from warden.storage.models import RevocationReason

PASSWORD = STRONG_PASSWORDS[0]
NEW_PASSWORD = STRONG_PASSWORDS[3]
DEVICE = {"user_agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0", "ip_address": "198.51.100.4"}


async def _account(orchestrator, email="reset@example.com"):
    result = await orchestrator.register(email, PASSWORD, DEVICE)
    assert result.ok, result.error
    return result.value


def _reset_tokens(notifier):
    return [
        context["reset_token"]
        for kind, _, context in notifier.sent
        if kind == NotificationKind.PASSWORD_RESET
    ]


async def _request_token(orchestrator, notifier, email="reset@example.com"):
    result = await orchestrator.request_password_reset(email, DEVICE)
    assert result.ok, result.error
    return _reset_tokens(notifier)[-1]


class TestRequest:
    async def test_known_email_gets_token(self, orchestrator, runtime, notifier, audit_sink):
        account = await _account(orchestrator)
        result = await orchestrator.request_password_reset(" RESET@example.com ", DEVICE)

        assert result.ok
        (token,) = _reset_tokens(notifier)
        _, email, context = notifier.sent[-1]
        assert email == "reset@example.com"
        assert context["ip"] == "198.51.x.x"
        record = runtime.store.get_reset_token(hash_reset_token(token))
        assert record.user_id == account.user.id
        assert token not in str(runtime.store.reset_tokens)
        assert AuditAction.PASSWORD_RESET_REQUEST in audit_sink.actions(success=True)

    async def test_unknown_email_looks_the_same(self, orchestrator, notifier, audit_sink):
        await _account(orchestrator)
        known = await orchestrator.request_password_reset("reset@example.com", DEVICE)
        unknown = await orchestrator.request_password_reset("nobody@example.com", DEVICE)

        assert unknown.ok
        assert unknown.value == known.value
        assert len(_reset_tokens(notifier)) == 1
        failed = [e for e in audit_sink.events if not e.success]
        assert failed[-1].action == AuditAction.PASSWORD_RESET_REQUEST
        assert failed[-1].error_code == "USER_NOT_FOUND"

    async def test_invalid_email(self, orchestrator):
        result = await orchestrator.request_password_reset("not-an-email")
        assert result.code == ErrorCode.VALIDATION_FAILED

    async def test_requests_are_rate_limited_per_email(self, orchestrator, settings):
        settings.password_reset_rate_limit = 2
        for _ in range(2):
            assert (await orchestrator.request_password_reset("limit@example.com")).ok
        blocked = await orchestrator.request_password_reset("limit@example.com")
        assert blocked.code == ErrorCode.RATE_LIMITED
        assert blocked.retry_after > 0
        assert (await orchestrator.request_password_reset("other@example.com")).ok

    async def test_disabled_account_gets_nothing(self, orchestrator, runtime, notifier):
        account = await _account(orchestrator)
        runtime.store.set_user_active(account.user.id, False)
        result = await orchestrator.request_password_reset("reset@example.com")
        assert result.ok
        assert _reset_tokens(notifier) == []


class TestVerify:
    async def test_valid_token(self, orchestrator, notifier):
        await _account(orchestrator)
        token = await _request_token(orchestrator, notifier)
        status = await orchestrator.verify_reset_token(token)
        assert status.ok
        assert status.value.email == "reset@example.com"

    async def test_garbage_tokens(self, orchestrator):
        for token in ("", "nope", "\ud800abc", None):
            result = await orchestrator.verify_reset_token(token)
            assert result.code == ErrorCode.RESET_TOKEN_INVALID

    async def test_newer_request_retires_older_token(self, orchestrator, notifier):
        await _account(orchestrator)
        first = await _request_token(orchestrator, notifier)
        second = await _request_token(orchestrator, notifier)
        assert (await orchestrator.verify_reset_token(first)).code == ErrorCode.RESET_TOKEN_INVALID
        assert (await orchestrator.verify_reset_token(second)).ok

    async def test_expired_token(self, orchestrator, notifier, clock, settings):
        await _account(orchestrator)
        token = await _request_token(orchestrator, notifier)
        clock.advance(timedelta(minutes=settings.password_reset_token_ttl_minutes + 1))
        result = await orchestrator.reset_password(token, NEW_PASSWORD)
        assert result.code == ErrorCode.RESET_TOKEN_INVALID


class TestReset:
    async def test_reset_replaces_password_and_revokes_sessions(
        self, orchestrator, runtime, notifier, audit_sink
    ):
        account = await _account(orchestrator)
        second = await orchestrator.login("reset@example.com", PASSWORD, DEVICE)
        token = await _request_token(orchestrator, notifier)

        result = await orchestrator.reset_password(token, NEW_PASSWORD, DEVICE)

        assert result.ok
        assert result.value.sessions_invalidated == 2
        for login in (account, second.value):
            refreshed = await orchestrator.refresh(login.tokens.refresh_token)
            assert refreshed.code == ErrorCode.REFRESH_INVALID
            stored = runtime.store.get_session(login.session.id)
            assert stored.revoked_reason == RevocationReason.PASSWORD_RESET
        old = await orchestrator.login("reset@example.com", PASSWORD, DEVICE)
        assert old.code == ErrorCode.INVALID_CREDENTIALS
        assert (await orchestrator.login("reset@example.com", NEW_PASSWORD, DEVICE)).ok
        assert NotificationKind.PASSWORD_CHANGED in notifier.kinds()
        assert AuditAction.PASSWORD_RESET in audit_sink.actions(success=True)

    async def test_token_is_single_use(self, orchestrator, notifier):
        await _account(orchestrator)
        token = await _request_token(orchestrator, notifier)
        assert (await orchestrator.reset_password(token, NEW_PASSWORD)).ok
        again = await orchestrator.reset_password(token, STRONG_PASSWORDS[4])
        assert again.code == ErrorCode.RESET_TOKEN_INVALID

    async def test_rejected_password_keeps_token_usable(self, orchestrator, notifier):
        await _account(orchestrator)
        token = await _request_token(orchestrator, notifier)

        weak = await orchestrator.reset_password(token, "password123")
        assert weak.code == ErrorCode.PASSWORD_TOO_WEAK
        reused = await orchestrator.reset_password(token, PASSWORD)
        assert reused.code == ErrorCode.PASSWORD_REUSED

        assert (await orchestrator.reset_password(token, NEW_PASSWORD)).ok

    async def test_reset_records_history(self, orchestrator, runtime, notifier):
        account = await _account(orchestrator)
        token = await _request_token(orchestrator, notifier)
        await orchestrator.reset_password(token, NEW_PASSWORD)
        assert len(runtime.store.list_password_history(account.user.id, 5)) == 2

    async def test_owner_disabled_after_request(self, orchestrator, runtime, notifier):
        account = await _account(orchestrator)
        token = await _request_token(orchestrator, notifier)
        runtime.store.set_user_active(account.user.id, False)

        result = await orchestrator.reset_password(token, NEW_PASSWORD)

        assert result.code == ErrorCode.RESET_TOKEN_INVALID
        assert runtime.store.get_reset_token(hash_reset_token(token)).used_at is not None

    async def test_cleanup_purges_used_and_expired(self, orchestrator, runtime, notifier, clock):
        await _account(orchestrator)
        await _account(orchestrator, email="second@example.com")
        used = await _request_token(orchestrator, notifier)
        await _request_token(orchestrator, notifier, email="second@example.com")
        await orchestrator.reset_password(used, NEW_PASSWORD)

        assert runtime.cleanup_reset_tokens() == 1
        clock.advance(timedelta(hours=2))
        assert runtime.cleanup_reset_tokens() == 1
        assert runtime.store.reset_tokens == {}


class TestManager:
    def test_ttl_must_be_positive(self, memory_store):
        with pytest.raises(ValueError):
            PasswordResetManager(memory_store, ttl_minutes=0)

    def test_concurrent_redemption_loses(self, memory_store, clock):
        user = memory_store.create_user("race@example.com", password_hash="h")
        manager = PasswordResetManager(memory_store, clock=clock)
        issued = manager.issue(user)
        first = manager.verify(issued.token)
        second = manager.verify(issued.token)

        manager.consume(first.record)
        with pytest.raises(TokenError) as exc:
            manager.consume(second.record)
        assert exc.value.code == ErrorCode.RESET_TOKEN_INVALID

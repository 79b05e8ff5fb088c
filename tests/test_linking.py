"""Tests for federated identity reconciliation: login, link-on-email-match, explicit link, unlink."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import STRONG_PASSWORDS
from warden.service.credentials import CredentialVerifier, FederatedAssertionClaims
from warden.service.errors import (
    CredentialError,
    ErrorCode,
    NotFoundError,
    StateConflictError,
)
from warden.service.linking import AccountLinker

PASSWORD = STRONG_PASSWORDS[0]


@pytest.fixture
def verifier(hasher, identity_provider):
    return CredentialVerifier(hasher, identity_provider)


@pytest.fixture
def linker(memory_store, verifier, clock):
    return AccountLinker(memory_store, verifier, clock=clock)


@pytest.fixture
def alice(memory_store, hasher):
    return memory_store.create_user("alice@example.com", password_hash=hasher.hash(PASSWORD))


class TestAuthenticateFederated:
    async def test_existing_password_account_is_linked(
        self, linker, identity_provider, memory_store, verifier, alice
    ):
        identity_provider.add("alice-token", sub="g-alice", email="Alice@Example.com", email_verified=False)

        outcome = await linker.authenticate_federated("alice-token")

        assert outcome.is_new_user is False
        assert outcome.linked is True
        assert outcome.user.id == alice.id
        stored = memory_store.get_user(alice.id)
        assert stored.federated_id == "g-alice"
        assert stored.email_verified is True
        assert stored.password_hash == alice.password_hash
        assert verifier.verify_password(stored, PASSWORD) is True

    async def test_known_identity_is_plain_login(self, linker, identity_provider, memory_store, alice):
        identity_provider.add("alice-token", sub="g-alice", email="alice@example.com")
        await linker.authenticate_federated("alice-token")

        outcome = await linker.authenticate_federated("alice-token")

        assert outcome.is_new_user is False
        assert outcome.linked is False
        assert memory_store.get_user(alice.id).last_login_at is not None

    async def test_unknown_identity_creates_account(self, linker, identity_provider, memory_store):
        identity_provider.add("bob-token", sub="g-bob", email="bob@example.com", name="Bob Stone")

        outcome = await linker.authenticate_federated("bob-token")

        assert outcome.is_new_user is True
        user = memory_store.get_user_by_email("bob@example.com")
        assert user.id == outcome.user.id
        assert user.federated_id == "g-bob"
        assert user.password_hash is None
        assert user.email_verified is True
        assert user.role == "user"
        assert user.display_name == "Bob Stone"

    async def test_email_owned_by_other_identity_conflicts(
        self, linker, identity_provider, memory_store, alice
    ):
        memory_store.set_federated_identity(alice.id, "g-original")
        identity_provider.add("impostor", sub="g-other", email="alice@example.com")

        with pytest.raises(StateConflictError) as exc:
            await linker.authenticate_federated("impostor")

        assert exc.value.code == ErrorCode.FEDERATED_ID_IN_USE
        assert memory_store.get_user(alice.id).federated_id == "g-original"

    async def test_rejected_assertion(self, linker):
        with pytest.raises(CredentialError) as exc:
            await linker.authenticate_federated("never-issued")
        assert exc.value.code == ErrorCode.INVALID_ASSERTION

    def test_concurrent_first_logins_create_one_account(self, linker, memory_store):
        claims = FederatedAssertionClaims(
            subject_id="g-carol",
            email="carol@example.com",
            display_name="Carol",
            email_verified=True,
        )
        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(lambda _: linker.resolve(claims), range(16)))

        assert sum(1 for o in outcomes if o.is_new_user) == 1
        assert len({o.user.id for o in outcomes}) == 1
        assert len(memory_store.users) == 1

    async def test_concurrent_async_logins_create_one_account(
        self, linker, identity_provider, memory_store
    ):
        identity_provider.add("dave-token", sub="g-dave", email="dave@example.com")
        outcomes = await asyncio.gather(
            *(linker.authenticate_federated("dave-token") for _ in range(5))
        )
        assert sum(1 for o in outcomes if o.is_new_user) == 1
        assert len(memory_store.users) == 1


class TestLinkExplicit:
    async def test_mismatched_email_performs_no_write(
        self, linker, identity_provider, memory_store, alice
    ):
        identity_provider.add("mallory", sub="g-mallory", email="mallory@example.com")
        before = memory_store.get_user(alice.id)

        with pytest.raises(CredentialError) as exc:
            await linker.link_explicit("mallory", "alice@example.com", user_id=alice.id)

        assert exc.value.code == ErrorCode.EMAIL_MISMATCH
        after = memory_store.get_user(alice.id)
        assert after.federated_id is None
        assert after.updated_at == before.updated_at
        assert memory_store.get_user_by_federated_id("g-mallory") is None

    async def test_matching_email_links(self, linker, identity_provider, memory_store, alice):
        identity_provider.add("alice-token", sub="g-alice", email="ALICE@example.com")
        user = await linker.link_explicit("alice-token", "Alice@Example.com", user_id=alice.id)
        assert user.federated_id == "g-alice"
        assert user.password_hash == alice.password_hash

    async def test_relinking_same_identity_is_idempotent(
        self, linker, identity_provider, alice
    ):
        identity_provider.add("alice-token", sub="g-alice", email="alice@example.com")
        first = await linker.link_explicit("alice-token", "alice@example.com", user_id=alice.id)
        second = await linker.link_explicit("alice-token", "alice@example.com", user_id=alice.id)
        assert first.federated_id == second.federated_id == "g-alice"

    async def test_identity_owned_by_another_account(
        self, linker, identity_provider, memory_store, alice, hasher
    ):
        memory_store.create_user("alice.work@example.com", federated_id="g-alice")
        identity_provider.add("alice-token", sub="g-alice", email="alice@example.com")
        with pytest.raises(StateConflictError) as exc:
            await linker.link_explicit("alice-token", "alice@example.com", user_id=alice.id)
        assert exc.value.code == ErrorCode.FEDERATED_ID_IN_USE

    async def test_unknown_user(self, linker, identity_provider):
        identity_provider.add("ghost", sub="g-ghost", email="ghost@example.com")
        with pytest.raises(NotFoundError):
            await linker.link_explicit("ghost", "ghost@example.com")


class TestUnlink:
    def test_unlink_requires_password(self, linker, memory_store):
        federated_only = memory_store.create_user("fed@example.com", federated_id="g-fed")
        with pytest.raises(StateConflictError) as exc:
            linker.unlink(federated_only.id)
        assert exc.value.code == ErrorCode.NO_ALTERNATE_AUTH
        assert memory_store.get_user(federated_only.id).federated_id == "g-fed"

    def test_unlink_with_password_clears_identity(self, linker, memory_store, alice):
        memory_store.set_federated_identity(alice.id, "g-alice")
        user = linker.unlink(alice.id)
        assert user.federated_id is None
        assert memory_store.get_user_by_federated_id("g-alice") is None
        # Identity is free to be linked again
        assert linker.unlink(alice.id).federated_id is None

    def test_unlink_unknown_user(self, linker):
        with pytest.raises(NotFoundError):
            linker.unlink("missing")

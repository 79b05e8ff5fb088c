from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from warden.logging import get_logger
from warden.service.credentials import CredentialVerifier, FederatedAssertionClaims
from warden.service.errors import (
    CredentialError,
    ErrorCode,
    NotFoundError,
    StateConflictError,
)
from warden.service.locks import KeyedLock
from warden.storage.errors import ConstraintViolation
from warden.storage.models import DEFAULT_ROLE, User, utcnow

logger = get_logger(__name__)


class AccountRepository(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_federated_id(self, federated_id: str) -> Optional[User]: ...

    def create_user(self, email: str, **kwargs) -> User: ...

    def set_federated_identity(self, user_id: str, federated_id: str, **kwargs) -> User: ...

    def clear_federated_identity(self, user_id: str, **kwargs) -> User: ...

    def record_login(self, user_id: str, at: datetime) -> Optional[User]: ...


@dataclass(frozen=True)
class FederatedLogin:
    user: User
    is_new_user: bool
    linked: bool = False


class AccountLinker:
    """Reconciles a federated identity with local accounts.

    Resolution order for a verified assertion: existing federated id, then an
    existing account with the same email (linked in place), then a brand new
    account. Critical sections are keyed by identity subject and by email so
    two concurrent first logins cannot create duplicate accounts.
    """

    def __init__(
        self,
        store: AccountRepository,
        verifier: CredentialVerifier,
        *,
        locks: Optional[KeyedLock] = None,
        default_role: str = DEFAULT_ROLE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.locks = locks or KeyedLock()
        self.default_role = default_role
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    async def authenticate_federated(self, raw_assertion: str) -> FederatedLogin:
        claims = await self.verifier.verify_federated_assertion(raw_assertion)
        return self.resolve(claims)

    def resolve(self, claims: FederatedAssertionClaims) -> FederatedLogin:
        """Apply the login/link/create decision for already-verified claims."""
        with self.locks.hold(f"identity:{claims.subject_id}"), self.locks.hold(
            f"email:{claims.email}"
        ):
            now = self._now()
            existing = self.store.get_user_by_federated_id(claims.subject_id)
            if existing is not None:
                user = self.store.record_login(existing.id, now) or existing
                return FederatedLogin(user=user, is_new_user=False)

            by_email = self.store.get_user_by_email(claims.email)
            if by_email is not None:
                if by_email.federated_id and by_email.federated_id != claims.subject_id:
                    logger.warning(
                        "federated_link_conflict",
                        user_id=by_email.id,
                        reason="account_linked_to_other_identity",
                    )
                    raise StateConflictError(ErrorCode.FEDERATED_ID_IN_USE)
                try:
                    # Provider is authoritative for email ownership; password stays as-is
                    self.store.set_federated_identity(
                        by_email.id,
                        claims.subject_id,
                        email_verified=True,
                        display_name=claims.display_name,
                        avatar_url=claims.avatar_url,
                        now=now,
                    )
                except ConstraintViolation as exc:
                    raise StateConflictError(ErrorCode.FEDERATED_ID_IN_USE) from exc
                user = self.store.record_login(by_email.id, now)
                logger.info("federated_identity_linked", user_id=by_email.id, mode="email_match")
                return FederatedLogin(user=user or by_email, is_new_user=False, linked=True)

            try:
                created = self.store.create_user(
                    claims.email,
                    federated_id=claims.subject_id,
                    email_verified=True,
                    role=self.default_role,
                    display_name=claims.display_name,
                    avatar_url=claims.avatar_url,
                    now=now,
                )
            except ConstraintViolation as exc:
                # Lost a race with a concurrent signup for the same email or subject
                code = (
                    ErrorCode.EMAIL_ALREADY_REGISTERED
                    if exc.field == "email"
                    else ErrorCode.FEDERATED_ID_IN_USE
                )
                raise StateConflictError(code, detail={"field": exc.field}) from exc
            user = self.store.record_login(created.id, now) or created
            logger.info("federated_user_created", user_id=created.id)
            return FederatedLogin(user=user, is_new_user=True)

    async def link_explicit(
        self,
        raw_assertion: str,
        expected_email: str,
        *,
        user_id: Optional[str] = None,
    ) -> User:
        """Attach a federated identity to the account that owns ``expected_email``.

        The assertion's email must match ``expected_email`` case-insensitively;
        otherwise CredentialError(EMAIL_MISMATCH) is raised before any write.
        """
        claims = await self.verifier.verify_federated_assertion(raw_assertion)
        expected = (expected_email or "").strip().lower()
        if claims.email.lower() != expected:
            logger.warning("federated_link_email_mismatch", user_id=user_id)
            raise CredentialError(ErrorCode.EMAIL_MISMATCH)

        with self.locks.hold(f"identity:{claims.subject_id}"), self.locks.hold(
            f"email:{expected}"
        ):
            target = (
                self.store.get_user(user_id)
                if user_id
                else self.store.get_user_by_email(expected)
            )
            if target is None:
                raise NotFoundError(ErrorCode.USER_NOT_FOUND)
            if target.email.lower() != expected:
                raise CredentialError(ErrorCode.EMAIL_MISMATCH)
            if target.federated_id == claims.subject_id:
                return target
            owner = self.store.get_user_by_federated_id(claims.subject_id)
            if owner is not None and owner.id != target.id:
                raise StateConflictError(ErrorCode.FEDERATED_ID_IN_USE)
            if target.federated_id:
                raise StateConflictError(
                    ErrorCode.FEDERATED_ID_IN_USE,
                    "Account is already linked to another identity",
                )
            try:
                user = self.store.set_federated_identity(
                    target.id,
                    claims.subject_id,
                    email_verified=True,
                    display_name=claims.display_name,
                    avatar_url=claims.avatar_url,
                    now=self._now(),
                )
            except ConstraintViolation as exc:
                raise StateConflictError(ErrorCode.FEDERATED_ID_IN_USE) from exc
        logger.info("federated_identity_linked", user_id=user.id, mode="explicit")
        return user

    def unlink(self, user_id: str) -> User:
        """Remove the federated identity; requires a password to remain.

        Does not revoke sessions.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(ErrorCode.USER_NOT_FOUND)
        with self.locks.hold(f"email:{user.email.lower()}"):
            user = self.store.get_user(user_id)
            if user is None:
                raise NotFoundError(ErrorCode.USER_NOT_FOUND)
            if not user.password_hash:
                raise StateConflictError(ErrorCode.NO_ALTERNATE_AUTH)
            if not user.federated_id:
                return user
            try:
                updated = self.store.clear_federated_identity(user_id, now=self._now())
            except ConstraintViolation as exc:
                raise StateConflictError(ErrorCode.NO_ALTERNATE_AUTH) from exc
        logger.info("federated_identity_unlinked", user_id=user_id)
        return updated

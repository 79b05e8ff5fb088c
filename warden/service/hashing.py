from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import DependencyError

logger = get_logger(__name__)

HASH_ALGORITHM = "argon2id"


class CredentialHasher:
    """Salted, deliberately slow one-way hash shared by login and history checks."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost_kib: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.hash_time_cost,
            memory_cost_kib=settings.hash_memory_cost_kib,
            parallelism=settings.hash_parallelism,
        )

    def hash(self, password: str) -> str:
        try:
            return self._hasher.hash(password)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise DependencyError("Password hashing backend failed") from exc

    def verify(self, stored_hash: Optional[str], candidate: str) -> bool:
        """Constant-time check; a missing or malformed hash is simply a mismatch."""
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False
        except VerificationError as exc:
            logger.warning("password_verification_error", error=str(exc))
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

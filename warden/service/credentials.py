from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import urlparse

import httpx

from warden.logging import get_logger
from warden.service.errors import CredentialError, DependencyError, ErrorCode
from warden.service.hashing import CredentialHasher
from warden.storage.models import User

logger = get_logger(__name__)

GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})
ALLOWED_AVATAR_HOSTS = frozenset(
    {f"lh{n}.googleusercontent.com" for n in range(3, 7)}
)
DEFAULT_PROVIDER_TIMEOUT = 5.0


class AssertionRejected(Exception):
    """The identity provider refused the assertion (signature, expiry, audience)."""


class ProviderUnavailable(Exception):
    """The identity provider could not be reached."""


@dataclass(frozen=True)
class FederatedAssertionClaims:
    """Verified identity claims; the only shape downstream code sees."""

    subject_id: str
    email: str
    display_name: str
    email_verified: bool
    avatar_url: Optional[str] = None
    issuer: Optional[str] = None


class IdentityProvider(Protocol):
    async def verify(self, raw_assertion: str) -> Mapping[str, Any]:
        """Return the provider's verified claim payload or raise AssertionRejected."""
        ...


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes"}


def sanitize_avatar_url(url: Any) -> Optional[str]:
    """Keep only https avatar URLs served from the provider's image CDN."""
    if not isinstance(url, str) or not url:
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme != "https" or parsed.hostname not in ALLOWED_AVATAR_HOSTS:
        return None
    return url


class GoogleIdentityProvider:
    """Verifies Google ID tokens against the public tokeninfo endpoint."""

    def __init__(
        self,
        client_id: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo",
        timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT,
    ) -> None:
        if not client_id:
            raise ValueError("client_id is required for Google verification")
        self.client_id = client_id
        self.tokeninfo_url = tokeninfo_url
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def verify(self, raw_assertion: str) -> Mapping[str, Any]:
        try:
            if self._http_client is not None:
                response = await self._http_client.get(
                    self.tokeninfo_url,
                    params={"id_token": raw_assertion},
                    timeout=self.timeout_seconds,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(
                        self.tokeninfo_url, params={"id_token": raw_assertion}
                    )
        except httpx.TimeoutException as exc:
            raise AssertionRejected("identity provider timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(str(exc)) from exc

        if response.status_code >= 500:
            raise ProviderUnavailable(f"tokeninfo returned {response.status_code}")
        if response.status_code != 200:
            raise AssertionRejected(f"tokeninfo returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise AssertionRejected("tokeninfo returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise AssertionRejected("tokeninfo returned unexpected payload")

        if payload.get("aud") != self.client_id:
            raise AssertionRejected("audience mismatch")
        if payload.get("iss") not in GOOGLE_ISSUERS:
            raise AssertionRejected("issuer mismatch")
        try:
            exp = float(payload.get("exp", 0))
        except (TypeError, ValueError) as exc:
            raise AssertionRejected("expiry missing") from exc
        if exp <= time.time():
            raise AssertionRejected("assertion expired")
        return payload


class CredentialVerifier:
    """Checks passwords and federated assertions. Performs no persistence."""

    def __init__(
        self,
        hasher: CredentialHasher,
        identity_provider: Optional[IdentityProvider] = None,
        *,
        provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT,
    ) -> None:
        self.hasher = hasher
        self.identity_provider = identity_provider
        self.provider_timeout_seconds = provider_timeout_seconds
        self._dummy_hash: Optional[str] = None

    def verify_password(self, user: Optional[User], candidate: str) -> bool:
        """Constant-time password check; False when the user has no password."""
        if user is None or not user.password_hash:
            # Burn comparable time so unknown accounts are not distinguishable
            self.hasher.verify(self._placeholder_hash(), candidate or "")
            return False
        return self.hasher.verify(user.password_hash, candidate)

    def _placeholder_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash("placeholder-credential")
        return self._dummy_hash

    async def verify_federated_assertion(
        self, raw_assertion: str
    ) -> FederatedAssertionClaims:
        """Verify ``raw_assertion`` and return normalized claims.

        Raises CredentialError(INVALID_ASSERTION) on any rejection or timeout and
        DependencyError when the provider cannot be reached at all.
        """
        if self.identity_provider is None:
            logger.error("identity_provider_not_configured")
            raise DependencyError("Federated sign-in is not configured")
        if not raw_assertion:
            raise CredentialError(ErrorCode.INVALID_ASSERTION)
        try:
            payload = await asyncio.wait_for(
                self.identity_provider.verify(raw_assertion),
                timeout=self.provider_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("identity_provider_timeout", timeout=self.provider_timeout_seconds)
            raise CredentialError(ErrorCode.INVALID_ASSERTION) from exc
        except AssertionRejected as exc:
            logger.warning("federated_assertion_rejected", reason=str(exc))
            raise CredentialError(ErrorCode.INVALID_ASSERTION) from exc
        except ProviderUnavailable as exc:
            logger.error("identity_provider_unavailable", error=str(exc))
            raise DependencyError("Identity provider unavailable") from exc
        return self._claims_from_payload(payload)

    @staticmethod
    def _claims_from_payload(payload: Mapping[str, Any]) -> FederatedAssertionClaims:
        subject = payload.get("sub")
        email = payload.get("email")
        if not isinstance(subject, str) or not subject.strip():
            logger.warning("federated_assertion_incomplete", missing="sub")
            raise CredentialError(ErrorCode.INVALID_ASSERTION)
        if not isinstance(email, str) or "@" not in email:
            logger.warning("federated_assertion_incomplete", missing="email")
            raise CredentialError(ErrorCode.INVALID_ASSERTION)
        email = email.strip().lower()
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            name = email.split("@", 1)[0]
        return FederatedAssertionClaims(
            subject_id=subject.strip(),
            email=email,
            display_name=name.strip(),
            email_verified=_truthy(payload.get("email_verified", False)),
            avatar_url=sanitize_avatar_url(payload.get("picture")),
            issuer=payload.get("iss"),
        )

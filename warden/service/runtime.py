from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.auth import AuthenticationOrchestrator
from warden.service.collaborators import AuditSink, CollaboratorDispatcher, Notifier
from warden.service.credentials import (
    CredentialVerifier,
    GoogleIdentityProvider,
    IdentityProvider,
)
from warden.service.hashing import CredentialHasher
from warden.service.linking import AccountLinker
from warden.service.locks import KeyedLock
from warden.service.password_policy import PasswordPolicyEngine
from warden.service.password_reset import PasswordResetManager
from warden.service.rate_limit import MemoryRateLimitBackend, RateLimiter
from warden.service.sessions import CleanupReport, SessionStore
from warden.service.tokens import TokenAuthority
from warden.storage.memory import MemoryStore
from warden.storage.models import utcnow
from warden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds and holds the wired auth components for one process.

    Collaborators can be injected for tests; otherwise they are derived from
    settings (Google provider when a client id is configured, Redis rate
    limits when REDIS_URL is reachable, logging notifier and audit sink).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        identity_provider: Optional[IdentityProvider] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditSink] = None,
        hasher: Optional[CredentialHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            persist_memory_store=self.settings.persist_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(
            fs_root=self.settings.shared_fs_root if self.settings.persist_memory_store else None
        )

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "Redis is configured for rate limits but unreachable; "
                        "unset REDIS_URL to use in-process limits"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    mode="TEST_MODE",
                )
        self.rate_limiter = RateLimiter(
            self.cache or MemoryRateLimitBackend(),
            clock=lambda: clock().timestamp(),
        )

        if identity_provider is None and self.settings.google_client_id:
            identity_provider = GoogleIdentityProvider(
                self.settings.google_client_id,
                tokeninfo_url=self.settings.google_tokeninfo_url,
                timeout_seconds=self.settings.identity_provider_timeout_seconds,
            )
        if identity_provider is None:
            logger.warning("identity_provider_missing", message="federated sign-in disabled")

        self.locks = KeyedLock(self.settings.session_lock_timeout_seconds)
        self.hasher = hasher or CredentialHasher.from_settings(self.settings)
        self.policy = PasswordPolicyEngine.from_settings(self.settings, self.hasher, self.store)
        self.verifier = CredentialVerifier(
            self.hasher,
            identity_provider,
            provider_timeout_seconds=self.settings.identity_provider_timeout_seconds,
        )
        self.tokens = TokenAuthority(self.store, self.settings, clock=clock)
        self.sessions = SessionStore(
            self.store,
            self.tokens,
            max_sessions_per_user=self.settings.max_sessions_per_user,
            locks=self.locks,
            clock=clock,
        )
        self.linker = AccountLinker(self.store, self.verifier, locks=self.locks, clock=clock)
        self.resets = PasswordResetManager(
            self.store, ttl_minutes=self.settings.password_reset_token_ttl_minutes, clock=clock
        )
        self.dispatcher = CollaboratorDispatcher(
            notifier, audit, timeout_seconds=self.settings.collaborator_timeout_seconds
        )
        self.auth = AuthenticationOrchestrator(
            settings=self.settings,
            store=self.store,
            hasher=self.hasher,
            policy=self.policy,
            verifier=self.verifier,
            tokens=self.tokens,
            sessions=self.sessions,
            linker=self.linker,
            rate_limiter=self.rate_limiter,
            resets=self.resets,
            dispatcher=self.dispatcher,
            clock=clock,
        )
        logger.info(
            "runtime_init_completed",
            rate_limit_backend="redis" if self.cache else "memory",
            federated=identity_provider is not None,
        )

    def cleanup_sessions(self) -> CleanupReport:
        """Expire overdue sessions and purge old inactive rows."""
        return self.sessions.cleanup(
            timedelta(days=self.settings.inactive_session_retention_days)
        )

    def cleanup_reset_tokens(self) -> int:
        """Drop used and expired password reset tokens."""
        return self.resets.cleanup()

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a fresh environment read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime

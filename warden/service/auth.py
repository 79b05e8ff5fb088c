from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Mapping, Optional, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError

from warden.api.schemas import (
    AccessClaimsView,
    AssertionRequest,
    AuthMethods,
    DeviceInfo,
    LinkResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    PasswordChangeResponse,
    PasswordResetRequest,
    PasswordResetRequested,
    RefreshResponse,
    RegisterRequest,
    ResetTokenStatus,
    SessionView,
    TokenBundle,
    UserView,
)
from warden.config import Settings
from warden.logging import get_logger, mask_email, mask_ip
from warden.service.collaborators import (
    AuditAction,
    AuditEvent,
    CollaboratorDispatcher,
    NotificationKind,
)
from warden.service.credentials import CredentialVerifier
from warden.service.devices import coarse_location, device_fingerprint, device_label
from warden.service.errors import (
    CredentialError,
    ErrorCode,
    NotFoundError,
    ServiceError,
    StateConflictError,
    TokenError,
    ValidationError,
)
from warden.service.hashing import CredentialHasher
from warden.service.linking import AccountLinker
from warden.service.password_policy import PasswordPolicyEngine
from warden.service.password_reset import PasswordResetManager
from warden.service.rate_limit import RateLimiter
from warden.service.results import AuthResult
from warden.service.sessions import SessionStore
from warden.service.tokens import TokenAuthority, TokenClaims, hash_refresh_token
from warden.storage.errors import ConstraintViolation
from warden.storage.memory import MemoryStore
from warden.storage.models import (
    DEFAULT_ROLE,
    PasswordHistoryEntry,
    RevocationReason,
    Session,
    User,
    utcnow,
)

T = TypeVar("T")

DeviceInput = Union[DeviceInfo, Mapping[str, Any], None]

ACCOUNT_EMAIL_ONLY = "EMAIL_ONLY"
ACCOUNT_FEDERATED_ONLY = "FEDERATED_ONLY"
ACCOUNT_MIXED = "MIXED"


def _coerce_device(device_info: DeviceInput) -> DeviceInfo:
    if device_info is None:
        return DeviceInfo()
    if isinstance(device_info, DeviceInfo):
        return device_info
    return DeviceInfo.model_validate(dict(device_info))


def _audit_context(device_info: DeviceInput) -> tuple[Optional[str], Optional[str]]:
    """Best-effort ip/user agent for audit events, even when validation failed."""
    if isinstance(device_info, DeviceInfo):
        return device_info.ip_address, device_info.user_agent
    if isinstance(device_info, Mapping):
        ip = device_info.get("ip_address")
        ua = device_info.get("user_agent")
        return (ip if isinstance(ip, str) else None, ua if isinstance(ua, str) else None)
    return None, None


def _validation_failure(exc: PydanticValidationError) -> ValidationError:
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return ValidationError(ErrorCode.VALIDATION_FAILED, detail={"errors": errors})


def user_view(user: User) -> UserView:
    return UserView(
        id=user.id,
        email=user.email,
        role=user.role,
        email_verified=user.email_verified,
        is_active=user.is_active,
        has_password=user.has_password,
        has_federated_identity=user.has_federated_identity,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def session_view(session: Session, current_session_id: Optional[str] = None) -> SessionView:
    return SessionView(
        id=session.id,
        device_label=session.device_label,
        location=coarse_location(session.ip_address),
        ip_address=session.ip_address,
        created_at=session.created_at,
        last_activity_at=session.last_activity_at,
        is_current=bool(current_session_id) and session.id == current_session_id,
    )


class AuthenticationOrchestrator:
    """Public façade for login, refresh, logout, session and credential management.

    Every public coroutine returns an :class:`AuthResult`; service failures
    and input validation errors never escape as exceptions. Storage faults and
    programming errors do propagate.

    Ordering inside each flow: slow hashing first (in a worker thread), then
    the short locked store mutations, then audit and notification dispatch
    once the new state has committed.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: MemoryStore,
        hasher: CredentialHasher,
        policy: PasswordPolicyEngine,
        verifier: CredentialVerifier,
        tokens: TokenAuthority,
        sessions: SessionStore,
        linker: AccountLinker,
        rate_limiter: RateLimiter,
        resets: Optional[PasswordResetManager] = None,
        dispatcher: Optional[CollaboratorDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.hasher = hasher
        self.policy = policy
        self.verifier = verifier
        self.tokens = tokens
        self.sessions = sessions
        self.linker = linker
        self.rate_limiter = rate_limiter
        self.dispatcher = dispatcher or CollaboratorDispatcher(
            timeout_seconds=settings.collaborator_timeout_seconds
        )
        self.resets = resets or PasswordResetManager(
            store, ttl_minutes=settings.password_reset_token_ttl_minutes, clock=clock
        )
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    async def _guard(
        self,
        action: Optional[AuditAction],
        operation: Callable[[], Awaitable[T]],
        *,
        user_id: Optional[str] = None,
        device_info: DeviceInput = None,
    ) -> AuthResult[T]:
        try:
            value = await operation()
        except PydanticValidationError as exc:
            error: ServiceError = _validation_failure(exc)
        except ServiceError as exc:
            error = exc
        else:
            return AuthResult.success(value)

        self.logger.info(
            "auth_operation_failed",
            action=action.value if action else None,
            code=error.code.value,
            user_id=user_id,
        )
        if action is not None:
            ip, user_agent = _audit_context(device_info)
            await self.dispatcher.audit_event(
                AuditEvent(
                    action=action,
                    success=False,
                    user_id=user_id,
                    ip=ip,
                    user_agent=user_agent,
                    timestamp=self._now(),
                    error_code=error.code.value,
                )
            )
        return AuthResult.failure(error)

    async def _audit_success(
        self,
        action: AuditAction,
        user_id: Optional[str],
        device: Optional[DeviceInfo] = None,
        **details: Any,
    ) -> None:
        await self.dispatcher.audit_event(
            AuditEvent(
                action=action,
                success=True,
                user_id=user_id,
                ip=device.ip_address if device else None,
                user_agent=device.user_agent if device else None,
                timestamp=self._now(),
                details=details,
            )
        )

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            raise NotFoundError(ErrorCode.USER_NOT_FOUND)
        return user

    async def _enforce_rate_limit(self, key: str, limit: int, window_seconds: int) -> None:
        decision = await self.rate_limiter.hit(key, limit, window_seconds)
        decision.raise_for_limit()

    def _check_policy(self, password: str, user_email: str, display_name: Optional[str]) -> None:
        report = self.policy.validate(password, email=user_email, display_name=display_name)
        if not report.valid:
            raise ValidationError(ErrorCode.PASSWORD_TOO_WEAK, detail=report.as_detail())

    def _store_password(self, user_id: str, password_hash: str) -> User:
        now = self._now()
        user = self.store.update_password_hash(user_id, password_hash, now=now)
        self.store.add_password_history(
            PasswordHistoryEntry(user_id=user_id, password_hash=password_hash, created_at=now),
            self.settings.password_history_limit,
        )
        return user

    # ------------------------------------------------------------ sessions

    async def _open_session(
        self,
        user: User,
        device: DeviceInfo,
        *,
        action: AuditAction,
        is_new_user: bool = False,
        **details: Any,
    ) -> LoginResponse:
        """Mint tokens and register a session for an already authenticated user."""
        session_id = str(uuid.uuid4())
        issued = self.tokens.issue(
            TokenClaims.for_user(user),
            session_id=session_id,
            remember_me=device.remember_me,
        )
        now = self._now()
        session = Session.new(
            user.id,
            issued.refresh_token_hash,
            ttl_minutes=issued.refresh_ttl_minutes,
            now=now,
            device_fingerprint=device_fingerprint(device),
            device_label=device_label(device.user_agent),
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            session_id=session_id,
        )
        registered = self.sessions.register(user.id, session)
        user = self.store.record_login(user.id, now) or user

        for victim in registered.evicted:
            await self._audit_success(
                AuditAction.SESSION_EVICTED, user.id, None, session_id=victim.id
            )
        await self._audit_success(
            action,
            user.id,
            device,
            session_id=registered.session.id,
            new_device=registered.is_new_device,
            **details,
        )
        if is_new_user:
            await self.dispatcher.notify(NotificationKind.WELCOME, user.email)
        elif registered.is_new_device:
            await self.dispatcher.notify(
                NotificationKind.NEW_DEVICE,
                user.email,
                device=registered.session.device_label,
                ip=mask_ip(device.ip_address),
                location=coarse_location(device.ip_address),
            )

        return LoginResponse(
            user=user_view(user),
            tokens=TokenBundle(
                access_token=issued.access_token,
                refresh_token=issued.refresh_token,
                expires_in=issued.expires_in,
                refresh_expires_at=registered.session.refresh_expires_at,
            ),
            session=session_view(registered.session, registered.session.id),
            is_new_user=is_new_user,
            is_new_device=registered.is_new_device,
        )

    # -------------------------------------------------------------- login

    async def register(
        self,
        email: str,
        password: str,
        device_info: DeviceInput = None,
        display_name: Optional[str] = None,
    ) -> AuthResult[LoginResponse]:
        async def operation() -> LoginResponse:
            request = RegisterRequest(email=email, password=password, display_name=display_name)
            device = _coerce_device(device_info)
            self._check_policy(request.password, request.email, request.display_name)
            if self.store.get_user_by_email(request.email) is not None:
                raise StateConflictError(ErrorCode.EMAIL_ALREADY_REGISTERED)
            password_hash = await asyncio.to_thread(self.hasher.hash, request.password)
            now = self._now()
            try:
                user = self.store.create_user(
                    request.email,
                    password_hash=password_hash,
                    role=DEFAULT_ROLE,
                    display_name=request.display_name,
                    now=now,
                )
            except ConstraintViolation as exc:
                raise StateConflictError(ErrorCode.EMAIL_ALREADY_REGISTERED) from exc
            self.store.add_password_history(
                PasswordHistoryEntry(user_id=user.id, password_hash=password_hash, created_at=now),
                self.settings.password_history_limit,
            )
            self.logger.info("user_registered", user_id=user.id)
            return await self._open_session(
                user, device, action=AuditAction.REGISTER, is_new_user=True
            )

        return await self._guard(AuditAction.REGISTER, operation, device_info=device_info)

    async def login(
        self, email: str, password: str, device_info: DeviceInput = None
    ) -> AuthResult[LoginResponse]:
        """Password login. Unknown email and wrong password are indistinguishable."""

        async def operation() -> LoginResponse:
            request = LoginRequest(email=email, password=password)
            device = _coerce_device(device_info)
            rate_key = f"login:{request.email}"
            await self._enforce_rate_limit(
                rate_key,
                self.settings.login_rate_limit,
                self.settings.login_rate_window_seconds,
            )
            user = self.store.get_user_by_email(request.email)
            valid = await asyncio.to_thread(self.verifier.verify_password, user, request.password)
            if not valid or user is None:
                raise CredentialError(ErrorCode.INVALID_CREDENTIALS)
            if not user.is_active:
                raise CredentialError(ErrorCode.ACCOUNT_DISABLED)
            await self.rate_limiter.reset(rate_key)
            if user.password_hash and self.hasher.needs_rehash(user.password_hash):
                upgraded = await asyncio.to_thread(self.hasher.hash, request.password)
                user = self.store.update_password_hash(user.id, upgraded, now=self._now())
                self.logger.info("password_rehashed", user_id=user.id)
            return await self._open_session(user, device, action=AuditAction.LOGIN)

        return await self._guard(AuditAction.LOGIN, operation, device_info=device_info)

    async def login_federated(
        self, assertion: str, device_info: DeviceInput = None
    ) -> AuthResult[LoginResponse]:
        async def operation() -> LoginResponse:
            request = AssertionRequest(assertion=assertion)
            device = _coerce_device(device_info)
            outcome = await self.linker.authenticate_federated(request.assertion)
            if not outcome.user.is_active:
                raise CredentialError(ErrorCode.ACCOUNT_DISABLED)
            response = await self._open_session(
                outcome.user,
                device,
                action=AuditAction.LOGIN_FEDERATED,
                is_new_user=outcome.is_new_user,
                linked=outcome.linked,
            )
            if outcome.linked:
                await self._audit_success(
                    AuditAction.ACCOUNT_LINK, outcome.user.id, device, mode="email_match"
                )
                await self.dispatcher.notify(NotificationKind.ACCOUNT_LINKED, outcome.user.email)
            return response

        return await self._guard(
            AuditAction.LOGIN_FEDERATED, operation, device_info=device_info
        )

    # ------------------------------------------------------------- tokens

    async def refresh(
        self, refresh_token: str, device_info: DeviceInput = None
    ) -> AuthResult[RefreshResponse]:
        async def operation() -> RefreshResponse:
            device = _coerce_device(device_info)
            outcome = self.tokens.refresh(refresh_token)
            self.sessions.touch(outcome.session.id, device.ip_address)
            await self._audit_success(
                AuditAction.REFRESH,
                outcome.user.id,
                device,
                session_id=outcome.session.id,
                rotated=outcome.refresh_token is not None,
            )
            return RefreshResponse(
                access_token=outcome.access_token,
                expires_in=outcome.expires_in,
                refresh_token=outcome.refresh_token,
                refresh_expires_at=outcome.refresh_expires_at,
            )

        return await self._guard(AuditAction.REFRESH, operation, device_info=device_info)

    async def verify_access_token(self, token: str) -> AuthResult[AccessClaimsView]:
        async def operation() -> AccessClaimsView:
            claims = self.tokens.verify_access(token)
            return AccessClaimsView(
                user_id=claims.user_id,
                email=claims.email,
                role=claims.role,
                session_id=claims.session_id,
                issued_at=claims.issued_at,
                expires_at=claims.expires_at,
            )

        return await self._guard(None, operation)

    async def logout(
        self,
        refresh_token: Optional[str] = None,
        all_devices: bool = False,
        *,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AuthResult[LogoutResponse]:
        """End one session, or every session of its owner when ``all_devices``.

        The session is identified by the presented refresh token, or by an
        explicit ``session_id`` together with its owner's ``user_id``.
        Logging out an already inactive session succeeds with zero revoked.
        """
        action = AuditAction.LOGOUT_ALL if all_devices else AuditAction.LOGOUT

        async def operation() -> LogoutResponse:
            if refresh_token:
                session = self.store.get_session_by_refresh_hash(
                    hash_refresh_token(refresh_token)
                )
                if session is None:
                    raise TokenError(ErrorCode.REFRESH_INVALID)
            elif session_id and user_id:
                session = self.sessions.get(session_id)
                if session is None or session.user_id != user_id:
                    raise NotFoundError(ErrorCode.SESSION_NOT_FOUND)
            else:
                raise ValidationError(
                    ErrorCode.VALIDATION_FAILED,
                    "A refresh token or a session id with its user id is required",
                )
            if all_devices:
                if not session.active:
                    raise TokenError(ErrorCode.REFRESH_INVALID)
                revoked = self.sessions.invalidate_all(
                    session.user_id, reason=RevocationReason.LOGOUT_ALL
                )
            else:
                revoked = int(
                    self.sessions.invalidate(
                        session.id, session.user_id, reason=RevocationReason.LOGOUT
                    )
                )
            await self._audit_success(
                action, session.user_id, None, session_id=session.id, sessions_revoked=revoked
            )
            return LogoutResponse(sessions_revoked=revoked)

        return await self._guard(action, operation, user_id=user_id)

    # ----------------------------------------------------------- sessions

    async def list_sessions(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> AuthResult[List[SessionView]]:
        async def operation() -> List[SessionView]:
            self._require_user(user_id)
            return [
                session_view(session, current_session_id)
                for session in self.sessions.list_active(user_id)
            ]

        return await self._guard(None, operation, user_id=user_id)

    async def invalidate_session(
        self, user_id: str, session_id: str
    ) -> AuthResult[LogoutResponse]:
        async def operation() -> LogoutResponse:
            self._require_user(user_id)
            revoked = self.sessions.invalidate(session_id, user_id)
            await self._audit_success(
                AuditAction.SESSION_INVALIDATED, user_id, None, session_id=session_id
            )
            return LogoutResponse(sessions_revoked=int(revoked))

        return await self._guard(
            AuditAction.SESSION_INVALIDATED, operation, user_id=user_id
        )

    # ---------------------------------------------------------- passwords

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        invalidate_others: bool = False,
        *,
        current_session_id: Optional[str] = None,
    ) -> AuthResult[PasswordChangeResponse]:
        """Replace the password after confirming the current one.

        With ``invalidate_others`` every other active session is revoked;
        the caller must name its own session in ``current_session_id``.
        """

        async def operation() -> PasswordChangeResponse:
            user = self._require_user(user_id)
            await self._enforce_rate_limit(
                f"password_change:{user_id}",
                self.settings.password_change_rate_limit,
                self.settings.password_change_rate_window_seconds,
            )
            if not user.password_hash:
                raise StateConflictError(ErrorCode.NO_PASSWORD_SET)
            if invalidate_others:
                if not current_session_id:
                    raise ValidationError(
                        ErrorCode.VALIDATION_FAILED,
                        "current_session_id is required to keep the caller's session",
                    )
                own = self.sessions.get(current_session_id)
                if own is None or own.user_id != user_id:
                    raise NotFoundError(ErrorCode.SESSION_NOT_FOUND)
            self._check_policy(new_password, user.email, user.display_name)
            if not await asyncio.to_thread(
                self.verifier.verify_password, user, current_password or ""
            ):
                raise CredentialError(ErrorCode.INVALID_CURRENT_PASSWORD)
            if await asyncio.to_thread(self.policy.history_check, user_id, new_password):
                raise StateConflictError(ErrorCode.PASSWORD_REUSED)

            new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
            self._store_password(user_id, new_hash)
            invalidated = 0
            if invalidate_others:
                invalidated = self.sessions.invalidate_all(
                    user_id,
                    except_session_id=current_session_id,
                    reason=RevocationReason.PASSWORD_CHANGED,
                )
            self.logger.info(
                "password_changed", user_id=user_id, sessions_invalidated=invalidated
            )
            await self._audit_success(
                AuditAction.PASSWORD_CHANGE, user_id, None, sessions_invalidated=invalidated
            )
            await self.dispatcher.notify(NotificationKind.PASSWORD_CHANGED, user.email)
            return PasswordChangeResponse(sessions_invalidated=invalidated)

        return await self._guard(AuditAction.PASSWORD_CHANGE, operation, user_id=user_id)

    async def set_password(self, user_id: str, new_password: str) -> AuthResult[AuthMethods]:
        """Add a password to an account that signs in only through federation."""

        async def operation() -> AuthMethods:
            user = self._require_user(user_id)
            if user.password_hash:
                raise StateConflictError(ErrorCode.PASSWORD_ALREADY_EXISTS)
            self._check_policy(new_password, user.email, user.display_name)
            if await asyncio.to_thread(self.policy.history_check, user_id, new_password):
                raise StateConflictError(ErrorCode.PASSWORD_REUSED)
            new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
            updated = self._store_password(user_id, new_hash)
            self.logger.info("password_set", user_id=user_id)
            await self._audit_success(AuditAction.PASSWORD_SET, user_id)
            await self.dispatcher.notify(NotificationKind.PASSWORD_SET, user.email)
            return self._auth_methods(updated)

        return await self._guard(AuditAction.PASSWORD_SET, operation, user_id=user_id)

    async def remove_password(
        self, user_id: str, current_password: str, confirm: bool = False
    ) -> AuthResult[PasswordChangeResponse]:
        """Drop the password of a linked account and revoke every session."""

        async def operation() -> PasswordChangeResponse:
            if not confirm:
                raise ValidationError(ErrorCode.CONFIRMATION_REQUIRED)
            user = self._require_user(user_id)
            if not user.password_hash:
                raise StateConflictError(ErrorCode.NO_PASSWORD_SET)
            if not user.federated_id:
                raise StateConflictError(ErrorCode.NO_ALTERNATE_AUTH)
            await self._enforce_rate_limit(
                f"password_change:{user_id}",
                self.settings.password_change_rate_limit,
                self.settings.password_change_rate_window_seconds,
            )
            if not await asyncio.to_thread(
                self.verifier.verify_password, user, current_password or ""
            ):
                raise CredentialError(ErrorCode.INVALID_CURRENT_PASSWORD)
            try:
                self.store.update_password_hash(user_id, None, now=self._now())
            except ConstraintViolation as exc:
                # Federated identity was unlinked concurrently
                raise StateConflictError(ErrorCode.NO_ALTERNATE_AUTH) from exc
            revoked = self.sessions.invalidate_all(
                user_id, reason=RevocationReason.PASSWORD_REMOVED
            )
            self.logger.info("password_removed", user_id=user_id, sessions_revoked=revoked)
            await self._audit_success(
                AuditAction.PASSWORD_REMOVE, user_id, None, sessions_revoked=revoked
            )
            await self.dispatcher.notify(NotificationKind.PASSWORD_REMOVED, user.email)
            return PasswordChangeResponse(sessions_invalidated=revoked)

        return await self._guard(AuditAction.PASSWORD_REMOVE, operation, user_id=user_id)

    async def request_password_reset(
        self, email: str, device_info: DeviceInput = None
    ) -> AuthResult[PasswordResetRequested]:
        """Email a reset token. The result does not reveal whether the account exists."""

        async def operation() -> PasswordResetRequested:
            request = PasswordResetRequest(email=email)
            device = _coerce_device(device_info)
            await self._enforce_rate_limit(
                f"password_reset:{request.email}",
                self.settings.password_reset_rate_limit,
                self.settings.password_reset_rate_window_seconds,
            )
            user = self.store.get_user_by_email(request.email)
            if user is None or not user.is_active:
                self.logger.info(
                    "password_reset_unknown_account", to=mask_email(request.email)
                )
                await self.dispatcher.audit_event(
                    AuditEvent(
                        action=AuditAction.PASSWORD_RESET_REQUEST,
                        success=False,
                        user_id=user.id if user else None,
                        ip=device.ip_address,
                        user_agent=device.user_agent,
                        timestamp=self._now(),
                        error_code=ErrorCode.USER_NOT_FOUND.value,
                    )
                )
                return PasswordResetRequested()
            issued = self.resets.issue(user)
            await self._audit_success(AuditAction.PASSWORD_RESET_REQUEST, user.id, device)
            await self.dispatcher.notify(
                NotificationKind.PASSWORD_RESET,
                user.email,
                reset_token=issued.token,
                expires_at=issued.expires_at.isoformat(),
                ip=mask_ip(device.ip_address),
            )
            return PasswordResetRequested()

        return await self._guard(
            AuditAction.PASSWORD_RESET_REQUEST, operation, device_info=device_info
        )

    async def verify_reset_token(self, token: str) -> AuthResult[ResetTokenStatus]:
        async def operation() -> ResetTokenStatus:
            verified = self.resets.verify(token)
            return ResetTokenStatus(
                email=verified.user.email, expires_at=verified.record.expires_at
            )

        return await self._guard(None, operation)

    async def reset_password(
        self, token: str, new_password: str, device_info: DeviceInput = None
    ) -> AuthResult[PasswordChangeResponse]:
        """Redeem a reset token: set the new password and revoke every session.

        Policy and history failures leave the token usable for another try.
        """

        async def operation() -> PasswordChangeResponse:
            device = _coerce_device(device_info)
            verified = self.resets.verify(token)
            user = verified.user
            self._check_policy(new_password, user.email, user.display_name)
            if await asyncio.to_thread(self.policy.history_check, user.id, new_password):
                raise StateConflictError(ErrorCode.PASSWORD_REUSED)
            new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
            self.resets.consume(verified.record)
            self._store_password(user.id, new_hash)
            revoked = self.sessions.invalidate_all(
                user.id, reason=RevocationReason.PASSWORD_RESET
            )
            self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
            await self._audit_success(
                AuditAction.PASSWORD_RESET, user.id, device, sessions_revoked=revoked
            )
            await self.dispatcher.notify(
                NotificationKind.PASSWORD_CHANGED, user.email, ip=mask_ip(device.ip_address)
            )
            return PasswordChangeResponse(sessions_invalidated=revoked)

        return await self._guard(
            AuditAction.PASSWORD_RESET, operation, device_info=device_info
        )

    def _auth_methods(self, user: User) -> AuthMethods:
        methods: List[str] = []
        if user.has_password:
            methods.append("password")
        if user.has_federated_identity:
            methods.append("federated")
        if user.has_password and user.has_federated_identity:
            account_type = ACCOUNT_MIXED
        elif user.has_federated_identity:
            account_type = ACCOUNT_FEDERATED_ONLY
        else:
            account_type = ACCOUNT_EMAIL_ONLY
        return AuthMethods(
            has_password=user.has_password,
            has_federated_identity=user.has_federated_identity,
            auth_methods=methods,
            account_type=account_type,
            requirements=self.policy.requirements(),
        )

    async def password_status(self, user_id: str) -> AuthResult[AuthMethods]:
        async def operation() -> AuthMethods:
            return self._auth_methods(self._require_user(user_id))

        return await self._guard(None, operation, user_id=user_id)

    # ------------------------------------------------------------ linking

    async def link_federated(self, user_id: str, assertion: str) -> AuthResult[LinkResponse]:
        async def operation() -> LinkResponse:
            user = self._require_user(user_id)
            request = AssertionRequest(assertion=assertion)
            linked = await self.linker.link_explicit(
                request.assertion, user.email, user_id=user_id
            )
            newly_linked = user.federated_id != linked.federated_id
            await self._audit_success(
                AuditAction.ACCOUNT_LINK, user_id, None, mode="explicit", changed=newly_linked
            )
            if newly_linked:
                await self.dispatcher.notify(NotificationKind.ACCOUNT_LINKED, linked.email)
            return LinkResponse(user=user_view(linked), linked=True)

        return await self._guard(AuditAction.ACCOUNT_LINK, operation, user_id=user_id)

    async def unlink(self, user_id: str) -> AuthResult[LinkResponse]:
        """Detach the federated identity; sessions stay active."""

        async def operation() -> LinkResponse:
            before = self._require_user(user_id)
            user = self.linker.unlink(user_id)
            await self._audit_success(
                AuditAction.ACCOUNT_UNLINK,
                user_id,
                None,
                changed=before.has_federated_identity,
            )
            if before.has_federated_identity:
                await self.dispatcher.notify(NotificationKind.ACCOUNT_UNLINKED, user.email)
            return LinkResponse(user=user_view(user), linked=False)

        return await self._guard(AuditAction.ACCOUNT_UNLINK, operation, user_id=user_id)

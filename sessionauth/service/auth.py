from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple

from sessionauth.config import Settings
from sessionauth.logging import email_fingerprint, get_logger
from sessionauth.service.credentials import CredentialOutcome, CredentialVerifier
from sessionauth.service.email_verification import EmailVerificationService
from sessionauth.service.errors import (
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from sessionauth.service.rate_limit import RateLimiter
from sessionauth.service.sessions import IssuedSession, SessionService
from sessionauth.service.validation import (
    validate_email,
    validate_new_password,
    validate_registration,
    validate_role,
)
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import ROLES, User

logger = get_logger(__name__)

DUPLICATE_EMAIL_MESSAGE = "An account with this email already exists"
INVALID_LOGIN_MESSAGE = "Invalid email or password"
MAX_PAGE_SIZE = 100


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        email_verified: bool = False,
        verification_token_hash: Optional[str] = None,
        verification_ttl_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        revoke_sessions: bool = False,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int: ...

    def update_user_email(
        self, user_id: str, email: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def update_user_role(
        self, user_id: str, role: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]: ...

    def count_users(self) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    session_id: str
    expires_at: datetime


@dataclass
class RegistrationResult:
    user: User
    message: str
    verification_sent: bool = False


@dataclass
class LoginResult:
    user: User
    session: IssuedSession


class AuthService:
    """Registration, login gating, and account management.

    Login runs the rate limiter, then the credential verifier, then the
    session engine. Every failed credential check counts against the
    (email, address) pair, including a correct password on an unverified
    account.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        verifier: CredentialVerifier,
        rate_limiter: RateLimiter,
        sessions: SessionService,
        verification: EmailVerificationService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.verifier = verifier
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.verification = verification
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # -- registration ------------------------------------------------------

    async def register(
        self, email: str, password: str, confirm_password: str
    ) -> RegistrationResult:
        """Create an account and send its verification link.

        Raises:
            ValidationError: email, password or confirmation is invalid
            ConflictError: the normalized email is already registered
        """

        normalized = validate_registration(email, password, confirm_password)
        existing = await asyncio.to_thread(self.store.get_user_by_email, normalized)
        if existing:
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE, detail={"field": "email"})

        password_hash = await asyncio.to_thread(self.verifier.hash_password, password)
        auto_verify = self.settings.skip_email_verification
        token: Optional[str] = None
        digest: Optional[str] = None
        if not auto_verify:
            token, digest = self.verification.new_token()
        try:
            user = await asyncio.to_thread(
                self.store.create_user,
                normalized,
                password_hash,
                email_verified=auto_verify,
                verification_token_hash=digest,
                verification_ttl_seconds=self.verification.ttl_seconds,
                now=self._now(),
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same address
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE, detail=exc.detail) from exc

        self.logger.info("user_registered", user_id=user.id, auto_verified=auto_verify)
        if auto_verify:
            return RegistrationResult(
                user=user,
                message="Registration successful. You can now log in.",
            )
        sent = await self.verification.dispatch(user, token or "")
        return RegistrationResult(
            user=user,
            message="Registration successful. Please check your email to verify your account.",
            verification_sent=sent,
        )

    # -- login / logout ----------------------------------------------------

    @staticmethod
    def _lockout_message(retry_after_seconds: int) -> str:
        minutes = max(1, math.ceil(retry_after_seconds / 60))
        return f"Account temporarily locked. Try again in {minutes} minute(s)."

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Exchange credentials for a new session.

        Raises:
            ValidationError: email or password missing
            RateLimitedError: the (email, address) pair is locked out
            EmailNotVerifiedError: password matched an unverified account
            AuthenticationError: unknown email or wrong password
        """

        if not email or not password:
            raise ValidationError("Email and password are required")
        decision = await self.rate_limiter.is_allowed(email, ip_address)
        if not decision.allowed:
            self.logger.warning(
                "login_rate_limited",
                email_hash=email_fingerprint(email),
                ip_address=ip_address,
                retry_after_seconds=decision.retry_after_seconds,
            )
            raise RateLimitedError(
                self._lockout_message(decision.retry_after_seconds),
                retry_after_seconds=decision.retry_after_seconds,
            )

        check = await asyncio.to_thread(self.verifier.verify, email, password)
        if not check.ok:
            attempts = await self.rate_limiter.record_failed_attempt(email, ip_address)
            remaining = max(0, self.settings.login_max_attempts - attempts)
            self.logger.info(
                "login_failed",
                email_hash=email_fingerprint(email),
                ip_address=ip_address,
                outcome=check.outcome.value,
                attempts=attempts,
            )
            if check.outcome is CredentialOutcome.EMAIL_NOT_VERIFIED:
                raise EmailNotVerifiedError(
                    "Please verify your email before logging in",
                    detail={"remaining_attempts": remaining},
                )
            message = f"{INVALID_LOGIN_MESSAGE}."
            if remaining > 0:
                message = f"{INVALID_LOGIN_MESSAGE}. {remaining} attempt(s) remaining."
            raise AuthenticationError(message, detail={"remaining_attempts": remaining})

        user = check.user
        await self.rate_limiter.clear_attempts(email, ip_address)
        issued = await self.sessions.create(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=issued.session_id)
        return LoginResult(user=user, session=issued)

    async def logout(self, token: Optional[str]) -> bool:
        return await self.sessions.revoke_by_token(token)

    async def logout_all(self, ctx: AuthContext, *, keep_current: bool = True) -> int:
        return await self.sessions.revoke_all(
            ctx.user_id, except_session_id=ctx.session_id if keep_current else None
        )

    # -- request authentication -------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def _role_allows(self, role: str, required: str) -> bool:
        if required not in ROLES or role not in ROLES:
            return False
        return ROLES.index(role) >= ROLES.index(required)

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> Tuple[AuthContext, str]:
        """Resolve a bearer header to its session and user.

        Returns the context together with the presented token so the caller
        can run the refresh step.

        Raises:
            AuthenticationError: missing, unknown, revoked or expired token
            ForbiddenError: the user lacks ``required_role``
        """

        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Authentication required")
        validation = await self.sessions.validate(token)
        if not validation.valid:
            raise AuthenticationError("Invalid or expired session")
        user = await asyncio.to_thread(self.store.get_user, validation.user_id)
        if not user:
            raise AuthenticationError("Invalid or expired session")
        if required_role and not self._role_allows(user.role, required_role):
            self.logger.warning(
                "authorization_denied",
                user_id=user.id,
                role=user.role,
                required_role=required_role,
            )
            raise ForbiddenError("Insufficient permissions")
        ctx = AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            session_id=validation.session_id,
            expires_at=validation.expires_at,
        )
        return ctx, token

    # -- self-service account management ----------------------------------

    async def get_user(self, user_id: str) -> User:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def update_profile(self, ctx: AuthContext, email: str) -> User:
        """Change the account email; a new address must be verified again."""

        normalized = validate_email(email)
        current = await self.get_user(ctx.user_id)
        if normalized == current.email:
            return current
        other = await asyncio.to_thread(self.store.get_user_by_email, normalized)
        if other and other.id != ctx.user_id:
            raise ConflictError("Email is already in use", detail={"field": "email"})
        try:
            user = await asyncio.to_thread(
                self.store.update_user_email, ctx.user_id, normalized, now=self._now()
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email is already in use", detail=exc.detail) from exc
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("user_email_changed", user_id=user.id)
        if not user.email_verified:
            await self.verification.issue(user.id)
        return user

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> int:
        """Replace the password; returns how many other sessions were revoked.

        Raises:
            ValidationError: new password fails policy, mismatch, or is unchanged
            AuthenticationError: current password is wrong
        """

        validate_new_password(new_password, confirm_password)
        if current_password == new_password:
            raise ValidationError("New password must be different from the current password")
        matches = await asyncio.to_thread(
            self.verifier.check_password, ctx.user_id, current_password or ""
        )
        if not matches:
            raise AuthenticationError("Current password is incorrect")
        password_hash = await asyncio.to_thread(self.verifier.hash_password, new_password)
        revoked = await asyncio.to_thread(
            self.store.update_password,
            ctx.user_id,
            password_hash,
            revoke_sessions=self.settings.invalidate_sessions_on_password_change,
            except_session_id=ctx.session_id,
            now=self._now(),
        )
        self.logger.info("password_changed", user_id=ctx.user_id, sessions_revoked=revoked)
        return revoked

    async def delete_account(self, ctx: AuthContext, password: str) -> bool:
        matches = await asyncio.to_thread(
            self.verifier.check_password, ctx.user_id, password or ""
        )
        if not matches:
            raise AuthenticationError("Password is incorrect")
        deleted = await asyncio.to_thread(self.store.delete_user, ctx.user_id)
        if deleted:
            self.logger.info("account_deleted", user_id=ctx.user_id)
        return deleted

    # -- administration ----------------------------------------------------

    async def list_users(self, page: int = 1, limit: int = 20) -> Tuple[List[User], int]:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        users = await asyncio.to_thread(self.store.list_users, limit, (page - 1) * limit)
        total = await asyncio.to_thread(self.store.count_users)
        return users, total

    async def set_user_role(self, actor: AuthContext, user_id: str, role: str) -> User:
        """Change another user's role and end their sessions so the new role applies."""

        role = validate_role(role)
        if actor.user_id == user_id:
            raise ForbiddenError("You cannot change your own role")
        user = await asyncio.to_thread(
            self.store.update_user_role, user_id, role, now=self._now()
        )
        if not user:
            raise NotFoundError("User not found")
        revoked = await self.sessions.revoke_all(user_id)
        self.logger.info(
            "user_role_updated",
            user_id=user_id,
            new_role=role,
            actor_id=actor.user_id,
            sessions_revoked=revoked,
        )
        return user

    async def delete_user(self, actor: AuthContext, user_id: str) -> None:
        if actor.user_id == user_id:
            raise ForbiddenError("You cannot delete your own account from the admin panel")
        deleted = await asyncio.to_thread(self.store.delete_user, user_id)
        if not deleted:
            raise NotFoundError("User not found")
        self.logger.info("user_deleted", user_id=user_id, actor_id=actor.user_id)

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from sessionauth.config import Settings
from sessionauth.logging import email_fingerprint, get_logger
from sessionauth.service.credentials import CredentialVerifier
from sessionauth.service.email import EmailService
from sessionauth.service.tokens import generate_token, hash_token, tokens_match
from sessionauth.service.validation import validate_email, validate_new_password
from sessionauth.storage.models import PasswordResetToken, User

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = "If an account with that email exists, a password reset link has been sent."
RESET_INVALID_MESSAGE = "Invalid or expired reset token"
RESET_COMPLETED_MESSAGE = "Password has been reset successfully. Please log in with your new password."


class ResetStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_reset_token(self, token: PasswordResetToken) -> int: ...

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def list_reset_tokens(self, user_id: str) -> List[PasswordResetToken]: ...

    def complete_password_reset(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[int]: ...

    def delete_stale_reset_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class ResetTokenCheck:
    valid: bool
    reason: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    token_id: Optional[str] = None


@dataclass
class ResetResult:
    success: bool
    message: str
    reason: Optional[str] = None
    sessions_revoked: int = 0


class PasswordResetService:
    """Single-use reset tokens with at most one live token per user.

    Consuming a token, storing the new password hash and revoking every
    session of the account happen in one store transaction.
    """

    def __init__(
        self,
        store: ResetStore,
        verifier: CredentialVerifier,
        email_service: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.email_service = email_service
        self.token_bytes = settings.reset_token_bytes
        self.ttl_seconds = settings.reset_token_ttl_seconds

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def request_reset(self, email: str) -> dict:
        """Issue a reset link if the account exists; the reply never says which."""

        normalized = validate_email(email)
        user = await asyncio.to_thread(self.store.get_user_by_email, normalized)
        if not user:
            logger.info("password_reset_unknown_email", email_hash=email_fingerprint(normalized))
            return {"message": RESET_REQUESTED_MESSAGE}

        token = generate_token(self.token_bytes)
        record = PasswordResetToken.new(
            user.id, hash_token(token), ttl_seconds=self.ttl_seconds, now=self._now()
        )
        invalidated = await asyncio.to_thread(self.store.create_reset_token, record)
        logger.info(
            "password_reset_requested",
            user_id=user.id,
            token_id=record.id,
            invalidated_previous=invalidated,
        )
        sent = await asyncio.to_thread(
            self.email_service.send_password_reset,
            user.email,
            token,
            ttl_minutes=max(1, self.ttl_seconds // 60),
        )
        if not sent:
            logger.error("password_reset_email_failed", user_id=user.id, token_id=record.id)
        return {"message": RESET_REQUESTED_MESSAGE}

    async def validate_token(self, token: Optional[str]) -> ResetTokenCheck:
        """Check a presented token. ``reason`` is not_found, used or expired."""

        if not token:
            return ResetTokenCheck(valid=False, reason="not_found")
        candidate = hash_token(token)
        record = await asyncio.to_thread(self.store.get_reset_token_by_hash, candidate)
        if record is None or not tokens_match(candidate, record.token_hash):
            return ResetTokenCheck(valid=False, reason="not_found")
        if record.used:
            return ResetTokenCheck(valid=False, reason="used", token_id=record.id)
        if record.expires_at <= self._now():
            return ResetTokenCheck(valid=False, reason="expired", token_id=record.id)
        user = await asyncio.to_thread(self.store.get_user, record.user_id)
        if user is None:
            return ResetTokenCheck(valid=False, reason="not_found")
        return ResetTokenCheck(
            valid=True, user_id=user.id, email=user.email, token_id=record.id
        )

    async def reset_password(
        self, token: Optional[str], new_password: str, confirm_password: str
    ) -> ResetResult:
        """Set a new password from a reset token and end every session of the user.

        Raises:
            ValidationError: password policy or confirmation mismatch; raised
                before any storage access.
        """

        validate_new_password(new_password, confirm_password)
        check = await self.validate_token(token)
        if not check.valid:
            logger.info("password_reset_rejected", reason=check.reason, token_id=check.token_id)
            return ResetResult(success=False, message=RESET_INVALID_MESSAGE, reason=check.reason)

        password_hash = await asyncio.to_thread(self.verifier.hash_password, new_password)
        revoked = await asyncio.to_thread(
            self.store.complete_password_reset,
            check.token_id,
            check.user_id,
            password_hash,
            now=self._now(),
        )
        if revoked is None:
            # Consumed by a concurrent request between validation and commit
            logger.info("password_reset_rejected", reason="used", token_id=check.token_id)
            return ResetResult(success=False, message=RESET_INVALID_MESSAGE, reason="used")

        logger.info(
            "password_reset_completed",
            user_id=check.user_id,
            token_id=check.token_id,
            sessions_revoked=revoked,
        )
        return ResetResult(
            success=True, message=RESET_COMPLETED_MESSAGE, sessions_revoked=revoked
        )

    async def usable_tokens(self, user_id: str) -> List[PasswordResetToken]:
        now = self._now()
        tokens = await asyncio.to_thread(self.store.list_reset_tokens, user_id)
        return [tok for tok in tokens if tok.is_usable(now)]

    async def cleanup_expired_tokens(self) -> int:
        removed = await asyncio.to_thread(self.store.delete_stale_reset_tokens, self._now())
        if removed:
            logger.info("password_reset_tokens_cleaned_up", removed=removed)
        return removed

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

from sessionauth.config import Settings
from sessionauth.logging import email_fingerprint, get_logger
from sessionauth.service.email import EmailService
from sessionauth.service.tokens import generate_token, hash_token, tokens_match
from sessionauth.service.validation import validate_email
from sessionauth.storage.models import EmailVerificationToken, User

logger = get_logger(__name__)

RESEND_MESSAGE = "If an account exists, a verification email has been sent"
VERIFY_INVALID_MESSAGE = "Invalid or expired verification token"
VERIFY_ALREADY_MESSAGE = "Email is already verified"
VERIFY_SUCCESS_MESSAGE = "Email verified successfully"


class VerificationStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def replace_verification_token(self, token: EmailVerificationToken) -> None: ...

    def get_verification_token_by_hash(
        self, token_hash: str
    ) -> Optional[EmailVerificationToken]: ...

    def consume_verification_token(
        self, token_id: str, user_id: str, *, now: Optional[datetime] = None
    ) -> bool: ...

    def delete_expired_verification_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class VerificationResult:
    success: bool
    message: str
    reason: Optional[str] = None
    user_id: Optional[str] = None


class EmailVerificationService:
    """One live verification token per user, hashed at rest like every other token."""

    def __init__(
        self, store: VerificationStore, email_service: EmailService, settings: Settings
    ) -> None:
        self.store = store
        self.email_service = email_service
        self.token_bytes = settings.verification_token_bytes
        self.ttl_hours = settings.verification_token_ttl_hours

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_hours * 60 * 60

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def new_token(self) -> Tuple[str, str]:
        """Return (plaintext, digest) for a fresh verification token."""

        token = generate_token(self.token_bytes)
        return token, hash_token(token)

    async def dispatch(self, user: User, token: str) -> bool:
        sent = await asyncio.to_thread(
            self.email_service.send_email_verification,
            user.email,
            token,
            ttl_hours=self.ttl_hours,
        )
        if not sent:
            logger.error("verification_email_failed", user_id=user.id)
        return sent

    async def issue(self, user_id: str) -> Optional[str]:
        """Replace the user's verification token and mail the new one.

        Returns the plaintext token, or None for an unknown user.
        """

        user = await asyncio.to_thread(self.store.get_user, user_id)
        if not user:
            return None
        token, digest = self.new_token()
        record = EmailVerificationToken.new(
            user.id, digest, ttl_seconds=self.ttl_seconds, now=self._now()
        )
        await asyncio.to_thread(self.store.replace_verification_token, record)
        logger.info("verification_token_issued", user_id=user.id, token_id=record.id)
        await self.dispatch(user, token)
        return token

    async def resend(self, email: str) -> dict:
        normalized = validate_email(email)
        user = await asyncio.to_thread(self.store.get_user_by_email, normalized)
        if user and not user.email_verified:
            await self.issue(user.id)
        else:
            logger.info(
                "verification_resend_skipped",
                email_hash=email_fingerprint(normalized),
                known=user is not None,
            )
        return {"message": RESEND_MESSAGE}

    async def consume(self, token: Optional[str]) -> VerificationResult:
        if not token:
            return VerificationResult(False, VERIFY_INVALID_MESSAGE, reason="invalid")
        now = self._now()
        candidate = hash_token(token)
        record = await asyncio.to_thread(self.store.get_verification_token_by_hash, candidate)
        if record is None or not tokens_match(candidate, record.token_hash):
            return VerificationResult(False, VERIFY_INVALID_MESSAGE, reason="invalid")
        user = await asyncio.to_thread(self.store.get_user, record.user_id)
        if user is None:
            return VerificationResult(False, VERIFY_INVALID_MESSAGE, reason="invalid")
        if user.email_verified:
            return VerificationResult(
                False, VERIFY_ALREADY_MESSAGE, reason="already_verified", user_id=user.id
            )
        if record.expires_at <= now:
            return VerificationResult(False, VERIFY_INVALID_MESSAGE, reason="expired")
        consumed = await asyncio.to_thread(
            self.store.consume_verification_token, record.id, user.id, now=now
        )
        if not consumed:
            return VerificationResult(False, VERIFY_INVALID_MESSAGE, reason="invalid")
        logger.info("email_verified", user_id=user.id)
        return VerificationResult(True, VERIFY_SUCCESS_MESSAGE, user_id=user.id)

    async def cleanup_expired_tokens(self) -> int:
        removed = await asyncio.to_thread(
            self.store.delete_expired_verification_tokens, self._now()
        )
        if removed:
            logger.info("verification_tokens_cleaned_up", removed=removed)
        return removed

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.tokens import generate_token, hash_token, tokens_match
from sessionauth.storage.models import Session

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(
        self, session: Session, *, max_active: int = 0, now: Optional[datetime] = None
    ) -> List[str]: ...

    def get_active_session_by_token_hash(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: Optional[datetime] = None) -> None: ...

    def extend_session(
        self, token_hash: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> Optional[Session]: ...

    def rotate_session_token(
        self,
        old_token_hash: str,
        new_token_hash: str,
        expires_at: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, user_id: str) -> bool: ...

    def revoke_session_by_token_hash(self, token_hash: str) -> Optional[str]: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int: ...

    def list_active_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[Session]: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class IssuedSession:
    """Result of a login. ``token`` is the only copy of the plaintext secret."""

    session_id: str
    user_id: str
    token: str
    expires_at: datetime
    evicted_session_ids: List[str] = field(default_factory=list)


@dataclass
class SessionValidation:
    valid: bool
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class RefreshResult:
    success: bool
    expires_at: Optional[datetime] = None


@dataclass
class RotateResult:
    success: bool
    token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class SessionSummary:
    id: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    last_activity_at: datetime
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        return cls(
            id=session.id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            last_activity_at=session.last_activity_at,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )


class SessionService:
    """Opaque bearer sessions: create, validate, refresh, rotate, revoke, reap.

    Only SHA-256 digests of tokens reach the store. Validation failures are
    uniform: unknown, revoked and expired tokens all yield ``valid=False``.
    """

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.lifetime = timedelta(seconds=settings.session_lifetime_seconds)
        self.refresh_threshold = timedelta(seconds=settings.session_refresh_threshold_seconds)
        self.max_concurrent = settings.max_concurrent_sessions
        self.token_bytes = settings.session_token_bytes

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    async def create(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        now = self._now()
        token = generate_token(self.token_bytes)
        session = Session.new(
            user_id,
            hash_token(token),
            lifetime_seconds=int(self.lifetime.total_seconds()),
            now=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        evicted = await asyncio.to_thread(
            self.store.create_session, session, max_active=self.max_concurrent, now=now
        )
        if evicted:
            logger.info(
                "session_evicted_oldest",
                user_id=user_id,
                evicted=evicted,
                cap=self.max_concurrent,
            )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return IssuedSession(
            session_id=session.id,
            user_id=user_id,
            token=token,
            expires_at=session.expires_at,
            evicted_session_ids=list(evicted),
        )

    async def validate(self, token: Optional[str]) -> SessionValidation:
        if not token:
            return SessionValidation(valid=False)
        now = self._now()
        candidate = hash_token(token)
        session = await asyncio.to_thread(
            self.store.get_active_session_by_token_hash, candidate, now
        )
        if session is None or not tokens_match(candidate, session.token_hash):
            return SessionValidation(valid=False)
        if not session.is_valid(now):
            return SessionValidation(valid=False)
        await asyncio.to_thread(self.store.touch_session, session.id, now)
        return SessionValidation(
            valid=True,
            user_id=session.user_id,
            session_id=session.id,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
        )

    async def refresh(self, token: Optional[str]) -> RefreshResult:
        """Extend a still-valid session to now + lifetime without changing its token."""

        if not token:
            return RefreshResult(success=False)
        now = self._now()
        new_expiry = now + self.lifetime
        session = await asyncio.to_thread(
            self.store.extend_session, hash_token(token), new_expiry, now=now
        )
        if session is None:
            return RefreshResult(success=False)
        logger.info("session_refreshed", session_id=session.id, user_id=session.user_id)
        return RefreshResult(success=True, expires_at=session.expires_at)

    async def rotate(self, token: Optional[str]) -> RotateResult:
        """Swap the session's token; the old token never validates again."""

        if not token:
            return RotateResult(success=False)
        now = self._now()
        new_token = generate_token(self.token_bytes)
        new_expiry = now + self.lifetime
        session = await asyncio.to_thread(
            self.store.rotate_session_token,
            hash_token(token),
            hash_token(new_token),
            new_expiry,
            now=now,
        )
        if session is None:
            return RotateResult(success=False)
        logger.info("session_rotated", session_id=session.id, user_id=session.user_id)
        return RotateResult(success=True, token=new_token, expires_at=session.expires_at)

    async def revoke(self, session_id: str, user_id: str) -> bool:
        """Revoke one session owned by ``user_id``. False when nothing changed."""

        revoked = await asyncio.to_thread(self.store.revoke_session, session_id, user_id)
        if revoked:
            logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return revoked

    async def revoke_by_token(self, token: Optional[str]) -> bool:
        if not token:
            return False
        session_id = await asyncio.to_thread(
            self.store.revoke_session_by_token_hash, hash_token(token)
        )
        if session_id:
            logger.info("session_revoked", session_id=session_id)
        return session_id is not None

    async def revoke_all(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        count = await asyncio.to_thread(
            self.store.revoke_user_sessions,
            user_id,
            except_session_id=except_session_id,
            now=self._now(),
        )
        logger.info(
            "sessions_revoked_all",
            user_id=user_id,
            count=count,
            kept_session_id=except_session_id,
        )
        return count

    async def list_active(self, user_id: str) -> List[SessionSummary]:
        sessions = await asyncio.to_thread(
            self.store.list_active_sessions, user_id, self._now()
        )
        return [SessionSummary.from_session(sess) for sess in sessions]

    async def cleanup_expired(self) -> int:
        removed = await asyncio.to_thread(self.store.delete_expired_sessions, self._now())
        if removed:
            logger.info("sessions_cleaned_up", removed=removed)
        return removed

    async def maybe_refresh(
        self, token: str, expires_at: Optional[datetime]
    ) -> Optional[datetime]:
        """Extend the session when it is close to expiry.

        Returns the new expiry when a refresh happened. Errors are logged and
        reported as no refresh so the calling request is unaffected.
        """

        if expires_at is None or self.refresh_threshold.total_seconds() <= 0:
            return None
        if expires_at - self._now() > self.refresh_threshold:
            return None
        try:
            result = await self.refresh(token)
        except Exception as exc:
            logger.warning("session_auto_refresh_failed", error=str(exc))
            return None
        return result.expires_at if result.success else None

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

ROLES = ("user", "moderator", "admin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        role: str = "user",
        email_verified: bool = False,
        now: datetime | None = None,
    ) -> "User":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            role=role,
            email_verified=email_verified,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Session:
    """Server-side session row; only the digest of the bearer token is kept."""

    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_revoked: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        lifetime_seconds: int,
        now: datetime | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=lifetime_seconds),
            last_activity_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, token_hash: str, *, ttl_seconds: int, now: datetime | None = None
    ) -> "PasswordResetToken":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

    def is_usable(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now


@dataclass
class EmailVerificationToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, token_hash: str, *, ttl_seconds: int, now: datetime | None = None
    ) -> "EmailVerificationToken":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )

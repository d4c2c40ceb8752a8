from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol, Tuple

from sessionauth.config import Settings
from sessionauth.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining_attempts: int = 0
    retry_after_seconds: int = 0
    reason: Optional[str] = None


@dataclass
class LoginAttempt:
    count: int
    first_attempt_at: datetime
    locked_until: Optional[datetime] = None


class RateLimiter(Protocol):
    async def record_failed_attempt(self, email: str, ip_address: Optional[str]) -> int: ...

    async def is_allowed(self, email: str, ip_address: Optional[str]) -> RateLimitDecision: ...

    async def clear_attempts(self, email: str, ip_address: Optional[str]) -> None: ...

    async def get_attempt_count(self, email: str, ip_address: Optional[str]) -> int: ...

    async def sweep(self) -> int: ...


def attempt_key(email: str, ip_address: Optional[str]) -> Tuple[str, str]:
    return (email.strip().lower(), ip_address or "unknown")


class LoginRateLimiter:
    """Per-process failed login tracking keyed by (email, source address).

    Clear -> Tracking -> Locked. A lockout expires lazily the next time the
    key is checked; ``sweep`` only bounds memory.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        lockout_seconds: int = 30 * 60,
    ) -> None:
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.lockout = timedelta(seconds=lockout_seconds)
        self._attempts: Dict[Tuple[str, str], LoginAttempt] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "LoginRateLimiter":
        return cls(
            max_attempts=settings.login_max_attempts,
            window_seconds=settings.login_attempt_window_seconds,
            lockout_seconds=settings.login_lockout_seconds,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _is_stale(self, entry: LoginAttempt, now: datetime) -> bool:
        if entry.locked_until is not None:
            return entry.locked_until <= now
        return now - entry.first_attempt_at > self.window

    async def record_failed_attempt(self, email: str, ip_address: Optional[str]) -> int:
        key = attempt_key(email, ip_address)
        now = self._now()
        with self._lock:
            entry = self._attempts.get(key)
            if entry and entry.locked_until and entry.locked_until > now:
                return entry.count
            if entry is None or self._is_stale(entry, now):
                entry = LoginAttempt(count=1, first_attempt_at=now)
                self._attempts[key] = entry
            else:
                entry.count += 1
            if entry.count >= self.max_attempts:
                entry.locked_until = now + self.lockout
                logger.warning(
                    "login_locked",
                    ip_address=key[1],
                    attempts=entry.count,
                    locked_until=entry.locked_until.isoformat(),
                )
            return entry.count

    async def is_allowed(self, email: str, ip_address: Optional[str]) -> RateLimitDecision:
        key = attempt_key(email, ip_address)
        now = self._now()
        with self._lock:
            entry = self._attempts.get(key)
            if entry is not None and self._is_stale(entry, now):
                self._attempts.pop(key, None)
                entry = None
            if entry is None:
                return RateLimitDecision(allowed=True, remaining_attempts=self.max_attempts)
            if entry.locked_until is not None:
                retry_after = math.ceil((entry.locked_until - now).total_seconds())
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=max(1, retry_after),
                    reason="locked",
                )
            return RateLimitDecision(
                allowed=True,
                remaining_attempts=max(0, self.max_attempts - entry.count),
            )

    async def clear_attempts(self, email: str, ip_address: Optional[str]) -> None:
        with self._lock:
            self._attempts.pop(attempt_key(email, ip_address), None)

    async def get_attempt_count(self, email: str, ip_address: Optional[str]) -> int:
        with self._lock:
            entry = self._attempts.get(attempt_key(email, ip_address))
            return entry.count if entry else 0

    async def sweep(self) -> int:
        """Drop entries whose window and lockout have both lapsed."""

        now = self._now()
        with self._lock:
            stale = [key for key, entry in self._attempts.items() if self._is_stale(entry, now)]
            for key in stale:
                self._attempts.pop(key, None)
        if stale:
            logger.debug("login_attempts_swept", removed=len(stale))
        return len(stale)

from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionauth.config import RateLimitBackend, get_settings, reset_settings_cache
from sessionauth.logging import get_logger
from sessionauth.service.auth import AuthService
from sessionauth.service.credentials import CredentialVerifier
from sessionauth.service.email import EmailService
from sessionauth.service.email_verification import EmailVerificationService
from sessionauth.service.password_reset import PasswordResetService
from sessionauth.service.rate_limit import LoginRateLimiter, RateLimiter
from sessionauth.service.sessions import SessionService
from sessionauth.storage.memory import MemoryStore
from sessionauth.storage.postgres import PostgresStore
from sessionauth.storage.redis_cache import RedisLoginRateLimiter

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
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
    """Holds the process-wide store, limiter and engines for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            rate_limit_backend=self.settings.login_rate_limit_backend.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.rate_limiter: RateLimiter = self._build_rate_limiter()
        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("email_dev_mode_enabled", reason="smtp_not_configured")
        self.verifier = CredentialVerifier(self.store, self.settings)
        self.sessions = SessionService(self.store, self.settings)
        self.verification = EmailVerificationService(self.store, self.email, self.settings)
        self.password_reset = PasswordResetService(
            self.store, self.verifier, self.email, self.settings
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            verifier=self.verifier,
            rate_limiter=self.rate_limiter,
            sessions=self.sessions,
            verification=self.verification,
        )
        logger.info("runtime_init_completed", store_type=store_type)

    def _build_rate_limiter(self) -> RateLimiter:
        if self.settings.login_rate_limit_backend is RateLimitBackend.REDIS:
            limiter = RedisLoginRateLimiter.from_settings(self.settings)
            try:
                limiter.verify_connection()
            except Exception as exc:
                logger.error(
                    "redis_rate_limiter_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required when LOGIN_RATE_LIMIT_BACKEND=redis"
                ) from exc
            return limiter
        return LoginRateLimiter.from_settings(self.settings)

    async def close(self) -> None:
        """Release pooled connections held by the store and the limiter."""
        closer = getattr(self.rate_limiter, "close", None)
        if closer is not None:
            await closer()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

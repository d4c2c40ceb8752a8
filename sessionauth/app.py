from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sessionauth.api.error_handling import register_exception_handlers
from sessionauth.api.routes import router
from sessionauth.config import Settings
from sessionauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_background_tasks: List[asyncio.Task] = []


async def _run_periodic(
    name: str, interval_seconds: int, job: Callable[[], Awaitable[int]]
) -> None:
    """Run ``job`` every ``interval_seconds`` until cancelled.

    A failing run is logged and the loop carries on with the next interval.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await job()
            if removed:
                logger.info("background_job_completed", job=name, removed=removed)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("background_job_failed", job=name, error=str(exc))


def _start_background_tasks(runtime) -> List[asyncio.Task]:
    settings = runtime.settings
    jobs = [
        (
            "session_cleanup",
            settings.session_cleanup_interval_seconds,
            runtime.sessions.cleanup_expired,
        ),
        (
            "reset_token_cleanup",
            settings.token_cleanup_interval_seconds,
            runtime.password_reset.cleanup_expired_tokens,
        ),
        (
            "verification_token_cleanup",
            settings.token_cleanup_interval_seconds,
            runtime.verification.cleanup_expired_tokens,
        ),
        (
            "login_attempt_sweep",
            settings.login_attempt_sweep_interval_seconds,
            runtime.rate_limiter.sweep,
        ),
    ]
    return [
        asyncio.create_task(_run_periodic(name, interval, job), name=name)
        for name, interval, job in jobs
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the periodic cleanup tasks and release resources on shutdown."""
    from sessionauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _background_tasks.extend(_start_background_tasks(runtime))
        logger.info("background_tasks_started", count=len(_background_tasks))
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))
        raise

    yield

    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    _background_tasks.clear()
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SessionAuth", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-Session-Expires-At", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of the request with a correlation ID.

    The client's X-Request-ID is reused when present, otherwise a UUID is
    generated; either way it is echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report store (and, when configured, Redis) reachability."""
    from sessionauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    store_ok = await _run_bounded("store", runtime.store.ping)
    checks["store"] = {"status": "healthy" if store_ok else "unhealthy", "type": store_type}

    verify_redis = getattr(runtime.rate_limiter, "verify_connection", None)
    redis_ok = True
    if verify_redis is not None:
        redis_ok = await _run_bounded("redis", verify_redis)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = store_ok and redis_ok
    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=payload)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("sessionauth.app:app", host="0.0.0.0", port=8000, reload=False)

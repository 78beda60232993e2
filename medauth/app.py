from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medauth.api.error_handling import register_exception_handlers
from medauth.api.routes import router
from medauth.config import Settings
from medauth.logging import get_logger, set_correlation_id
from medauth.storage.postgres import PostgresStore

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_purge_task: asyncio.Task | None = None

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_session_purge(runtime, interval: int) -> None:
    """Delete expired durable session rows every ``interval`` seconds."""
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await asyncio.to_thread(runtime.sessions.purge_expired)
                if removed:
                    logger.info("session_purge_completed", removed=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    global _purge_task
    from medauth.service.runtime import get_runtime

    # Fail fast: misconfigured secrets or a required Redis abort startup here
    runtime = get_runtime()
    interval = runtime.settings.session_purge_interval_seconds
    if interval > 0:
        _purge_task = asyncio.create_task(_run_session_purge(runtime, interval))

    yield

    if _purge_task:
        _purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _purge_task
        _purge_task = None
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="MedAuth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    configured = [o.strip() for o in _settings.cors_allow_origins.split(",") if o.strip()]
    if configured:
        return configured
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its correlation ID.

    The ID comes from the client's X-Request-ID header when present and is
    generated otherwise; it is echoed back in the X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Tokens and profiles must never sit in a shared cache
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
async def health() -> JSONResponse:
    """Report store, cache and rate-limiter state.

    Returns 503 when the durable store does not answer; a missing or failing
    cache only marks the service degraded because sessions fall back to the
    durable store.
    """
    from medauth.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = True
    if isinstance(runtime.store, PostgresStore):
        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            store_ok = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            store_ok = False

    checks: Dict[str, Any] = await runtime.health()
    degraded = checks["cache"] != "ok" or checks["rate_limiter"]["degraded"]
    if not store_ok:
        status = "unhealthy"
    elif degraded:
        status = "degraded"
    else:
        status = "healthy"
    body = {"status": status, "version": __version__, "store_ok": store_ok, **checks}
    return JSONResponse(status_code=200 if store_ok else 503, content=body)

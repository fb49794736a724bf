from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketauth.api.error_handling import register_exception_handlers
from marketauth.api.routes import router
from marketauth.config import Settings
from marketauth.logging import get_logger, set_correlation_id
from marketauth.storage.errors import StorageUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_purge_task: asyncio.Task | None = None


async def _run_refresh_purge(runtime, interval_seconds: int) -> None:
    """Periodically delete refresh sessions revoked before the retention window."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(runtime.purge_refresh_sessions)
        except StorageUnavailable:
            logger.warning("refresh_purge_deferred", interval_seconds=interval_seconds)
        except Exception as exc:
            logger.error("refresh_purge_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _purge_task
    from marketauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.refresh_purge_interval_seconds
    if interval > 0:
        _purge_task = asyncio.create_task(_run_refresh_purge(runtime, interval))
        logger.info("refresh_purge_scheduled", interval_seconds=interval)

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


app = FastAPI(title="Marketplace Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Refresh-Token", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with ``X-Request-ID`` (client-supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Responses carry bearer tokens
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    from marketauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        db_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        db_ok = False
    except StorageUnavailable:
        db_ok = False
    checks["database"] = {"status": "ok" if db_ok else "unavailable"}
    checks["redis"] = {"status": "ok" if runtime.cache else "fallback"}

    body = {
        "status": "healthy" if db_ok else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from claimgate.api.error_handling import register_exception_handlers
from claimgate.api.routes import router
from claimgate.api.service_routes import router as service_router
from claimgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_session_sweep(interval_seconds: int) -> None:
    """Delete expired temporary and credential sessions on a fixed interval."""
    from claimgate.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(get_runtime().purge_expired_sessions)
            if removed:
                logger.info("session_sweep_completed", removed=removed)
        except Exception as exc:
            logger.error("session_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from claimgate.service.runtime import get_runtime

    runtime = get_runtime()
    sweep_task: asyncio.Task | None = None
    interval = runtime.settings.session_sweep_interval_seconds
    if interval > 0:
        sweep_task = asyncio.create_task(_run_session_sweep(interval))
        logger.info("session_sweep_scheduled", interval_seconds=interval)

    yield

    if sweep_task:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    logger.info("runtime_shutdown_complete")


async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    Taken from the ``X-Request-ID`` header when the client sends one, otherwise
    generated. The id is bound into every log line for the request and echoed
    back in the ``X-Request-ID`` response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


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


async def health() -> Dict[str, Any]:
    """Report store and nonce cache reachability."""
    from claimgate.service.runtime import get_runtime

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

    healthy = True
    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        healthy = healthy and db_ok
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    application = FastAPI(title="claimgate", version=__version__, lifespan=lifespan)
    application.middleware("http")(add_correlation_id)
    application.middleware("http")(add_security_headers)
    register_exception_handlers(application)
    application.include_router(router)
    application.include_router(service_router)
    application.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return application


app = create_app()

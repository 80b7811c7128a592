from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from estatevault.api.error_handling import register_exception_handlers
from estatevault.api.routes import router
from estatevault.config import Settings
from estatevault.logging import get_logger, set_correlation_id
from estatevault.service.jobs import run_periodic
from estatevault.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Local dev hosts; no wildcard while credentials are allowed.
_DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _start_jobs(runtime: Runtime) -> List[asyncio.Task]:
    settings = runtime.settings
    jobs = runtime.jobs

    async def _cleanup() -> None:
        await asyncio.to_thread(jobs.cleanup_expired)

    schedule = [
        ("token_cleanup", _cleanup, settings.token_cleanup_interval_seconds),
        ("suspicious_scan", jobs.scan_suspicious, settings.suspicious_scan_interval_seconds),
    ]
    return [asyncio.create_task(run_periodic(*entry)) for entry in schedule]


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    tasks: List[asyncio.Task] = []
    if runtime.settings.enable_background_jobs and not runtime.settings.test_mode:
        tasks = _start_jobs(runtime)
        logger.info("background_jobs_started", jobs=len(tasks))
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await runtime.close()
        logger.info("runtime_closed")


async def _check_component(label: str, check: Callable[[], Any]) -> bool:
    try:
        result = await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
        return False
    # verify_connection returns None on success and raises otherwise
    return result is None or bool(result)


async def health() -> Dict[str, Any]:
    """Store and cache reachability, each check bounded by a timeout."""
    runtime = get_runtime()
    store_ok = await _check_component("store", runtime.store.check_health)
    checks: Dict[str, Dict[str, Any]] = {
        "store": {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        }
    }
    cache_ok = True
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        cache_ok = await _check_component("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if cache_ok else "unhealthy", "degraded": not cache_ok}
    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _request_context(request: Request, call_next):
    """Carry X-Request-ID through the request and stamp response headers."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    if path.startswith("/v1/") or path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    application = FastAPI(title="EstateVault Auth", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or _DEV_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )
    application.middleware("http")(_request_context)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"])
    return application


app = create_app()

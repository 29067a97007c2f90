from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from portalauth.api.error_handling import error_response, register_exception_handlers
from portalauth.api.routes import router
from portalauth.config import Settings
from portalauth.logging import get_logger, set_correlation_id
from portalauth.service.errors import StoreUnavailableError
from portalauth.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_RATE_LIMIT_EXEMPT_PATHS = frozenset({"/healthz"})

_sweep_task: asyncio.Task | None = None


async def _run_sweeper(interval_seconds: float) -> None:
    """Periodic maintenance; a failed pass is logged and the loop continues."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            counts = await get_runtime().sweep()
            logger.info("maintenance_sweep_completed", **counts)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "maintenance_sweep_failed", error_type=type(exc).__name__, error=str(exc)
            )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_sweeper(runtime.settings.sweep_interval.total_seconds())
    )
    logger.info("sweeper_started", interval=runtime.settings.sweep_interval.total_seconds())

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Portal Auth", version=__version__, lifespan=lifespan)

if _settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
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


@app.middleware("http")
async def enforce_global_rate_limit(request: Request, call_next):
    """Per-IP sliding window over every route except health checks."""
    if request.url.path in _RATE_LIMIT_EXEMPT_PATHS or request.method == "OPTIONS":
        return await call_next(request)
    client_ip = request.client.host if request.client else "unknown"
    try:
        decision = await get_runtime().limiters.global_ip.hit(client_ip)
    except StoreUnavailableError as exc:
        return error_response(503, exc.message, code=exc.error_code)
    if not decision.allowed:
        logger.warning("global_rate_limit_exceeded", retry_after=decision.retry_after)
        response = error_response(
            429,
            "too many requests, try again later",
            {"retry_after": decision.retry_after},
            code="rate_limit_exceeded",
        )
        decision.apply_headers(response)
        return response
    response = await call_next(request)
    decision.apply_headers(response)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind ``X-Request-ID`` (or a fresh id) to the request's logs and response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Reachability of both stores plus key-value partition counts.

    Answers 503 when the key-value store is down, since no auth decision
    can be made without it.
    """
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, awaitable) -> Any:
        try:
            return await asyncio.wait_for(awaitable, HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return None

    db_ok = bool(await _run_bounded("database", asyncio.to_thread(runtime.store.ping)))
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    cache_ok = bool(await _run_bounded("cache", runtime.cache.ping()))
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }
    stats = await _run_bounded("cache_stats", runtime.cache.stats()) if cache_ok else None
    if stats is not None:
        checks["cache"]["partitions"] = stats

    healthy = db_ok and cache_ok
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if cache_ok else 503, content=body)

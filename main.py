"""
main.py — FastAPI application entry point for SignalDesk.

Wires together middleware, routers, error handlers, the scan engine and the
background scheduler.
Run with:  python -m uvicorn main:app --reload
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from config import settings
from database import AsyncSessionLocal, create_tables
from routers import health, scans
from security import limiter
from src.services.engine import ScanEngine, build_engine
from src.services.scheduler import scheduler_loop

# ─────────────────────────────────────────────
# Logging
# ─────────────────────────────────────────────

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# Sentry (production error tracking)
# ─────────────────────────────────────────────

if settings.sentry_dsn:
    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.2,
        )
        logger.info("Sentry initialised")
    except Exception as _e:
        logger.warning("Sentry init failed (skipping): %s", _e)
else:
    logger.info("Sentry not configured — skipping")


# ─────────────────────────────────────────────
# Security Headers Middleware
# ─────────────────────────────────────────────

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# ─────────────────────────────────────────────
# Request Logging Middleware
# ─────────────────────────────────────────────

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status code and response time for every request."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)

        logger.info(
            "%s %s → %d  (%.2fms)  ip=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.client.host if request.client else "unknown",
        )
        response.headers["X-Response-Time"] = f"{elapsed_ms}ms"
        return response


# ─────────────────────────────────────────────
# Background: hourly housekeeping
# ─────────────────────────────────────────────

async def _maintenance_loop(engine: ScanEngine, interval: float = 3_600) -> None:
    while True:
        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            return
        try:
            await engine.maintenance()
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.error("Cache maintenance failed: %s", exc)


# ─────────────────────────────────────────────
# Lifespan (startup / shutdown)
# ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s (%s)", settings.app_name, settings.app_version, settings.environment)

    await create_tables()

    if not settings.anthropic_api_key:
        logger.warning("Anthropic API key: NOT configured — only BYOK scans will work")
    if not settings.twitter_api_key:
        logger.warning("Posts API key: NOT configured — fetches will fail")

    engine = build_engine(AsyncSessionLocal)
    app.state.engine = engine

    tasks = [asyncio.create_task(_maintenance_loop(engine), name="cache_maintenance")]
    if settings.scheduler_enabled:
        tasks.append(asyncio.create_task(scheduler_loop(engine.runner), name="scan_scheduler"))
    else:
        logger.info("Scan scheduler disabled")

    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await engine.aclose()
    logger.info("Shutting down %s", settings.app_name)


# ─────────────────────────────────────────────
# App Initialisation
# ─────────────────────────────────────────────

app = FastAPI(
    title="SignalDesk API",
    description="Trading signals extracted from social-media posts",
    version=settings.app_version,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    lifespan=lifespan,
)

app.state.limiter = limiter

# ─────────────────────────────────────────────
# Middleware (outermost first)
# ─────────────────────────────────────────────

if settings.is_production:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*.signaldesk.app", "signaldesk.app", "localhost", "127.0.0.1"],
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SlowAPIMiddleware)

# ─────────────────────────────────────────────
# Error Handlers
# ─────────────────────────────────────────────

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"status": "error", "error": "Too many requests. Please slow down."},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(loc) for loc in e["loc"]), "message": e["msg"]}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"status": "error", "error": "Validation failed", "details": errors},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    # Never leak internal details to the client
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"status": "error", "error": "An internal server error occurred"},
    )


# ─────────────────────────────────────────────
# Routers
# ─────────────────────────────────────────────

app.include_router(health.router)
app.include_router(scans.router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

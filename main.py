"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers and the
startup/shutdown lifecycle.
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pybreaker import CircuitBreakerError

from config.database import close_db, init_db, ping_db
from config.redis_client import close_redis, get_redis, init_redis
from config.settings import settings
from shared.utils.errors import ServiceError
from shared.utils.rate_limit import InMemoryCounter, RedisCounter
from shared.utils.security import hash_token

# Service routers
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.notification.router import router as notification_router
from services.payment.router import router as payment_router
from services.promo.router import router as promo_router
from services.slot.router import router as slot_router
from services.wallet.router import router as wallet_router
from services.worker.router import admin_router as worker_admin_router
from services.worker.router import router as worker_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        for key in ("request_id", "method", "path", "status_code", "duration_ms"):
            if hasattr(record, key):
                log_data[key] = getattr(record, key)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_SKIP_PATHS = {
    "/health",
    "/health/ready",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
    f"{settings.API_PREFIX}/payments/webhook",
}


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.APP_ENV})")

    await init_db()
    logger.info("Database ready")

    redis = await init_redis()
    if redis is not None:
        app.state.rate_counter = RedisCounter(redis)
        logger.info("Redis connected, using shared rate-limit counters")
    else:
        app.state.rate_counter = InMemoryCounter()

    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Home Services Marketplace API

- **Auth**: phone OTP (WhatsApp/SMS) + JWT
- **Bookings**: lifecycle state machine, slot capacity, wallet and promo settlement
- **Workers**: onboarding, verification queue, auto-assignment
- **Payments**: Razorpay orders, checkout verification and webhook

### Authentication
Admin endpoints require the `X-Admin-Key` header.
Customer and worker endpoints accept an optional `Authorization: Bearer <token>`
obtained from `/auth/verify-otp`.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters: last added is outermost) ─────
    if settings.is_production:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts_list)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limiter on app.state.rate_counter.
        Bearer tokens are keyed per token, everything else per client IP.
        Fails open if the counter backend errors.
        """
        counter = getattr(request.app.state, "rate_counter", None)
        if (
            not settings.RATE_LIMIT_ENABLED
            or counter is None
            or request.url.path in RATE_LIMIT_SKIP_PATHS
        ):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            key = f"token:{hash_token(auth_header[7:])}"
            limit = settings.RATE_LIMIT_PER_MINUTE
        else:
            client_ip = request.client.host if request.client else "unknown"
            key = f"ip:{client_ip}"
            limit = settings.RATE_LIMIT_UNAUTH_PER_MINUTE

        try:
            count = await counter.hit(key, RATE_LIMIT_WINDOW_SECONDS)
        except Exception as e:
            logger.error(f"Rate limit check failed: {e}")
            return await call_next(request)

        if count > limit:
            logger.warning(f"Rate limit exceeded for {key}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Please slow down.", "code": "rate_limited"},
                headers={"Retry-After": str(RATE_LIMIT_WINDOW_SECONDS)},
            )
        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time; log one line per request."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        logger.info(
            f"{request.method} {request.url.path} {response.status_code}",
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": process_time,
            },
        )
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "detail": "Request validation failed",
                "code": "validation_failed",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(CircuitBreakerError)
    async def circuit_open_handler(request: Request, exc: CircuitBreakerError):
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Circuit breaker open: {exc}")
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Service temporarily unavailable. Please try again later.",
                "code": "service_unavailable",
                "request_id": request_id,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc) if settings.DEBUG else "An internal server error occurred",
                "code": "internal_error",
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        """Liveness: the process is up."""
        return {"status": "ok", "version": settings.APP_VERSION}

    @app.get("/health/ready", tags=["Health"], include_in_schema=False)
    async def readiness_check():
        """Readiness: database reachable; Redis reachable if configured."""
        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            await ping_db()
            checks["database"] = "ok"
        except Exception as e:
            logger.error(f"Readiness: database check failed: {e}")
            checks["database"] = "error"
            checks["status"] = "degraded"

        redis = get_redis()
        if redis is None:
            checks["redis"] = "disabled"
        else:
            try:
                await redis.ping()
                checks["redis"] = "ok"
            except Exception as e:
                logger.error(f"Readiness: redis check failed: {e}")
                checks["redis"] = "error"
                checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    for router in (
        auth_router,
        booking_router,
        slot_router,
        promo_router,
        wallet_router,
        worker_router,
        worker_admin_router,
        payment_router,
        notification_router,
    ):
        app.include_router(router, prefix=settings.API_PREFIX)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )

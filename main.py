"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers, startup/shutdown events.

Every error leaves the API as {error, message, requestId}:
- HTTPException → its status code
- RequestValidationError → 422 with field details
- CircuitBreakerError → 503 (downstream provider unavailable)
- anything else → 500, no stack trace outside DEBUG
"""

import hashlib
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from http import HTTPStatus
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
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

import config.redis_client as redis_state
from config.database import close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings

# Service routers
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.payment.router import router as payment_router
from services.user.router import router as user_router
from services.wishlist.router import router as wishlist_router


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


# ── Error envelope ───────────────────────────────────────────

def error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        phrase = "Error"
    content = {
        "error": phrase,
        "message": message,
        "requestId": getattr(request.state, "request_id", None),
        **extra,
    }
    return JSONResponse(status_code=status_code, content=content)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} ({settings.APP_ENV})")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    if settings.APP_ENV == "development":
        await seed_admin_user()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
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
## Travel Planner API

REST API behind the travel planning web app:
- **Auth**: email/password + Google OAuth2, JWT access tokens + rotating refresh tokens
- **Bookings**: trip reservations, modification log, edit-request workflow
- **Payments**: Stripe Checkout + signed webhook + refunds
- **Wishlist**: saved trips and destinations
- **Analytics**: personal travel stats and platform dashboard
- **Admin**: bookings, edit requests, users, audit log

### Authentication
Protected endpoints require an `Authorization: Bearer <access_token>` header.
Get a token from `/api/auth/login` or the `/api/auth/google` OAuth flow.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (last added runs outermost) ───────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # Session (needed for OAuth state parameter)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SECRET_KEY,
        session_cookie="travel_session",
        same_site="lax",
        https_only=settings.is_production,
    )

    # ── Custom Middleware (last registered runs first) ─────────────

    skip_rate_limit = {
        "/health",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
        f"{settings.API_PREFIX}/payments/webhook",
    }

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limiter in Redis:
        - Authenticated: RATE_LIMIT_PER_MINUTE per token
        - Unauthenticated: RATE_LIMIT_UNAUTH_PER_MINUTE per IP
        Webhooks, health and metrics are never limited. Fails open when Redis is down.
        """
        if request.url.path in skip_rate_limit or not redis_state.redis_client:
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token_hash = hashlib.sha256(auth_header[7:].encode()).hexdigest()[:32]
            key, limit = f"rate:auth:{token_hash}", settings.RATE_LIMIT_PER_MINUTE
        else:
            client_ip = request.client.host if request.client else "unknown"
            key, limit = f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE

        try:
            allowed = await RedisCache(redis_state.redis_client).check_rate_limit(key, limit)
        except RedisError as e:
            logger.error(f"Rate limit check failed: {e}")
            allowed = True

        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}")
            response = error_response(request, 429, "Rate limit exceeded. Please slow down.")
            response.headers["Retry-After"] = "60"
            return response
        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
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

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        response = error_response(request, exc.status_code, str(exc.detail))
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        first = errors[0] if errors else {}
        message = first.get("msg", "Invalid request")
        if first.get("loc"):
            message = f"{'.'.join(str(p) for p in first['loc'] if p != 'body')}: {message}"
        return error_response(request, 422, message, details=errors)

    @app.exception_handler(CircuitBreakerError)
    async def circuit_breaker_handler(request: Request, exc: CircuitBreakerError):
        """Circuit breaker is open - service degradation."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Service degraded - Circuit breaker open: {exc}")
        return error_response(request, 503, "Service temporarily unavailable. Please try again later.")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {exc}", exc_info=True)
        message = str(exc) if settings.DEBUG else "An internal server error occurred"
        return error_response(request, 500, message)

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            logger.error(f"Health check: database unavailable: {e}")
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if not redis_state.redis_client:
                raise RedisError("client not initialized")
            await redis_state.redis_client.ping()
            checks["redis"] = "ok"
        except RedisError as e:
            logger.error(f"Health check: redis unavailable: {e}")
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.APP_ENV,
            "docs": "/docs",
            "health": "/health",
            "api": settings.API_PREFIX,
        }

    for router in (
        auth_router,
        user_router,
        booking_router,
        payment_router,
        wishlist_router,
        admin_router,
    ):
        app.include_router(router, prefix=settings.API_PREFIX)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_admin_user():
    """Create the ADMIN_EMAIL account on first run (development only)."""
    if not settings.ADMIN_SEED_PASSWORD:
        return

    from sqlalchemy import select
    from config.database import AsyncSessionLocal
    from shared.models.models import User, UserRole
    from shared.utils.security import hash_password

    async with AsyncSessionLocal() as db:
        existing = await db.scalar(select(User.id).where(User.email == settings.ADMIN_EMAIL.lower()))
        if existing:
            return

        db.add(User(
            email=settings.ADMIN_EMAIL.lower(),
            name="Admin",
            password_hash=hash_password(settings.ADMIN_SEED_PASSWORD),
            role=UserRole.ADMIN,
            email_verified=True,
        ))
        await db.commit()
        logger.info(f"Seeded admin user {settings.ADMIN_EMAIL}")


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

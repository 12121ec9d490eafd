"""
ORTHRUS REST API - Main Application.

FastAPI-based REST API for password login with a second factor
(e-mail codes, authenticator apps, backup codes and trusted devices).

Usage:
    # Development
    uvicorn orthrus.api.main:app --reload --port 8000

    # Production (requires REDIS_HOST for more than one worker)
    uvicorn orthrus.api.main:app --host 0.0.0.0 --port 8000 --workers 4
"""
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from .routes import auth_router, two_factor_router, health_router
from ..errors import (
    TwoFactorError,
    AccountBlocked,
    ChallengeRequired,
    LockedOut,
    RateLimited,
    SessionExpired,
    StorageFailure,
)

# Configure logging with request context support
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
)

# Custom filter to add request_id to all log records
class RequestIdFilter(logging.Filter):
    """Add request_id to log records."""
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = '-'
        return True

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format=LOG_FORMAT,
)
# Filter on the handlers so records from child loggers get request_id too
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIdFilter())
logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "ORTHRUS API"
API_DESCRIPTION = """
**Two-Factor Login Service**

Password login with a second factor:

- **E-mail codes** - short numeric codes, single use, expire after a few minutes
- **Authenticator apps** - RFC 6238 TOTP with QR-code setup
- **Backup codes** - one-time recovery codes
- **Trusted devices** - skip the second factor on a remembered browser

## Login flow

1. Login: `POST /auth/login`
2. On `202`, submit the code: `POST /auth/2fa/verify`
3. Use token: `Authorization: Bearer <token>`

## Management

- Status: `GET /auth/mfa`
- Authenticator setup: `POST /auth/mfa/totp/setup`, then `POST /auth/mfa/totp/verify`
- Backup codes: `POST /auth/mfa/backup-codes`
"""
API_VERSION = os.getenv("APP_VERSION", "0.1.0")

# HTTP status for each 2FA error; anything not listed is a 400
ERROR_STATUS = {
    SessionExpired: status.HTTP_401_UNAUTHORIZED,
    ChallengeRequired: status.HTTP_401_UNAUTHORIZED,
    RateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    LockedOut: status.HTTP_429_TOO_MANY_REQUESTS,
    AccountBlocked: status.HTTP_403_FORBIDDEN,
    StorageFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_status(exc: TwoFactorError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup and shutdown.
    """
    # Startup
    logger.info(f"Starting ORTHRUS API v{API_VERSION}")

    # Initialize database schema
    try:
        from .deps import get_db, get_profiles
        get_db().init_schema()
        get_profiles().init_schema()
        logger.info("Database schema initialized")
    except StorageFailure as e:
        logger.warning(f"Database initialization skipped: {e}")

    yield

    # Shutdown
    logger.info("Shutting down ORTHRUS API")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance.
    """
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    allowed_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request tracking and security headers middleware
    @app.middleware("http")
    async def add_request_tracking_and_security(request: Request, call_next):
        # Generate or extract request ID for tracing
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])

        # Store in request state for access in route handlers
        request.state.request_id = request_id

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"[{request_id}] Request failed: {e}", exc_info=True)
            raise

        process_time = (time.time() - start_time) * 1000

        # Request tracking headers
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"

        # Log request completion (skip health checks to reduce noise)
        if not request.url.path.startswith("/health"):
            logger.info(
                f"[{request_id}] {request.method} {request.url.path} "
                f"-> {response.status_code} ({process_time:.1f}ms)"
            )

        # Security headers
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        # Codes and tokens must never be cached
        response.headers["Cache-Control"] = "no-store"
        # CSP for API (restrictive)
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response

    # Exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = " -> ".join(str(l) for l in error["loc"])
            errors.append(f"{loc}: {error['msg']}")

        return JSONResponse(
            status_code=422,
            content={
                "error": "Validation Error",
                "detail": "; ".join(errors),
                "code": "VALIDATION_ERROR",
            },
        )

    @app.exception_handler(TwoFactorError)
    async def two_factor_exception_handler(request: Request, exc: TwoFactorError):
        status_code = error_status(exc)
        headers = {}
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(exc.retry_after)
        if status_code >= 500:
            request_id = getattr(request.state, 'request_id', 'unknown')
            logger.error(f"[{request_id}] {type(exc).__name__}: {exc.message}")

        return JSONResponse(
            status_code=status_code,
            content={
                "error": "Login blocked" if isinstance(exc, AccountBlocked) else "Two-factor authentication error",
                "detail": exc.message,
                "code": getattr(exc, "reason", None) or exc.code,
            },
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "request_id": request_id,
                "detail": str(exc) if os.getenv("APP_ENV") == "development" else None,
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(two_factor_router)

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "orthrus.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )

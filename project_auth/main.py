"""FastAPI application initialization."""

from contextlib import asynccontextmanager
from uuid import uuid4

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

import asyncpg
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from project_auth import __version__
from project_auth.api.auth import router as auth_router
from project_auth.api.middleware import CorrelationIdMiddleware
from project_auth.api.routes import router
from project_auth.config import get_settings
from project_auth.database import close_database, init_database, run_migrations
from project_auth.errors import AuthError
from project_auth.services.logging_service import configure_logging, get_logger
from project_auth.services.redis_service import close_redis, get_redis


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.app_env != "development")
    logger = get_logger("main")

    try:
        await init_database()
        await run_migrations()
        logger.info("database_initialized")
    except (asyncpg.PostgresError, OSError) as e:
        logger.warning(
            "database_initialization_failed",
            error=str(e),
            note="Auth endpoints will fail until the database is reachable",
        )

    if settings.rate_guard_backend == "redis":
        if await get_redis() is None:
            logger.warning(
                "redis_initialization_failed",
                note="Rate guard falls back to process-local state",
            )
        else:
            logger.info("redis_initialized")

    logger.info(
        "application_started",
        app_env=settings.app_env,
        log_level=settings.log_level,
        rate_guard_backend=settings.rate_guard_backend,
    )

    yield

    # Shutdown
    await close_database()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title="Project Auth API",
    description="Registration, email verification and session management",
    version=__version__,
    lifespan=lifespan,
)


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or str(uuid4())


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render auth failures as ``{"error": {message, code, details}}``."""
    correlation_id = _correlation_id(request)
    logger = structlog.get_logger()

    logger.info(
        "auth_error",
        correlation_id=correlation_id,
        error=exc.code,
        status=exc.status_code,
        path=request.url.path,
    )

    headers = {"X-Correlation-Id": correlation_id}
    if exc.status_code == 429 and exc.retry_after_seconds is not None:
        headers["Retry-After"] = str(exc.retry_after_seconds)

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict()},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors.

    Returns 422 with a field -> [messages] map so forms can show errors
    next to the offending input.
    """
    correlation_id = _correlation_id(request)
    logger = structlog.get_logger()

    field_errors: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "body"
        field_errors.setdefault(field, []).append(error.get("msg", "Invalid value"))

    logger.warning(
        "validation_error",
        correlation_id=correlation_id,
        fields=sorted(field_errors),
    )

    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "Validation failed",
                "code": "VALIDATION_ERROR",
                "details": field_errors,
            }
        },
        headers={"X-Correlation-Id": correlation_id},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected failures and answer with a generic 500."""
    correlation_id = _correlation_id(request)
    logger = structlog.get_logger()

    logger.error(
        "unhandled_exception",
        correlation_id=correlation_id,
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=exc,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "code": "INTERNAL_SERVER_ERROR",
                "details": None,
            }
        },
        headers={"X-Correlation-Id": correlation_id},
    )


# CORS for the browser front end; credentials are needed for the refresh cookie
app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().app_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Correlation ID middleware for request tracking and observability
app.add_middleware(CorrelationIdMiddleware)

# Include API routes
app.include_router(auth_router)
app.include_router(router)

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import inspect
from starlette.exceptions import HTTPException as StarletteHTTPException

from labben.config import settings
from labben.database import SessionLocal, engine
from labben.logging_config import setup_logging
from labben.middleware.logging import CORRELATION_HEADER, LoggingMiddleware, current_correlation_id
from labben.middleware.rate_limit import limiter
from labben.routers import delivery, stats, tokens
from labben.scheduler import shutdown_scheduler, start_scheduler
from labben.services.audit_service import AuditLogger
from labben.services.storage_service import ObjectStorageService

# Database tables are managed by Alembic migrations
# Run: alembic upgrade head

REQUIRED_TABLES = {"documents", "secure_download_tokens", "download_logs"}

logger = structlog.get_logger()


def check_database_tables() -> None:
    """Fail fast when migrations have not been applied."""
    existing = set(inspect(engine).get_table_names())
    missing = REQUIRED_TABLES - existing
    if missing:
        raise RuntimeError(
            f"Database tables missing: {', '.join(sorted(missing))}. "
            "Run `alembic upgrade head` before starting the server."
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared clients once and manage the cleanup scheduler."""
    setup_logging()
    check_database_tables()

    app.state.storage = ObjectStorageService(settings)
    app.state.audit_logger = AuditLogger(SessionLocal)

    if settings.scheduler_enabled:
        start_scheduler()
    yield
    if settings.scheduler_enabled:
        shutdown_scheduler()


app = FastAPI(
    title="AI LABBEN",
    description="Secure document delivery for the AI LABBEN dashboard",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Generic 500; internal error text never reaches the client."""
    correlation_id = current_correlation_id()
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    headers = {CORRELATION_HEADER: correlation_id} if correlation_id else None
    return JSONResponse(
        status_code=500, content={"error": "Internal server error"}, headers=headers
    )


# Logging (correlation IDs)
app.add_middleware(LoggingMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(delivery.router, prefix="/api", tags=["delivery"])
app.include_router(tokens.router, prefix="/api/v1", tags=["tokens"])
app.include_router(stats.router, prefix="/api/v1", tags=["stats"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}

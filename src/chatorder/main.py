"""
Main FastAPI application module for chatorder.

This module initializes the FastAPI application, configures middleware,
sets up health check endpoints, and registers the webhook and internal routers.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import settings
from .db import get_supabase
from .exceptions import ChatOrderError, ProviderError
from .routers import agent, bsp, internal, meta
from .services.pipeline import build_pipeline
from .utils.logging import get_logger, setup_logging

# Set up structured logging
setup_logging(level="DEBUG" if settings.debug else "INFO")
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Builds the ingestion pipeline and starts its flush scheduler, which
    re-arms timers for groups left open by a previous process. Without
    Supabase credentials the pipeline is built on first request instead.

    Args:
        app: The FastAPI application instance

    Yields:
        None
    """
    # Startup
    logger.info("Application starting up")
    pipeline = None
    try:
        pipeline = build_pipeline(get_supabase())
    except ValueError:
        logger.warning("Supabase not configured, pipeline will be built on first request")

    if pipeline is not None:
        app.state.pipeline = pipeline
        await pipeline.scheduler.start()

    yield

    # Shutdown
    logger.info("Application shutting down")
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.scheduler.stop()


# Initialize FastAPI application
app = FastAPI(
    title="chatorder",
    description="Multi-tenant WhatsApp sales pipeline with AI agent ordering",
    version="1.0.0",
    lifespan=lifespan,
)

# Attach rate limiter to app (shared with the Meta verification route)
app.state.limiter = meta.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next) -> Response:
    """
    Correlation ID middleware.

    Reuses the caller's X-Correlation-ID or generates one, stores it in
    request state and echoes it in the response headers.
    """
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    request.state.correlation_id = correlation_id

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id

    return response


@app.middleware("http")
async def log_requests(request: Request, call_next) -> Response:
    """Log each request with its status code and processing time."""
    start_time = time.time()
    correlation_id = getattr(request.state, "correlation_id", None)

    logger.info(
        f"Incoming request: {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "correlation_id": correlation_id,
        },
    )

    response = await call_next(request)
    process_time = time.time() - start_time

    logger.info(
        f"Request completed: {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "process_time": f"{process_time:.4f}s",
            "correlation_id": correlation_id,
        },
    )

    response.headers["X-Process-Time"] = str(process_time)

    return response


@app.exception_handler(ChatOrderError)
async def domain_exception_handler(request: Request, exc: ChatOrderError) -> JSONResponse:
    """
    Map domain errors to their HTTP status.

    The body always carries ``success: false`` and the error message, plus any
    extra fields the error contributes (available shipping rates, for one).
    """
    logger.warning(
        "Request rejected",
        extra={
            "error_type": type(exc).__name__,
            "error_message": exc.message,
            "status_code": exc.status_code,
            "path": request.url.path,
            "correlation_id": getattr(request.state, "correlation_id", None),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, **exc.details()},
    )


@app.exception_handler(ProviderError)
async def provider_exception_handler(request: Request, exc: ProviderError) -> JSONResponse:
    """Provider failures while serving an agent instruction answer 500."""
    logger.error(
        "Provider call failed",
        extra={
            "provider": exc.provider,
            "provider_status": exc.status_code,
            "error_message": exc.message,
            "path": request.url.path,
            "correlation_id": getattr(request.state, "correlation_id", None),
        },
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": exc.message},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.

    Logs the exception with full stack trace and returns a 500 with a unique
    error ID for tracking. Technical details are not exposed.
    """
    error_id = str(uuid.uuid4())
    correlation_id = getattr(request.state, "correlation_id", None)

    logger.error(
        "Unhandled exception occurred",
        extra={
            "error_id": error_id,
            "correlation_id": correlation_id,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "error_id": error_id,
        },
        headers={"X-Error-ID": error_id},
    )


# Health check endpoints
@app.get("/healthz", tags=["health"])
async def health_check() -> dict[str, str]:
    """Basic liveness check."""
    return {"status": "ok"}


@app.get("/readyz", tags=["health"])
async def readiness_check(supabase=Depends(get_supabase)) -> dict[str, str]:
    """
    Readiness check endpoint.

    Verifies the Supabase connection with a trivial query.

    Raises:
        HTTPException: 503 if database is not accessible
    """
    try:
        _ = supabase.table("profiles").select("id").limit(1).execute()
        logger.info("Readiness check passed - Supabase connected")
        return {"status": "ready", "database": "connected"}
    except Exception as e:
        logger.error(
            "Readiness check failed - Supabase connection error",
            extra={"error": str(e)},
            exc_info=True,
        )
        raise HTTPException(
            status_code=503,
            detail="Database connection unavailable",
        )


# Register routers
app.include_router(bsp.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(meta.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(agent.router, prefix="/webhooks", tags=["agent"])
app.include_router(internal.router, prefix="/internal", tags=["internal"])

logger.info("chatorder application initialized successfully")

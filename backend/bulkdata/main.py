"""
Bulk Data Server - Main Application Entry Point
===============================================

This module initializes the FastAPI application with the bulk data routes,
middleware, error handlers and the stale job sweep.
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bulkdata.api.v1.router import api_router
from bulkdata.api.v1.metrics import router as metrics_router
from bulkdata.core.config import settings
from bulkdata.core.database import create_db_and_tables, dispose_engines
from bulkdata.core.outcomes import add_exception_handlers
from bulkdata.middleware.request_id import RequestIdMiddleware
from bulkdata.middleware.prometheus import PrometheusMiddleware, StructuredLoggingMiddleware
from bulkdata.services.job_registry import job_registry
from bulkdata.tasks.cleanup import run_cleanup_loop
import logging


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    - Startup: create the job store tables, start the stale job sweep
    - Shutdown: stop running builds and the sweep, close the engines
    """
    cleanup_task = None
    if settings.APP_ENV != "test":
        await create_db_and_tables()
        cleanup_task = asyncio.create_task(run_cleanup_loop())

    yield

    job_registry.clear()
    if cleanup_task is not None:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
    if settings.APP_ENV != "test":
        await dispose_engines()


def create_application() -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application with all middleware,
    routes, and settings applied.

    Returns:
        FastAPI: Configured application instance
    """
    logging.getLogger("bulkdata").setLevel(settings.LOG_LEVEL.upper())

    app = FastAPI(
        title=settings.APP_NAME,
        description="FHIR Bulk Data export server",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    add_exception_handlers(app)

    # ---------------------------------------------------------------------------
    # Middleware (order matters - first added = last executed)
    # ---------------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Location", "X-Progress", "Retry-After", "Expires"],
    )

    # Request ID middleware (adds unique ID to each request)
    app.add_middleware(RequestIdMiddleware)

    # Structured logging middleware (JSON logs with correlation IDs)
    app.add_middleware(StructuredLoggingMiddleware, logger=logger)

    # Prometheus metrics middleware (collects request/response metrics)
    app.add_middleware(PrometheusMiddleware)

    # ---------------------------------------------------------------------------
    # Routes
    # ---------------------------------------------------------------------------

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint for container orchestration."""
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": "1.0.0",
            "running_exports": len(job_registry),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # Metrics endpoint (Prometheus metrics)
    app.include_router(metrics_router, prefix="")

    # Bulk data routes
    app.include_router(api_router)

    return app


# Create application instance
app = create_application()

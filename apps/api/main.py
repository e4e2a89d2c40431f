"""
FastAPI application entry point.

This module sets up the FastAPI application with middleware, routers and
the process context for production use.
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from core.config import settings
from core.context import AppContext, build_context
from core.database import check_db_connection, init_schema
from core.exceptions import APIException
from core.logging import setup_logging
from routers import activities, ops, streams, strava_webhook
from services.activity_cache import NO_CACHE_HEADERS

logger = logging.getLogger(__name__)


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the application.

    When ``context`` is given (tests) it is used as-is; otherwise the
    context is built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "context", None) is None:
            setup_logging()
            app.state.context = build_context(settings)
            if app.state.context.engine is not None:
                init_schema(app.state.context.engine)
            logger.info(f"API started (environment={settings.ENVIRONMENT})")
        yield

    app = FastAPI(
        title="Velosync Ingestion API",
        description="Quota-aware Strava ingestion, work queue and activity cache",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.context = context

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing information."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.info(
            f"Response: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "process_time_ms": round(process_time * 1000, 2),
                }
            }
        )
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException):
        """Machine-readable error body; errors are never cached."""
        headers = dict(NO_CACHE_HEADERS)
        headers.update(exc.headers or {})
        return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(
            f"Unhandled exception: {exc}",
            exc_info=True,
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                }
            }
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "INTERNAL_ERROR", "reason": "Internal server error"},
            headers=dict(NO_CACHE_HEADERS),
        )

    @app.get("/health")
    async def health(request: Request):
        """
        Health check for load balancers and uptime monitors.

        Returns:
            - 200: Core systems operational
            - 503: Counter store or database unavailable
        """
        ctx: AppContext = request.app.state.context
        checks = {
            "store": "healthy" if ctx.store.ping() else "unavailable",
            "database": "healthy" if ctx.engine is None or check_db_connection(ctx.engine) else "unavailable",
        }
        healthy = all(v == "healthy" for v in checks.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "healthy" if healthy else "unhealthy", "checks": checks, "timestamp": time.time()},
        )

    @app.get("/ping")
    async def ping():
        """
        Minimal ping endpoint for uptime monitors.
        No dependencies checked - just confirms the API is responding.
        """
        return {"pong": True}

    app.include_router(strava_webhook.router)
    app.include_router(streams.router)
    app.include_router(activities.router)
    app.include_router(ops.router)
    return app


app = create_app()

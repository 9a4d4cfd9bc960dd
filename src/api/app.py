"""
FastAPI application factory.
"""

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.alerts.engine import AlertEngine, build_engine
from src.api.routes import alerts, health, monitoring
from src.config.settings import get_settings
from src.observability.logging import bind_context, clear_context

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build (unless injected) and start the alert engine for the app's lifetime."""
    logger.info("Operations dashboard API starting up")

    engine: AlertEngine | None = app.state.engine
    if engine is None:
        engine = build_engine()
        app.state.engine = engine
    await engine.start()

    yield

    logger.info("Operations dashboard API shutting down")
    await engine.stop()


def create_app(engine: AlertEngine | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Prebuilt alert engine; built from settings in the lifespan
            when omitted

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    openapi_tags = [
        {"name": "health", "description": "Service health checks"},
        {"name": "alerts", "description": "Unified alerts and operator actions"},
        {"name": "monitoring", "description": "Monitor scheduler status and manual runs"},
    ]

    app = FastAPI(
        title="Delivery Operations Alert API",
        description="""
Dashboard API over the alert lifecycle engine.

Monitors poll visits, representative messages, vehicles, stock and
deliveries; alerts are deduplicated by business key, escalate through
initial, escalated and critical tiers, and notify each channel once per tier.

## Authentication

Requires `X-API-KEY` header for all requests except `/health`.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        openapi_tags=openapi_tags,
    )
    app.state.engine = engine

    cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # Request logging and correlation ID
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = (
            request.headers.get("X-Request-ID")
            or request.headers.get("X-Correlation-ID")
            or str(uuid.uuid4())
        )
        bind_context(request_id=request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            duration = time.perf_counter() - start_time
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )
            return response
        finally:
            clear_context()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error_type": "internal"},
        )

    app.include_router(health.router, tags=["health"])
    app.include_router(alerts.router, tags=["alerts"])
    app.include_router(monitoring.router, tags=["monitoring"])

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "service": "Delivery Operations Alert API",
            "version": "0.1.0",
            "docs": "/docs",
        }

    return app

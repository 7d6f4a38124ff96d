"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from iap_reconciler.context import ReconcilerContext, build_context
from iap_reconciler.logging_config import configure_logging, get_logger
from iap_reconciler.middleware import ContextMiddleware, RequestLoggingMiddleware

VERSION = "0.1.0"

# Initialize logger
logger = get_logger(__name__)


def create_app(context: Optional[ReconcilerContext] = None, run_sweeper: bool = True) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        context: Pre-built components (tests); built from configuration at startup when None
        run_sweeper: Whether the periodic expiry sweep runs in the background

    Returns:
        Configured FastAPI application instance
    """
    # Configure logging
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build and start the reconciler on startup, stop it on shutdown."""
        logger.info("reconciler_starting", version=VERSION)

        ctx = context
        if ctx is None:
            from iap_reconciler.config import get_config

            ctx = build_context(get_config().settings)
        app.state.context = ctx

        await ctx.start(run_sweeper=run_sweeper)
        try:
            if ctx.dispatcher.is_enabled():
                logger.info("pubsub_enabled", message="Transition dispatcher initialized and ready")
            else:
                logger.info("pubsub_disabled", message="Transition dispatcher is disabled")
            logger.info("reconciler_started", status="ready")
            yield
        finally:
            logger.info("reconciler_shutting_down")
            await ctx.stop()
            logger.info("reconciler_stopped")

    app = FastAPI(
        title="IAP Entitlement Reconciler",
        description="Reconciles Google Play purchase verifications and lifecycle notifications into entitlements",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.context = context

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add logging middleware
    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    # Register routers
    from iap_reconciler.api.control import router as control_router
    from iap_reconciler.api.entitlements import router as entitlements_router
    from iap_reconciler.api.webhook import router as webhook_router

    app.include_router(entitlements_router)
    app.include_router(webhook_router)
    app.include_router(control_router)

    # Root endpoint
    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        logger.debug("root_endpoint_called")
        return {
            "service": "iap-reconciler",
            "status": "running",
            "version": VERSION,
        }

    # Health check endpoint
    @app.get("/health")
    async def health() -> dict[str, str]:
        """Detailed health check."""
        ctx: Optional[ReconcilerContext] = app.state.context
        if ctx is None:
            return {"status": "starting"}

        return {
            "status": "healthy",
            "pubsub": "connected" if ctx.dispatcher.is_enabled() else "disabled",
            "authority": ctx.session.state.value,
            "worker": "running" if ctx.worker.running else "stopped",
            "records": str(ctx.store.count()),
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


# Create app instance; configuration is read at startup
app = create_app()

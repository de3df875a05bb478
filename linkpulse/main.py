"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from linkpulse.api.redirect import router as redirect_router
from linkpulse.api.v1.router import router as v1_router
from linkpulse.core.config import Settings, get_settings
from linkpulse.core.lifecycle import Components
from linkpulse.core.observability import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    setup_observability,
)

logger = structlog.get_logger()


def create_app(
    settings: Settings | None = None,
    components: Components | None = None,
) -> FastAPI:
    """Build the application.

    Components passed in are used as-is and left for the caller to close;
    otherwise the lifespan creates them at startup and closes them at shutdown.
    """
    settings = settings or (components.settings if components else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup and shutdown events."""
        logger.info("Starting Linkpulse", version=settings.app_version)

        owned = components is None
        if owned:
            app.state.components = await Components.create(settings)
            await app.state.components.start()

        yield

        logger.info("Shutting down Linkpulse")
        if owned:
            await app.state.components.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Short links with hour-bucketed visit analytics",
        lifespan=lifespan,
    )
    if components is not None:
        app.state.components = components

    # Set up observability (logging, tracing, metrics, Sentry)
    setup_observability(app, settings)

    # Middleware stack (order matters: RequestID first, then logging)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """Health check endpoint."""
        queue = request.app.state.components.queue
        degraded = not queue.is_running or queue.backend == "inline"
        return {
            "status": "degraded" if degraded else "healthy",
            "queue_backend": queue.backend,
            "queue_running": queue.is_running,
        }

    @app.get("/stats")
    async def service_stats(request: Request) -> dict:
        """Get service statistics."""
        return {
            "service": "linkpulse",
            "version": settings.app_version,
            **request.app.state.components.stats,
        }

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {"message": "Welcome to Linkpulse", "version": settings.app_version}

    # The catch-all redirect route goes last
    app.include_router(v1_router)
    app.include_router(redirect_router)

    return app


app = create_app()

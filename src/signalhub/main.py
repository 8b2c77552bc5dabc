"""FastAPI application factory.

Creates the trigger API with logging middleware, lifespan events for
database initialization and service wiring, the v1 router and /metrics.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.signalhub.api.middleware import LoggingMiddleware
from src.signalhub.api.v1.router import router as v1_router
from src.signalhub.core.database import close_db, init_db
from src.signalhub.core.logging import configure_structlog
from src.signalhub.core.metrics import get_metrics_response
from src.signalhub.service import SignalHubService, build_service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Init DB and the service on startup, close the engine on shutdown.

    A service already placed on app.state (tests) is kept as is.
    """
    log = structlog.get_logger(__name__)
    configure_structlog()

    if getattr(app.state, "signalhub", None) is None:
        await init_db()
        app.state.signalhub = build_service()
        log.info("signalhub.service_initialized")

    yield

    await close_db()


def create_app(service: SignalHubService | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="SignalHub API",
        version="0.1.0",
        description="Prospect signal enrichment and CRM sync triggers",
        lifespan=lifespan,
    )
    app.state.signalhub = service

    app.add_middleware(LoggingMiddleware)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app

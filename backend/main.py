"""FastAPI application entry point for the mission orchestration backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_mission_engine as set_routes_mission_engine
from api.websocket import (
    set_mission_engine as set_websocket_mission_engine,
)
from api.websocket import (
    websocket_router,
)
from config import configure_logging, settings
from events import get_event_bus
from metrics import MetricsCollector
from mission.engine import MissionEngine
from mission.gateway import GatewayClient
from models.database import StateStore

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Handles initialization and cleanup of the state store, the gateway
    client and the mission engine.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        gateway_url=settings.gateway_url,
    )

    store = StateStore(settings.database_path)
    try:
        await store.init()
    except Exception as e:
        # Keep the API available; every store call degrades to a logged no-op.
        logger.warning("state_store_init_failed", error=str(e))

    gateway = GatewayClient(
        settings.gateway_url,
        token=settings.gateway_token,
        timeout=settings.gateway_timeout_seconds,
    )
    engine = MissionEngine(
        gateway,
        store,
        get_event_bus(),
        config=settings,
        metrics=MetricsCollector(),
    )
    await engine.startup()

    # Register the engine with routes
    set_routes_mission_engine(engine)
    set_websocket_mission_engine(engine)

    # Store on app.state for access
    app.state.mission_engine = engine
    app.state.state_store = store

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await engine.shutdown()
    await gateway.close()
    set_routes_mission_engine(None)
    set_websocket_mission_engine(None)

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Mission Control",
    description="Backend API that decomposes a goal into tasks, dispatches them to "
    "gateway-hosted agents and tracks them to completion.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["missions"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points to the API documentation."""
    return {
        "message": "Mission Control API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )

"""
FastAPI application for the cold-chain alert gateway.

This module creates and configures the FastAPI application with:
- CORS configuration for the customer and technician front-ends
- Router registration for the REST API under /api
- The live cold-cell WebSocket
- Exception handlers mapping engine errors to HTTP statuses
- Lifespan events wiring the store, history recorder and engine

The gateway runs on port 8060 by default and provides:
- REST API: /api/devices, /api/alerts, /api/coldcells, /api/customers, /api/health
- WebSocket: /ws/coldcells/{cell_id} for live cell state
"""

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Type

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coldchain.config.loader import ConfigLoader
from coldchain.config.models import AppConfig
from coldchain.engine.dispatcher import NotificationDispatcher
from coldchain.engine.factory import EngineComponents, create_engine_components
from coldchain.errors import (
    AccessDeniedError,
    ColdChainError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from coldchain.interfaces.state_store import StateStore
from coldchain.services import seed_assets
from coldchain.storage import PostgresClient, RedisStateStore, create_state_store

logger = structlog.get_logger(__name__)


ERROR_STATUS_CODES: Dict[Type[ColdChainError], int] = {
    ValidationError: 400,
    AccessDeniedError: 403,
    NotFoundError: 404,
    ConflictError: 409,
}


def status_for(error: ColdChainError) -> int:
    """HTTP status for an engine error (500 for unmapped ones)."""
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 500


class AppState:
    """
    Application state container.

    Holds the configuration, storage clients and wired engine that are
    initialized during application startup and closed on shutdown.
    """

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.store: Optional[StateStore] = None
        self.postgres_client: Optional[PostgresClient] = None
        self.components: Optional[EngineComponents] = None
        self.start_time: datetime = datetime.now(timezone.utc)
        self.stop_event: asyncio.Event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.relay_task: Optional[asyncio.Task] = None


# Global application state
app_state = AppState()


async def _connect_history(config: AppConfig) -> Optional[PostgresClient]:
    if not config.storage.history_enabled:
        return None
    client = PostgresClient(config.postgres)
    try:
        await client.connect()
        logger.info("postgres_connected")
        return client
    except Exception as e:
        logger.warning(
            "postgres_connection_failed",
            error=str(e),
            message="Gateway will run without history",
        )
        return None


async def _stop_background_tasks() -> None:
    app_state.stop_event.set()
    if app_state.relay_task is not None:
        # The relay blocks on pub/sub reads and only stops when cancelled.
        app_state.relay_task.cancel()
        try:
            await app_state.relay_task
        except asyncio.CancelledError:
            pass
        app_state.relay_task = None
    for task in app_state.tasks:
        try:
            await asyncio.wait_for(task, timeout=10)
        except asyncio.TimeoutError:
            task.cancel()
            logger.warning("gateway_task_cancelled", task=task.get_name())
    app_state.tasks = []


def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[StateStore] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Configuration; loaded from CONFIG_PATH at startup when omitted.
        store: State store override; built from the configuration otherwise.
        dispatcher: Dispatcher override; built from the configuration otherwise.

    Returns:
        FastAPI: Configured FastAPI application instance.

    Example:
        >>> app = create_app()
        >>> import uvicorn
        >>> uvicorn.run(app, host="0.0.0.0", port=8060)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("gateway_starting")

        app_config = config or ConfigLoader(os.getenv("CONFIG_PATH", "config")).load()
        state_store = store or create_state_store(app_config)
        await state_store.connect()
        await seed_assets(state_store, app_config.assets)

        app_state.config = app_config
        app_state.store = state_store
        app_state.postgres_client = await _connect_history(app_config)
        app_state.stop_event = asyncio.Event()
        app_state.start_time = datetime.now(timezone.utc)

        relay = state_store if isinstance(state_store, RedisStateStore) else None
        components = create_engine_components(
            app_config,
            state_store,
            history=app_state.postgres_client,
            relay=relay,
            dispatcher=dispatcher,
        )
        app_state.components = components

        if relay is not None:
            app_state.relay_task = asyncio.create_task(
                components.broadcaster.run_relay(app_state.stop_event)
            )
        if app_config.gateway.run_engine_loops:
            app_state.tasks.append(
                asyncio.create_task(components.scheduler.run(app_state.stop_event))
            )
            app_state.tasks.append(
                asyncio.create_task(components.ingestor.run(app_state.stop_event))
            )

        logger.info(
            "gateway_ready",
            storage=app_config.storage.backend.value,
            engine_loops=app_config.gateway.run_engine_loops,
        )

        yield

        logger.info("gateway_shutting_down")
        await _stop_background_tasks()
        await components.manager.drain()
        await components.dispatcher.close()

        if app_state.postgres_client:
            try:
                await app_state.postgres_client.disconnect()
                logger.info("postgres_disconnected")
            except Exception as e:
                logger.error("postgres_disconnect_error", error=str(e))

        await state_store.disconnect()
        app_state.components = None
        app_state.store = None
        app_state.postgres_client = None
        logger.info("gateway_shutdown_complete")

    app = FastAPI(
        title="Cold Chain Alert Gateway",
        description="Telemetry ingestion, alert escalation and live cold-cell state",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    cors_origins = config.gateway.cors_origins if config is not None else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ColdChainError)
    async def handle_engine_error(request: Request, exc: ColdChainError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        error = ValidationError(
            "Invalid request",
            details={
                "errors": [
                    {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                    for err in exc.errors()
                ]
            },
        )
        return JSONResponse(status_code=400, content=error.to_dict())

    # Register API routers
    from services.gateway.api.alerts import router as alerts_router
    from services.gateway.api.health import router as health_router
    from services.gateway.api.readings import router as readings_router
    from services.gateway.api.settings import router as settings_router
    from services.gateway.api.state import router as state_router

    app.include_router(readings_router, prefix="/api", tags=["Devices"])
    app.include_router(alerts_router, prefix="/api", tags=["Alerts"])
    app.include_router(state_router, prefix="/api", tags=["State"])
    app.include_router(settings_router, prefix="/api", tags=["Settings"])
    app.include_router(health_router, prefix="/api", tags=["Health"])

    # Register WebSocket router
    from services.gateway.websocket.updates import router as ws_router
    app.include_router(ws_router, tags=["WebSocket"])

    logger.info("fastapi_app_created")

    return app


# Create the application instance
app = create_app()

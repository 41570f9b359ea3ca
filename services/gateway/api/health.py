"""
Health API endpoint for gateway status.

Provides:
    GET /api/health - Storage backends, engine wiring and live subscribers
"""

from datetime import datetime, timezone
from typing import List

import structlog
from fastapi import APIRouter
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

router = APIRouter()


class InfrastructureHealthModel(BaseModel):
    """Model for infrastructure health status."""

    store: str = "unknown"
    store_backend: str = "unknown"
    postgres: str = "disabled"


class EngineHealthModel(BaseModel):
    """Model for engine status."""

    open_alerts: int = 0
    pending_dispatches: int = 0
    live_subscribers: int = 0
    channels: List[str] = []


class HealthResponse(BaseModel):
    """Response model for health endpoint."""

    status: str = "unknown"
    infrastructure: InfrastructureHealthModel
    engine: EngineHealthModel
    uptime_seconds: int = 0
    timestamp: str

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "healthy",
                "infrastructure": {
                    "store": "connected",
                    "store_backend": "redis",
                    "postgres": "connected",
                },
                "engine": {
                    "open_alerts": 2,
                    "pending_dispatches": 0,
                    "live_subscribers": 3,
                    "channels": ["push", "email", "sms", "voice"],
                },
                "uptime_seconds": 15780,
                "timestamp": "2026-10-19T08:15:03Z",
            }
        }
    }


@router.get("/health", response_model=HealthResponse)
async def get_health() -> HealthResponse:
    """
    Get gateway health.

    Status is ``healthy`` when the state store responds, ``degraded`` when
    history is enabled but PostgreSQL does not, and ``unhealthy`` otherwise.
    """
    from services.gateway.app import app_state

    now = datetime.now(timezone.utc)
    infrastructure = InfrastructureHealthModel()
    engine_health = EngineHealthModel()

    store = app_state.store
    if store is not None:
        infrastructure.store = "connected" if await store.ping() else "disconnected"
    if app_state.config is not None:
        infrastructure.store_backend = app_state.config.storage.backend.value
        if app_state.config.storage.history_enabled:
            client = app_state.postgres_client
            infrastructure.postgres = (
                "connected" if client is not None and await client.ping() else "disconnected"
            )

    components = app_state.components
    if components is not None and infrastructure.store == "connected":
        try:
            engine_health.open_alerts = len(await components.store.list_open_alerts())
        except Exception as e:
            logger.warning("health_open_alerts_failed", error=str(e))
        engine_health.pending_dispatches = components.manager.pending_dispatches
        engine_health.live_subscribers = components.broadcaster.subscriber_count()
        engine_health.channels = [kind.value for kind in components.dispatcher.channels]

    if infrastructure.store != "connected":
        status = "unhealthy"
    elif infrastructure.postgres == "disconnected":
        status = "degraded"
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        infrastructure=infrastructure,
        engine=engine_health,
        uptime_seconds=int((now - app_state.start_time).total_seconds()),
        timestamp=now.isoformat(),
    )

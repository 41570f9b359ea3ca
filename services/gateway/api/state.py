"""
Live cold-cell state for polling clients.

Provides:
    GET /api/coldcells/{cell_id}/state - Current snapshot

The snapshot is the same message the WebSocket pushes. Clients that lose
their push subscription poll this endpoint every ``pollIntervalSeconds``.
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends

from coldchain.engine.factory import EngineComponents
from coldchain.errors import NotFoundError
from services.gateway.dependencies import Identity, get_engine, get_identity

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/coldcells/{cell_id}/state")
async def get_cell_state(
    cell_id: str,
    identity: Identity = Depends(get_identity),
    engine: EngineComponents = Depends(get_engine),
) -> Dict[str, Any]:
    """Get the current door state, today's counters and open alerts of a cell."""
    from services.gateway.app import app_state

    cell = await engine.store.get_cold_cell(cell_id)
    if cell is None:
        raise NotFoundError("cold cell", cell_id)
    identity.ensure_cell(cell)

    snapshot = await engine.broadcaster.snapshot(cell_id)
    if app_state.config is not None:
        snapshot["pollIntervalSeconds"] = app_state.config.gateway.poll_interval_seconds
    return snapshot

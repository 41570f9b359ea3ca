"""
WebSocket endpoint for live cold-cell state.

Provides:
    WS /ws/coldcells/{cell_id} - Latest-value push of one cold cell

Protocol:
    Browsers cannot set headers on a WebSocket, so the identity may also be
    given as query parameters:

        /ws/coldcells/dupont-walkin?customer_id=bakery-dupont&role=customer

    On connect the server sends the current snapshot, then a new snapshot
    each time the cell changes. Snapshots not yet sent when a newer one
    arrives are dropped; the client always converges on the latest state.

    {
        "type": "cell_state",
        "coldCellId": "dupont-walkin",
        "doorState": "closed",
        ...
    }

    Client may send:
        {"action": "ping"}      -> {"type": "pong"}
        {"action": "snapshot"}  -> the current snapshot

    Errors are sent as {"type": "error", "message": ...}; access and lookup
    failures then close the socket with code 4403 or 4404. A client whose
    socket drops reconnects (and receives a fresh snapshot) or falls back to
    polling GET /api/coldcells/{cell_id}/state.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from coldchain.engine.broadcaster import Subscription
from coldchain.engine.factory import EngineComponents
from coldchain.errors import AccessDeniedError, ColdChainError, NotFoundError
from services.gateway.dependencies import Identity, build_identity

logger = structlog.get_logger(__name__)

router = APIRouter()


CLOSE_ACCESS_DENIED = 4403
CLOSE_NOT_FOUND = 4404
CLOSE_UNAVAILABLE = 4503


class ConnectionManager:
    """
    Tracks live WebSocket connections per cold cell.

    Sends on one socket are serialized so the push loop and ping replies
    never interleave.
    """

    def __init__(self):
        self.active_connections: Dict[WebSocket, Dict[str, Any]] = {}

    async def connect(self, websocket: WebSocket, cold_cell_id: str) -> None:
        """Accept a connection and register it."""
        await websocket.accept()
        self.active_connections[websocket] = {
            "cold_cell_id": cold_cell_id,
            "connected_at": datetime.now(timezone.utc),
            "send_lock": asyncio.Lock(),
        }
        logger.info(
            "websocket_connected",
            cold_cell_id=cold_cell_id,
            total_connections=len(self.active_connections),
        )

    def disconnect(self, websocket: WebSocket) -> None:
        """Forget a connection."""
        info = self.active_connections.pop(websocket, None)
        logger.info(
            "websocket_disconnected",
            cold_cell_id=info["cold_cell_id"] if info else None,
            total_connections=len(self.active_connections),
        )

    async def send(self, websocket: WebSocket, message: Dict[str, Any]) -> None:
        info = self.active_connections.get(websocket)
        if info is None:
            await websocket.send_json(message)
            return
        async with info["send_lock"]:
            await websocket.send_json(message)

    async def reject(self, websocket: WebSocket, message: str, code: int) -> None:
        """Report an error to the client and close the socket."""
        await self.send(websocket, {"type": "error", "message": message})
        await websocket.close(code=code)
        self.disconnect(websocket)


# Global connection manager
manager = ConnectionManager()


def _identity_from(websocket: WebSocket) -> Identity:
    headers = websocket.headers
    params = websocket.query_params
    return build_identity(
        role=headers.get("x-role") or params.get("role"),
        customer_id=headers.get("x-customer-id") or params.get("customer_id"),
        user=headers.get("x-user") or params.get("user"),
    )


async def _push_updates(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await subscription.get()
        await manager.send(websocket, message)


async def _authorize(
    websocket: WebSocket,
    cell_id: str,
) -> Optional[EngineComponents]:
    from services.gateway.app import app_state

    components = app_state.components
    if components is None:
        await manager.reject(websocket, "Engine not initialized", CLOSE_UNAVAILABLE)
        return None

    try:
        identity = _identity_from(websocket)
        cell = await components.store.get_cold_cell(cell_id)
        if cell is None:
            raise NotFoundError("cold cell", cell_id)
        identity.ensure_cell(cell)
    except AccessDeniedError as e:
        await manager.reject(websocket, e.message, CLOSE_ACCESS_DENIED)
        return None
    except NotFoundError as e:
        await manager.reject(websocket, e.message, CLOSE_NOT_FOUND)
        return None
    return components


@router.websocket("/ws/coldcells/{cell_id}")
async def cell_updates(websocket: WebSocket, cell_id: str) -> None:
    """
    WebSocket endpoint for one cold cell.

    Protocol:
        1. Client connects to /ws/coldcells/{cell_id}
        2. Server sends the current snapshot
        3. Server pushes a snapshot whenever the cell changes
        4. Client may ping or request a snapshot at any time

    Args:
        websocket: The WebSocket connection.
        cell_id: Cold cell to follow.
    """
    await manager.connect(websocket, cell_id)

    components = await _authorize(websocket, cell_id)
    if components is None:
        return

    broadcaster = components.broadcaster
    pusher: Optional[asyncio.Task] = None
    try:
        async with broadcaster.subscription(cell_id) as subscription:
            await manager.send(websocket, await broadcaster.snapshot(cell_id))
            pusher = asyncio.create_task(_push_updates(websocket, subscription))

            while True:
                data = await websocket.receive_text()

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    await manager.send(websocket, {"type": "error", "message": "Invalid JSON"})
                    continue

                action = message.get("action") if isinstance(message, dict) else None
                if action == "ping":
                    await manager.send(websocket, {"type": "pong"})
                elif action == "snapshot":
                    await manager.send(websocket, await broadcaster.snapshot(cell_id))
                else:
                    await manager.send(
                        websocket,
                        {"type": "error", "message": f"Unknown action: {action}"},
                    )

    except WebSocketDisconnect:
        pass
    except ColdChainError as e:
        logger.warning("websocket_engine_error", cold_cell_id=cell_id, error=e.message)
    except Exception as e:
        logger.error("websocket_error", cold_cell_id=cell_id, error=str(e))
    finally:
        if pusher is not None:
            pusher.cancel()
            try:
                await pusher
            except (asyncio.CancelledError, WebSocketDisconnect):
                pass
            except Exception as e:
                logger.debug("websocket_push_stopped", cold_cell_id=cell_id, error=str(e))
        manager.disconnect(websocket)

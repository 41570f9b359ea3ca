"""
Device telemetry endpoints.

Provides:
    POST /api/devices/{serial}/readings  - Submit one reading
    POST /api/devices/{serial}/heartbeat - Liveness ping

Devices authenticate upstream; these endpoints do not read the identity
headers. The reading body is passed through unparsed so that malformed
payloads reach the engine and count towards the device's SENSOR_ERROR
streak.
"""

from typing import Any, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from coldchain.engine.factory import EngineComponents
from services.gateway.dependencies import get_engine

logger = structlog.get_logger(__name__)

router = APIRouter()


class ReadingResponse(BaseModel):
    """Response model for a submitted reading."""

    device_serial: str
    cold_cell_id: str
    accepted: bool
    stale: bool
    door_changed: bool
    created_alerts: List[str]

    model_config = {
        "json_schema_extra": {
            "example": {
                "device_serial": "CT-1001",
                "cold_cell_id": "dupont-walkin",
                "accepted": True,
                "stale": False,
                "door_changed": False,
                "created_alerts": ["9b2f0c1e-3c55-4a8e-a3a1-1f1f3b0c9d11"],
            }
        }
    }


class HeartbeatResponse(BaseModel):
    """Response model for a heartbeat."""

    device_serial: str
    status: str
    last_seen_at: Optional[str] = None


@router.post("/devices/{serial}/readings", response_model=ReadingResponse, status_code=201)
async def submit_reading(
    serial: str,
    payload: Any = Body(...),
    engine: EngineComponents = Depends(get_engine),
) -> ReadingResponse:
    """
    Submit one device reading.

    Returns 400 for a malformed reading and 404 for an unknown device.
    A reading older than the device's last applied one is stored but not
    evaluated (``stale`` is true).
    """
    result = await engine.ingestor.submit_reading(serial, payload)
    return ReadingResponse(
        device_serial=result.device_serial,
        cold_cell_id=result.cold_cell_id,
        accepted=result.accepted,
        stale=result.stale,
        door_changed=result.door_changed,
        created_alerts=[a.alert_id for a in result.created_alerts],
    )


@router.post("/devices/{serial}/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    serial: str,
    engine: EngineComponents = Depends(get_engine),
) -> HeartbeatResponse:
    """Record a liveness ping."""
    device = await engine.ingestor.heartbeat(serial)
    return HeartbeatResponse(
        device_serial=device.serial,
        status=device.status.value,
        last_seen_at=device.last_seen_at.isoformat() if device.last_seen_at else None,
    )

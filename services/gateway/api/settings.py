"""
Settings endpoints.

Provides:
    PUT /api/coldcells/{cell_id}/settings      - Thresholds, door delay, reason rule
    PUT /api/customers/{customer_id}/escalation - Operating windows, timezone, contacts

Both take a partial JSON object; fields that are not sent keep their
current value. Unknown fields and invalid combinations return 400.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from coldchain.engine.factory import EngineComponents
from coldchain.errors import NotFoundError, ValidationError
from coldchain.models.assets import ColdCell, Contact, EscalationConfig
from services.gateway.dependencies import Identity, get_engine, get_identity

logger = structlog.get_logger(__name__)

router = APIRouter()


class ColdCellSettingsResponse(BaseModel):
    """Response model for cold cell settings."""

    cold_cell_id: str
    customer_id: str
    name: str
    temperature_min: float
    temperature_max: float
    door_alarm_delay_seconds: int
    require_resolution_reason: bool

    @classmethod
    def from_cell(cls, cell: ColdCell) -> "ColdCellSettingsResponse":
        return cls.model_validate(cell.model_dump())


class EscalationConfigResponse(BaseModel):
    """Response model for a customer escalation configuration."""

    customer_id: str
    opening_time: str
    closing_time: str
    night_start: str
    timezone: str
    primary_contact: Contact
    backup_contacts: List[Contact]
    technician_contact: Optional[Contact] = None

    @classmethod
    def from_config(cls, config: EscalationConfig) -> "EscalationConfigResponse":
        return cls.model_validate(config.model_dump(mode="json"))


def _as_object(changes: Any) -> Dict[str, Any]:
    if not isinstance(changes, dict):
        raise ValidationError("Settings must be a JSON object")
    return changes


@router.put("/coldcells/{cell_id}/settings", response_model=ColdCellSettingsResponse)
async def update_cold_cell_settings(
    cell_id: str,
    changes: Any = Body(...),
    identity: Identity = Depends(get_identity),
    engine: EngineComponents = Depends(get_engine),
) -> ColdCellSettingsResponse:
    """Update the thresholds, door delay or resolution-reason rule of a cell."""
    cell = await engine.store.get_cold_cell(cell_id)
    if cell is None:
        raise NotFoundError("cold cell", cell_id)
    identity.ensure_cell(cell)

    updated = await engine.settings.update_cold_cell_settings(cell_id, **_as_object(changes))
    await engine.broadcaster.notify_changed(cell_id)
    return ColdCellSettingsResponse.from_cell(updated)


@router.put("/customers/{customer_id}/escalation", response_model=EscalationConfigResponse)
async def update_escalation_config(
    customer_id: str,
    changes: Any = Body(...),
    identity: Identity = Depends(get_identity),
    engine: EngineComponents = Depends(get_engine),
) -> EscalationConfigResponse:
    """Update a customer's operating windows, timezone or contacts."""
    identity.ensure_customer(customer_id)
    updated = await engine.settings.update_escalation_config(customer_id, **_as_object(changes))
    return EscalationConfigResponse.from_config(updated)

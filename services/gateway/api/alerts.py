"""
Alerts API endpoints.

Provides:
    GET  /api/alerts                          - Alerts visible to the caller
    GET  /api/alerts/{alert_id}               - One alert
    POST /api/alerts/{alert_id}/acknowledge   - Acknowledge (idempotent)
    POST /api/alerts/{alert_id}/resolve       - Resolve with a reason
    POST /api/alerts/{alert_id}/escalate      - Run the escalation pass now
"""

from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from coldchain.engine.factory import EngineComponents
from coldchain.models.alerts import Alert, AlertStatus, AlertType
from services.gateway.dependencies import Identity, get_engine, get_identity

logger = structlog.get_logger(__name__)

router = APIRouter()


class AlertItem(BaseModel):
    """Model for a single alert."""

    alert_id: str
    cold_cell_id: str
    customer_id: str
    alert_type: str
    status: str
    layer: int
    time_slot: str
    triggered_at: str
    last_triggered_at: Optional[str] = None
    value: Optional[float] = None
    threshold: Optional[float] = None
    last_value: Optional[float] = None
    acknowledged_at: Optional[str] = None
    acknowledged_by: Optional[str] = None
    layer2_at: Optional[str] = None
    layer3_at: Optional[str] = None
    condition_cleared: bool = False
    condition_cleared_at: Optional[str] = None
    notified_layer: int = 0
    resolved_at: Optional[str] = None
    resolution_reason: Optional[str] = None
    resolved_by: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "alert_id": "9b2f0c1e-3c55-4a8e-a3a1-1f1f3b0c9d11",
                "cold_cell_id": "dupont-walkin",
                "customer_id": "bakery-dupont",
                "alert_type": "HIGH_TEMP",
                "status": "ACTIVE",
                "layer": 1,
                "time_slot": "OPEN",
                "triggered_at": "2026-10-19T08:12:00Z",
                "value": 9.4,
                "threshold": 7.0,
                "condition_cleared": False,
                "notified_layer": 1,
            }
        }
    }

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertItem":
        return cls.model_validate(alert.model_dump(mode="json"))


class AlertCountsModel(BaseModel):
    """Model for open alert counts by layer."""

    layer_1: int = 0
    layer_2: int = 0
    layer_3: int = 0
    open: int = 0
    total: int = 0


class AlertsResponse(BaseModel):
    """Response model for the alerts list."""

    alerts: List[AlertItem]
    counts: AlertCountsModel


class ResolveRequest(BaseModel):
    """Body of a resolve request."""

    reason: Optional[str] = Field(default=None, description="Why the alert is resolved")


def _counts(alerts: List[Alert]) -> AlertCountsModel:
    open_alerts = [a for a in alerts if a.is_open]
    return AlertCountsModel(
        layer_1=sum(1 for a in open_alerts if a.layer == 1),
        layer_2=sum(1 for a in open_alerts if a.layer == 2),
        layer_3=sum(1 for a in open_alerts if a.layer == 3),
        open=len(open_alerts),
        total=len(alerts),
    )


async def _visible_alert(
    alert_id: str,
    identity: Identity,
    engine: EngineComponents,
) -> Alert:
    alert = await engine.manager.get_alert(alert_id)
    identity.ensure_alert(alert)
    return alert


@router.get("/alerts", response_model=AlertsResponse)
async def list_alerts(
    cold_cell_id: Optional[str] = Query(None, description="Filter by cold cell"),
    status: Optional[AlertStatus] = Query(None, description="Filter by status"),
    alert_type: Optional[AlertType] = Query(None, alias="type", description="Filter by type"),
    open_only: bool = Query(False, description="Exclude resolved alerts"),
    customer_id: Optional[str] = Query(None, description="Customer filter (staff only)"),
    identity: Identity = Depends(get_identity),
    engine: EngineComponents = Depends(get_engine),
) -> AlertsResponse:
    """
    List alerts visible to the caller, open first then newest first.

    Customers are always scoped to their own cold cells; a ``customer_id``
    filter from a customer must match their own.
    """
    if identity.is_staff:
        scope = customer_id
    else:
        if customer_id is not None:
            identity.ensure_customer(customer_id)
        scope = identity.customer_id

    alerts = await engine.manager.list_alerts(
        customer_id=scope,
        cold_cell_id=cold_cell_id,
        status=status,
        alert_type=alert_type,
        open_only=open_only,
    )
    return AlertsResponse(
        alerts=[AlertItem.from_alert(a) for a in alerts],
        counts=_counts(alerts),
    )


@router.get("/alerts/{alert_id}", response_model=AlertItem)
async def get_alert(
    alert_id: str,
    identity: Identity = Depends(get_identity),
    engine: EngineComponents = Depends(get_engine),
) -> AlertItem:
    """Get one alert."""
    alert = await _visible_alert(alert_id, identity, engine)
    return AlertItem.from_alert(alert)


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertItem)
async def acknowledge_alert(
    alert_id: str,
    identity: Identity = Depends(get_identity),
    engine: EngineComponents = Depends(get_engine),
) -> AlertItem:
    """Acknowledge an alert. Escalation continues."""
    await _visible_alert(alert_id, identity, engine)
    alert = await engine.manager.acknowledge(alert_id, by=identity.actor)
    return AlertItem.from_alert(alert)


@router.post("/alerts/{alert_id}/resolve", response_model=AlertItem)
async def resolve_alert(
    alert_id: str,
    request: Optional[ResolveRequest] = None,
    identity: Identity = Depends(get_identity),
    engine: EngineComponents = Depends(get_engine),
) -> AlertItem:
    """Resolve an alert."""
    await _visible_alert(alert_id, identity, engine)
    reason = request.reason if request is not None else None
    alert = await engine.manager.resolve(alert_id, reason, by=identity.actor)
    return AlertItem.from_alert(alert)


@router.post("/alerts/{alert_id}/escalate", response_model=AlertItem)
async def escalate_alert(
    alert_id: str,
    identity: Identity = Depends(get_identity),
    engine: EngineComponents = Depends(get_engine),
) -> AlertItem:
    """Run the escalation pass for one alert without waiting for the next tick."""
    await _visible_alert(alert_id, identity, engine)
    alert = await engine.scheduler.escalate_now(alert_id)
    logger.info("manual_escalation", alert_id=alert_id, by=identity.actor, layer=int(alert.layer))
    return AlertItem.from_alert(alert)

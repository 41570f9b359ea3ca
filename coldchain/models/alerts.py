"""
Alert data models for the cold-chain engine.

This module defines the alert vocabulary (types, statuses, layers, time
slots), the condition signals produced by the evaluator, and the Alert
entity itself. Alert transitions return new instances via ``model_copy``;
the store decides whether a transition is applied.

Models:
    AlertType: HIGH_TEMP, LOW_TEMP, POWER_LOSS, SENSOR_ERROR, DOOR_OPEN
    AlertStatus: ACTIVE, ESCALATING, RESOLVED
    AlertLayer: Escalation tier 1-3
    TimeSlot: OPEN, AFTER_CLOSE, NIGHT
    SignalKind: TRIGGER or CLEAR
    ConditionSignal: Evaluator output consumed by the alert manager
    Alert: Active or historical alert instance
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class AlertType(str, Enum):
    """Kinds of condition the engine alerts on."""

    HIGH_TEMP = "HIGH_TEMP"
    LOW_TEMP = "LOW_TEMP"
    POWER_LOSS = "POWER_LOSS"
    SENSOR_ERROR = "SENSOR_ERROR"
    DOOR_OPEN = "DOOR_OPEN"

    @property
    def label(self) -> str:
        """Human readable label used in notifications."""
        return _ALERT_LABELS[self]


_ALERT_LABELS = {
    AlertType.HIGH_TEMP: "Temperature too high",
    AlertType.LOW_TEMP: "Temperature too low",
    AlertType.POWER_LOSS: "Power loss",
    AlertType.SENSOR_ERROR: "Sensor error",
    AlertType.DOOR_OPEN: "Door open too long",
}


class AlertStatus(str, Enum):
    """
    Alert lifecycle status.

    Attributes:
        ACTIVE: Open at layer 1.
        ESCALATING: Open at layer 2 or 3.
        RESOLVED: Closed with a recorded reason; immutable.
    """

    ACTIVE = "ACTIVE"
    ESCALATING = "ESCALATING"
    RESOLVED = "RESOLVED"

    @classmethod
    def for_layer(cls, layer: "AlertLayer") -> "AlertStatus":
        """Open status that matches a layer."""
        return cls.ACTIVE if layer == AlertLayer.LAYER_1 else cls.ESCALATING


class AlertLayer(IntEnum):
    """Escalation tier; determines which channels fire."""

    LAYER_1 = 1
    LAYER_2 = 2
    LAYER_3 = 3

    @property
    def next(self) -> Optional["AlertLayer"]:
        """The following layer, or None at the ceiling."""
        if self == AlertLayer.LAYER_3:
            return None
        return AlertLayer(self + 1)


class TimeSlot(str, Enum):
    """Customer operating window derived from the escalation config."""

    OPEN = "OPEN"
    AFTER_CLOSE = "AFTER_CLOSE"
    NIGHT = "NIGHT"


class SignalKind(str, Enum):
    """Direction of a condition signal."""

    TRIGGER = "trigger"
    CLEAR = "clear"


class ConditionSignal(BaseModel):
    """
    A trigger or clear signal emitted by the condition evaluator.

    Attributes:
        cold_cell_id: Cold cell the condition applies to.
        alert_type: Alert type the signal concerns.
        kind: TRIGGER or CLEAR.
        observed_at: When the condition was observed (alert triggered_at).
        value: Observed value (temperature, seconds open), if any.
        threshold: Threshold that was crossed, if any.
        device_serial: Device that produced the telemetry, if any.
        detail: Short free-form explanation for logs.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    cold_cell_id: str = Field(..., description="Cold cell identifier")
    alert_type: AlertType = Field(..., description="Alert type")
    kind: SignalKind = Field(..., description="Trigger or clear")
    observed_at: datetime = Field(..., description="Observation time")
    value: Optional[float] = Field(default=None, description="Observed value")
    threshold: Optional[float] = Field(default=None, description="Crossed threshold")
    device_serial: Optional[str] = Field(default=None, description="Source device")
    detail: Optional[str] = Field(default=None, description="Explanation")

    @property
    def is_trigger(self) -> bool:
        """Whether this signal asks for an alert."""
        return self.kind == SignalKind.TRIGGER


class Alert(BaseModel):
    """
    Active or historical alert instance.

    One non-resolved alert exists at most per (cold_cell_id, alert_type).
    ``layer`` never decreases while the alert is open, and ``layer2_at`` /
    ``layer3_at`` are stamped once, when that layer is reached.

    Attributes:
        alert_id: Unique identifier.
        cold_cell_id: Cold cell the alert belongs to.
        customer_id: Owning customer (denormalized for filtering).
        alert_type: The alert type.
        status: Lifecycle status.
        layer: Current escalation layer.
        time_slot: Time slot active when the alert was triggered.
        triggered_at: When the condition started.
        last_triggered_at: Latest trigger absorbed by deduplication.
        value: Value observed at trigger time.
        threshold: Threshold crossed at trigger time.
        last_value: Latest value observed while open.
        acknowledged_at: When someone acknowledged the alert.
        acknowledged_by: Who acknowledged it.
        layer2_at: When layer 2 was reached.
        layer3_at: When layer 3 was reached.
        condition_cleared: Whether telemetry has returned to normal.
        condition_cleared_at: When the clear was observed.
        notified_layer: Highest layer whose dispatch fully succeeded (0 = none).
        resolved_at: When the alert was resolved.
        resolution_reason: Recorded reason.
        resolved_by: Who resolved it.

    Example:
        >>> alert = Alert(
        ...     cold_cell_id="cell-1",
        ...     customer_id="cust-1",
        ...     alert_type=AlertType.HIGH_TEMP,
        ...     status=AlertStatus.ACTIVE,
        ...     layer=AlertLayer.LAYER_1,
        ...     time_slot=TimeSlot.OPEN,
        ...     triggered_at=now,
        ...     value=9.1,
        ...     threshold=7.0,
        ... )
    """

    model_config = {"extra": "forbid"}

    # Identification
    alert_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for this alert instance",
    )
    cold_cell_id: str = Field(..., description="Cold cell identifier")
    customer_id: str = Field(..., description="Owning customer identifier")
    alert_type: AlertType = Field(..., description="Alert type")

    # State
    status: AlertStatus = Field(..., description="Lifecycle status")
    layer: AlertLayer = Field(..., description="Current escalation layer")
    time_slot: TimeSlot = Field(..., description="Time slot at trigger time")

    # Trigger
    triggered_at: datetime = Field(..., description="When the alert was triggered")
    last_triggered_at: Optional[datetime] = Field(
        default=None,
        description="Latest deduplicated trigger",
    )
    value: Optional[float] = Field(default=None, description="Value at trigger time")
    threshold: Optional[float] = Field(default=None, description="Threshold at trigger time")
    last_value: Optional[float] = Field(default=None, description="Latest observed value")

    # Acknowledgment
    acknowledged_at: Optional[datetime] = Field(default=None, description="Acknowledged at")
    acknowledged_by: Optional[str] = Field(default=None, description="Acknowledged by")

    # Escalation
    layer2_at: Optional[datetime] = Field(default=None, description="Layer 2 reached at")
    layer3_at: Optional[datetime] = Field(default=None, description="Layer 3 reached at")
    condition_cleared: bool = Field(default=False, description="Condition returned to normal")
    condition_cleared_at: Optional[datetime] = Field(default=None, description="Cleared at")
    notified_layer: int = Field(default=0, ge=0, le=3, description="Last fully notified layer")

    # Resolution
    resolved_at: Optional[datetime] = Field(default=None, description="Resolved at")
    resolution_reason: Optional[str] = Field(default=None, description="Resolution reason")
    resolved_by: Optional[str] = Field(default=None, description="Resolved by")

    @property
    def is_open(self) -> bool:
        """Check if the alert is not resolved."""
        return self.status != AlertStatus.RESOLVED

    @property
    def is_acknowledged(self) -> bool:
        """Check if the alert has been acknowledged."""
        return self.acknowledged_at is not None

    @property
    def needs_notification(self) -> bool:
        """Check if the current layer still lacks a successful dispatch."""
        return self.is_open and self.notified_layer < int(self.layer)

    @property
    def dedup_key(self) -> str:
        """Key identifying the (cold cell, type) pair."""
        return build_dedup_key(self.cold_cell_id, self.alert_type)

    def elapsed_minutes(self, now: datetime) -> int:
        """Whole minutes since the alert was triggered."""
        return max(0, int((now - self.triggered_at).total_seconds() // 60))

    def acknowledge(self, timestamp: datetime, by: Optional[str] = None) -> "Alert":
        """
        Mark the alert as acknowledged.

        Args:
            timestamp: Acknowledgment time.
            by: Identity acknowledging the alert.

        Returns:
            Alert: Updated alert, or self if already acknowledged.
        """
        if self.is_acknowledged:
            return self
        return self.model_copy(update={"acknowledged_at": timestamp, "acknowledged_by": by})

    def promote(self, layer: AlertLayer, timestamp: datetime) -> "Alert":
        """
        Move the alert to a higher layer and stamp the layer time.

        Args:
            layer: Target layer, must be above the current one.
            timestamp: Promotion time.

        Returns:
            Alert: Updated alert.

        Raises:
            ValueError: If ``layer`` would not raise the current layer.
        """
        if layer <= self.layer:
            raise ValueError(f"cannot move alert from layer {int(self.layer)} to {int(layer)}")
        update: Dict[str, Any] = {
            "layer": layer,
            "status": AlertStatus.for_layer(layer),
        }
        if layer == AlertLayer.LAYER_2 and self.layer2_at is None:
            update["layer2_at"] = timestamp
        if layer == AlertLayer.LAYER_3 and self.layer3_at is None:
            update["layer3_at"] = timestamp
        return self.model_copy(update=update)

    def refresh_trigger(self, timestamp: datetime, value: Optional[float]) -> "Alert":
        """Record a trigger absorbed by deduplication and re-arm a cleared condition."""
        return self.model_copy(
            update={
                "last_triggered_at": timestamp,
                "last_value": value if value is not None else self.last_value,
                "condition_cleared": False,
                "condition_cleared_at": None,
            }
        )

    def mark_cleared(self, timestamp: datetime, value: Optional[float] = None) -> "Alert":
        """Flag that the underlying condition returned to normal."""
        if self.condition_cleared:
            return self
        return self.model_copy(
            update={
                "condition_cleared": True,
                "condition_cleared_at": timestamp,
                "last_value": value if value is not None else self.last_value,
            }
        )

    def mark_notified(self, layer: AlertLayer) -> "Alert":
        """Record that ``layer`` was delivered on every channel."""
        if self.notified_layer >= int(layer):
            return self
        return self.model_copy(update={"notified_layer": int(layer)})

    def resolve(
        self,
        reason: Optional[str],
        timestamp: datetime,
        by: Optional[str] = None,
    ) -> "Alert":
        """
        Resolve the alert.

        Args:
            reason: Resolution reason (may be empty where allowed).
            timestamp: Resolution time.
            by: Identity resolving the alert.

        Returns:
            Alert: Resolved alert.
        """
        return self.model_copy(
            update={
                "status": AlertStatus.RESOLVED,
                "resolved_at": timestamp,
                "resolution_reason": reason,
                "resolved_by": by,
            }
        )

    def summary(self) -> Dict[str, Any]:
        """Compact representation pushed to live subscribers."""
        return {
            "alertId": self.alert_id,
            "type": self.alert_type.value,
            "status": self.status.value,
            "layer": int(self.layer),
            "triggeredAt": self.triggered_at.isoformat(),
            "acknowledged": self.is_acknowledged,
            "conditionCleared": self.condition_cleared,
            "value": self.last_value if self.last_value is not None else self.value,
        }


def build_dedup_key(cold_cell_id: str, alert_type: AlertType) -> str:
    """
    Build the deduplication key for a (cold cell, alert type) pair.

    Args:
        cold_cell_id: Cold cell identifier.
        alert_type: Alert type.

    Returns:
        str: Key formatted as ``"{cold_cell_id}:{alert_type}"``.

    Example:
        >>> build_dedup_key("cell-1", AlertType.DOOR_OPEN)
        'cell-1:DOOR_OPEN'
    """
    return f"{cold_cell_id}:{alert_type.value}"

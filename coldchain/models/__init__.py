"""
Shared Pydantic data models for the cold-chain engine.

Modules:
    assets: Cold cells, devices, contacts and escalation configuration
    readings: Telemetry samples
    door: Door position and day counters
    alerts: Alert vocabulary, condition signals and alert instances
    notifications: Delivery outcomes and dispatch reports

Example:
    >>> from coldchain.models import Alert, AlertType, ColdCell, SensorReading
"""

from coldchain.models.alerts import (
    Alert,
    AlertLayer,
    AlertStatus,
    AlertType,
    ConditionSignal,
    SignalKind,
    TimeSlot,
    build_dedup_key,
)
from coldchain.models.assets import (
    ColdCell,
    Contact,
    Device,
    DeviceStatus,
    EscalationConfig,
)
from coldchain.models.door import DoorDayCounters, DoorPosition, DoorState
from coldchain.models.notifications import (
    ChannelKind,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchReport,
)
from coldchain.models.readings import SensorReading

__all__ = [
    # Alerts
    "Alert",
    "AlertLayer",
    "AlertStatus",
    "AlertType",
    "ConditionSignal",
    "SignalKind",
    "TimeSlot",
    "build_dedup_key",
    # Assets
    "ColdCell",
    "Contact",
    "Device",
    "DeviceStatus",
    "EscalationConfig",
    # Door
    "DoorDayCounters",
    "DoorPosition",
    "DoorState",
    # Notifications
    "ChannelKind",
    "DeliveryOutcome",
    "DeliveryStatus",
    "DispatchReport",
    # Readings
    "SensorReading",
]

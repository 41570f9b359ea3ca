"""
In-memory state store.

Single-process StateStore used by tests, demos and the gateway's
single-process mode. All mutations run under one asyncio.Lock, which makes
every ``update_*`` call an atomic read-modify-write and ``create_alert`` an
atomic check-and-insert on the dedup index.

Example:
    >>> store = InMemoryStateStore()
    >>> await store.save_cold_cell(cell)
    >>> await store.create_alert(alert)
    True
    >>> await store.create_alert(duplicate)
    False
"""

import asyncio
from typing import Dict, Iterable, List, Optional

import structlog

from coldchain.errors import NotFoundError
from coldchain.interfaces.state_store import (
    AlertMutation,
    DeviceMutation,
    DoorMutation,
    StateStore,
    matches_filters,
    sort_alerts,
)
from coldchain.models.alerts import Alert, AlertStatus, AlertType, build_dedup_key
from coldchain.models.assets import ColdCell, Device, EscalationConfig
from coldchain.models.door import DoorState

logger = structlog.get_logger(__name__)


class InMemoryStateStore(StateStore):
    """
    StateStore backed by dictionaries.

    Attributes:
        _cells: Cold cells keyed by id.
        _configs: Escalation configs keyed by customer id.
        _devices: Devices keyed by serial.
        _doors: Door states keyed by cold cell id.
        _alerts: Alerts keyed by id.
        _open_slots: Dedup index, dedup key -> alert id of the open alert.
    """

    def __init__(self) -> None:
        self._cells: Dict[str, ColdCell] = {}
        self._configs: Dict[str, EscalationConfig] = {}
        self._devices: Dict[str, Device] = {}
        self._doors: Dict[str, DoorState] = {}
        self._alerts: Dict[str, Alert] = {}
        self._open_slots: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    # Assets

    async def get_cold_cell(self, cold_cell_id: str) -> Optional[ColdCell]:
        return self._cells.get(cold_cell_id)

    async def list_cold_cells(self, customer_id: Optional[str] = None) -> List[ColdCell]:
        return [
            cell
            for cell in self._cells.values()
            if customer_id is None or cell.customer_id == customer_id
        ]

    async def save_cold_cell(self, cell: ColdCell) -> None:
        async with self._lock:
            self._cells[cell.cold_cell_id] = cell

    async def get_escalation_config(self, customer_id: str) -> Optional[EscalationConfig]:
        return self._configs.get(customer_id)

    async def save_escalation_config(self, config: EscalationConfig) -> None:
        async with self._lock:
            self._configs[config.customer_id] = config

    # Devices

    async def get_device(self, serial: str) -> Optional[Device]:
        return self._devices.get(serial)

    async def list_devices(self) -> List[Device]:
        return list(self._devices.values())

    async def save_device(self, device: Device) -> None:
        async with self._lock:
            self._devices[device.serial] = device

    async def update_device(self, serial: str, mutate: DeviceMutation) -> Optional[Device]:
        async with self._lock:
            current = self._devices.get(serial)
            if current is None:
                raise NotFoundError("device", serial)
            replacement = mutate(current)
            if replacement is None:
                return None
            self._devices[serial] = replacement
            return replacement

    # Door state

    async def get_door_state(self, cold_cell_id: str) -> DoorState:
        return self._doors.get(cold_cell_id) or DoorState(cold_cell_id=cold_cell_id)

    async def update_door_state(
        self,
        cold_cell_id: str,
        mutate: DoorMutation,
    ) -> Optional[DoorState]:
        async with self._lock:
            current = self._doors.get(cold_cell_id) or DoorState(cold_cell_id=cold_cell_id)
            replacement = mutate(current)
            if replacement is None:
                return None
            self._doors[cold_cell_id] = replacement
            return replacement

    async def list_open_doors(self) -> List[DoorState]:
        return [state for state in self._doors.values() if state.is_open]

    # Alerts

    async def create_alert(self, alert: Alert) -> bool:
        async with self._lock:
            key = alert.dedup_key
            if key in self._open_slots:
                logger.debug(
                    "alert_slot_taken",
                    dedup_key=key,
                    existing_alert_id=self._open_slots[key],
                )
                return False
            self._alerts[alert.alert_id] = alert
            self._open_slots[key] = alert.alert_id
            return True

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    async def find_open_alert(
        self,
        cold_cell_id: str,
        alert_type: AlertType,
    ) -> Optional[Alert]:
        alert_id = self._open_slots.get(build_dedup_key(cold_cell_id, alert_type))
        if alert_id is None:
            return None
        return self._alerts.get(alert_id)

    async def list_alerts(
        self,
        cold_cell_ids: Optional[Iterable[str]] = None,
        status: Optional[AlertStatus] = None,
        alert_type: Optional[AlertType] = None,
        open_only: bool = False,
    ) -> List[Alert]:
        cell_filter = set(cold_cell_ids) if cold_cell_ids is not None else None
        return sort_alerts(
            alert
            for alert in self._alerts.values()
            if matches_filters(alert, cell_filter, status, alert_type, open_only)
        )

    async def list_open_alerts(self) -> List[Alert]:
        return [self._alerts[alert_id] for alert_id in self._open_slots.values()]

    async def update_alert(self, alert_id: str, mutate: AlertMutation) -> Optional[Alert]:
        async with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                raise NotFoundError("alert", alert_id)
            replacement = mutate(current)
            if replacement is None:
                return None
            self._alerts[alert_id] = replacement
            if not replacement.is_open and self._open_slots.get(current.dedup_key) == alert_id:
                del self._open_slots[current.dedup_key]
            return replacement

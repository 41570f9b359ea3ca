"""
Telemetry ingest: readings, heartbeats and periodic sweeps.

Ingest is the entry point for device traffic. It validates a reading,
applies it to the device and door state with atomic store updates, asks the
ConditionEvaluator for signals and hands them to the AlertManager, which
tells its change listener when the cell's visible state changed.

Ordering:
    A reading whose ``recorded_at`` is not newer than the last applied one
    is stale (a retry or an out-of-order upload). It is recorded to history
    and applied nowhere, so it can never overwrite newer state.

Sweeps:
    ``sweep`` marks silent devices offline (POWER_LOSS), triggers door
    timers that expired without a reading, and raises SENSOR_ERROR for
    malformed streaks that outlived the tolerance.

Door periods:
    One open period of a door raises at most one DOOR_OPEN alert. Once that
    alert is resolved, neither the sweep nor a late reading for the same
    period triggers again; the next alert needs the door to close and reopen.

Example:
    >>> ingestor = TelemetryIngestor(store, evaluator, manager)
    >>> result = await ingestor.submit_reading("CT-1001", {"temperature": 9.2, ...})
    >>> [alert.alert_type for alert in result.created_alerts]
    [<AlertType.HIGH_TEMP: 'HIGH_TEMP'>]
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

import pydantic
import structlog
from pydantic import BaseModel, Field

from coldchain.engine.evaluator import ConditionEvaluator
from coldchain.engine.manager import AlertManager, SignalAction, SignalOutcome, utc_now
from coldchain.engine.rollover import apply_transition
from coldchain.errors import NotFoundError, ValidationError
from coldchain.interfaces.history import HistoryRecorder
from coldchain.interfaces.state_store import StateStore
from coldchain.models.alerts import Alert, AlertStatus, AlertType, ConditionSignal
from coldchain.models.assets import ColdCell, Device, DeviceStatus
from coldchain.models.door import DoorPosition, DoorState
from coldchain.models.readings import SensorReading

logger = structlog.get_logger(__name__)


UTC = ZoneInfo("UTC")


class IngestResult(BaseModel):
    """Outcome of one submitted reading."""

    model_config = {"frozen": True, "extra": "forbid"}

    device_serial: str = Field(..., description="Submitting device")
    cold_cell_id: str = Field(..., description="Cold cell of the device")
    accepted: bool = Field(..., description="Reading validated and stored")
    stale: bool = Field(default=False, description="Older than the last applied reading")
    door_changed: bool = Field(default=False, description="Door position changed")
    signals: List[ConditionSignal] = Field(default_factory=list, description="Evaluated signals")
    created_alerts: List[Alert] = Field(default_factory=list, description="Alerts created")


class SweepReport(BaseModel):
    """Outcome of one sweep pass."""

    model_config = {"frozen": True, "extra": "forbid"}

    swept_at: datetime = Field(..., description="Sweep time")
    offline_devices: List[str] = Field(default_factory=list, description="Devices marked offline")
    signals: List[ConditionSignal] = Field(default_factory=list, description="Triggered signals")
    created_alerts: List[Alert] = Field(default_factory=list, description="Alerts created")


def _created(outcomes: List[SignalOutcome]) -> List[Alert]:
    return [o.alert for o in outcomes if o.action == SignalAction.CREATED and o.alert is not None]


def _validation_details(error: pydantic.ValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
        for err in error.errors()
    ]


class TelemetryIngestor:
    """
    Applies device traffic to engine state.

    Attributes:
        store: Live state store.
        evaluator: Condition evaluator.
        manager: Alert manager.
        history: Optional history recorder for readings.
        offline_threshold: Silence after which an online device goes offline.
    """

    def __init__(
        self,
        store: StateStore,
        evaluator: ConditionEvaluator,
        manager: AlertManager,
        history: Optional[HistoryRecorder] = None,
        offline_threshold_seconds: int = 30,
        sweep_interval_seconds: int = 5,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.manager = manager
        self.history = history
        self.offline_threshold = timedelta(seconds=offline_threshold_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds

    # =========================================================================
    # READINGS
    # =========================================================================

    async def submit_reading(
        self,
        serial: str,
        payload: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """
        Validate and apply one reading.

        Args:
            serial: Device serial from the request path.
            payload: Raw reading fields.
            now: Receive time (defaults to the current UTC time).

        Returns:
            IngestResult: What the reading did.

        Raises:
            NotFoundError: Unknown device or cold cell.
            ValidationError: Malformed reading (the malformed streak is recorded).
        """
        now = now or utc_now()
        device, cell = await self._load_device(serial)

        if not isinstance(payload, Mapping):
            logger.warning("reading_malformed", device_serial=serial, errors="not an object")
            await self._record_malformed(device, cell, now)
            raise ValidationError("Malformed reading: expected a JSON object")

        try:
            reading = SensorReading.model_validate({**payload, "device_serial": serial})
        except pydantic.ValidationError as e:
            details = _validation_details(e)
            logger.warning("reading_malformed", device_serial=serial, errors=details)
            await self._record_malformed(device, cell, now)
            raise ValidationError("Malformed reading", details={"errors": details}) from e

        def apply_reading(current: Device) -> Optional[Device]:
            if not current.is_newer(reading.recorded_at):
                return None
            return current.bump(
                status=DeviceStatus.ONLINE,
                last_seen_at=now,
                last_reading_at=reading.recorded_at,
                malformed_since=None,
            )

        applied = await self.store.update_device(serial, apply_reading)
        await self._record_reading(reading, cell)

        if applied is None:
            logger.info(
                "reading_stale",
                device_serial=serial,
                recorded_at=reading.recorded_at.isoformat(),
                last_reading_at=device.last_reading_at.isoformat() if device.last_reading_at else None,
            )
            return IngestResult(
                device_serial=serial,
                cold_cell_id=cell.cold_cell_id,
                accepted=True,
                stale=True,
            )

        door_before, door_changed = await self._apply_door(cell, reading)
        signals = self.evaluator.evaluate_reading(cell, reading, door_before)
        signals = await self._drop_resolved_door_trigger(cell, door_before, signals)
        outcomes = await self.manager.apply_signals(signals, notify=False)

        if door_changed or any(o.changed for o in outcomes):
            await self.manager.notify_changed(cell.cold_cell_id)

        created = _created(outcomes)
        logger.debug(
            "reading_applied",
            device_serial=serial,
            cold_cell_id=cell.cold_cell_id,
            temperature=reading.temperature,
            door_changed=door_changed,
            created_alerts=len(created),
        )
        return IngestResult(
            device_serial=serial,
            cold_cell_id=cell.cold_cell_id,
            accepted=True,
            door_changed=door_changed,
            signals=signals,
            created_alerts=created,
        )

    async def heartbeat(self, serial: str, now: Optional[datetime] = None) -> Device:
        """
        Record a liveness ping from a device.

        A device coming back from OFFLINE clears its POWER_LOSS condition.

        Raises:
            NotFoundError: Unknown device.
        """
        now = now or utc_now()
        device, cell = await self._load_device(serial)

        def touch(current: Device) -> Optional[Device]:
            return current.bump(status=DeviceStatus.ONLINE, last_seen_at=now)

        updated = await self.store.update_device(serial, touch)
        if updated is None:
            return device

        if not device.is_online:
            logger.info("device_back_online", device_serial=serial, cold_cell_id=cell.cold_cell_id)
            await self.manager.apply_signals([self.evaluator.evaluate_online(cell, updated, now)])
        return updated

    # =========================================================================
    # SWEEP
    # =========================================================================

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Detect silent devices, expired door timers and long malformed streaks.

        Args:
            now: Sweep time (defaults to the current UTC time).

        Returns:
            SweepReport: Devices marked offline and alerts created.
        """
        now = now or utc_now()
        signals: List[ConditionSignal] = []
        offline: List[str] = []
        cells: Dict[str, Optional[ColdCell]] = {}

        async def cell_for(cold_cell_id: str) -> Optional[ColdCell]:
            if cold_cell_id not in cells:
                cells[cold_cell_id] = await self.store.get_cold_cell(cold_cell_id)
            return cells[cold_cell_id]

        for device in await self.store.list_devices():
            cell = await cell_for(device.cold_cell_id)
            if cell is None:
                continue

            if self._is_silent(device, now):
                went_offline = await self.store.update_device(
                    device.serial,
                    lambda current: current.bump(status=DeviceStatus.OFFLINE)
                    if self._is_silent(current, now)
                    else None,
                )
                if went_offline is not None:
                    offline.append(device.serial)
                    logger.warning(
                        "device_offline",
                        device_serial=device.serial,
                        cold_cell_id=cell.cold_cell_id,
                        last_seen_at=device.last_seen_at.isoformat() if device.last_seen_at else None,
                    )
                    signals.append(self.evaluator.evaluate_offline(cell, went_offline, now))

            malformed = self.evaluator.evaluate_malformed(cell, device, now)
            if malformed is not None:
                signals.append(malformed)

        for door in await self.store.list_open_doors():
            cell = await cell_for(door.cold_cell_id)
            if cell is None:
                continue
            expired = self.evaluator.evaluate_door_timer(cell, door, now)
            if expired is not None and not await self._door_period_resolved(cell, door):
                signals.append(expired)

        outcomes = await self.manager.apply_signals(signals) if signals else []
        created = _created(outcomes)
        if offline or created:
            logger.info(
                "sweep_complete",
                offline_devices=len(offline),
                signals=len(signals),
                created_alerts=len(created),
            )
        return SweepReport(
            swept_at=now,
            offline_devices=offline,
            signals=signals,
            created_alerts=created,
        )

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sweep every ``sweep_interval_seconds`` until ``stop_event`` is set."""
        logger.info("ingest_sweeper_started", interval=self.sweep_interval_seconds)
        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error("sweep_failed", error=str(e), error_type=type(e).__name__)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("ingest_sweeper_stopped")

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _is_silent(self, device: Device, now: datetime) -> bool:
        return (
            device.is_online
            and device.last_seen_at is not None
            and now - device.last_seen_at > self.offline_threshold
        )

    async def _load_device(self, serial: str) -> Tuple[Device, ColdCell]:
        device = await self.store.get_device(serial)
        if device is None:
            raise NotFoundError("device", serial)
        cell = await self.store.get_cold_cell(device.cold_cell_id)
        if cell is None:
            raise NotFoundError("cold cell", device.cold_cell_id)
        return device, cell

    async def _zone_for(self, cell: ColdCell) -> ZoneInfo:
        config = await self.store.get_escalation_config(cell.customer_id)
        return config.zone if config is not None else UTC

    async def _apply_door(
        self,
        cell: ColdCell,
        reading: SensorReading,
    ) -> Tuple[DoorState, bool]:
        """Apply the reading's door flag; return the state it was applied to."""
        if reading.door_open is None:
            return await self.store.get_door_state(cell.cold_cell_id), False

        position = DoorPosition.from_flag(reading.door_open)
        zone = await self._zone_for(cell)
        seen: List[DoorState] = []

        def transition(current: DoorState) -> Optional[DoorState]:
            seen.append(current)
            if current.position == position:
                return None
            if current.last_changed_at is not None and reading.recorded_at < current.last_changed_at:
                return None
            return apply_transition(current, position, reading.recorded_at, zone)

        changed = await self.store.update_door_state(cell.cold_cell_id, transition)
        before = seen[-1] if seen else await self.store.get_door_state(cell.cold_cell_id)
        if changed is not None:
            logger.info(
                "door_transition",
                cold_cell_id=cell.cold_cell_id,
                position=position.value,
                at=reading.recorded_at.isoformat(),
            )
        return before, changed is not None

    async def _door_period_resolved(self, cell: ColdCell, door: DoorState) -> bool:
        """Whether the door's current open period already had its alert resolved."""
        opened_at = door.open_since()
        if opened_at is None:
            return False

        resolved = await self.store.list_alerts(
            cold_cell_ids=[cell.cold_cell_id],
            status=AlertStatus.RESOLVED,
            alert_type=AlertType.DOOR_OPEN,
        )
        if not any(alert.triggered_at >= opened_at for alert in resolved):
            return False

        logger.debug(
            "door_alert_suppressed",
            cold_cell_id=cell.cold_cell_id,
            open_since=opened_at.isoformat(),
        )
        return True

    async def _drop_resolved_door_trigger(
        self,
        cell: ColdCell,
        door_before: DoorState,
        signals: List[ConditionSignal],
    ) -> List[ConditionSignal]:
        def is_door_trigger(signal: ConditionSignal) -> bool:
            return signal.alert_type == AlertType.DOOR_OPEN and signal.is_trigger

        if not any(is_door_trigger(s) for s in signals):
            return signals
        if not await self._door_period_resolved(cell, door_before):
            return signals
        return [s for s in signals if not is_door_trigger(s)]

    async def _record_malformed(self, device: Device, cell: ColdCell, now: datetime) -> None:
        def mark(current: Device) -> Optional[Device]:
            return current.bump(
                last_seen_at=now,
                malformed_since=current.malformed_since or now,
            )

        updated = await self.store.update_device(device.serial, mark) or device
        signal = self.evaluator.evaluate_malformed(cell, updated, now)
        if signal is not None:
            await self.manager.apply_signals([signal])

    async def _record_reading(self, reading: SensorReading, cell: ColdCell) -> None:
        if self.history is None:
            return
        try:
            await self.history.record_reading(reading, cell.cold_cell_id)
        except Exception as e:
            logger.warning(
                "reading_history_record_failed",
                device_serial=reading.device_serial,
                error=str(e),
            )


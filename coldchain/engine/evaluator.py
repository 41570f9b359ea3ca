"""
Condition evaluator turning telemetry into trigger/clear signals.

The evaluator is stateless: every input it needs (cold cell thresholds, the
door state before the reading, the device before the reading) is passed in,
and it never looks at alerts. The AlertManager decides what a signal means
for the alert lifecycle.

Rules:
    - HIGH_TEMP / LOW_TEMP: temperature above max / below min triggers;
      back inside [min, max] clears both.
    - DOOR_OPEN: a door open for ``door_alarm_delay_seconds`` triggers at
      ``opened_at + delay``. Expiry is noticed by a later reading, by the
      periodic sweep, or by a closing reading that arrives late (which then
      triggers and clears). Any closing clears.
    - POWER_LOSS: ``power_on=False`` or a missed heartbeat triggers; a
      reading with power present clears.
    - SENSOR_ERROR: malformed readings persisting beyond the tolerance
      trigger; the next valid reading clears.

Example:
    >>> evaluator = ConditionEvaluator(sensor_error_tolerance_seconds=300)
    >>> signals = evaluator.evaluate_reading(cell, reading, door_before)
    >>> [s.alert_type.value for s in signals if s.is_trigger]
    ['HIGH_TEMP']
"""

from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from coldchain.config.models import EngineConfig
from coldchain.models.alerts import AlertType, ConditionSignal, SignalKind
from coldchain.models.assets import ColdCell, Device
from coldchain.models.door import DoorState
from coldchain.models.readings import SensorReading

logger = structlog.get_logger(__name__)


class ConditionEvaluator:
    """
    Stateless translation of telemetry into ConditionSignals.

    Attributes:
        sensor_error_tolerance: How long a malformed streak is tolerated.
    """

    def __init__(self, sensor_error_tolerance_seconds: int = 300) -> None:
        self.sensor_error_tolerance = timedelta(seconds=sensor_error_tolerance_seconds)

    # =========================================================================
    # READINGS
    # =========================================================================

    def evaluate_reading(
        self,
        cell: ColdCell,
        reading: SensorReading,
        door_before: Optional[DoorState] = None,
    ) -> List[ConditionSignal]:
        """
        Evaluate one valid, non-stale reading.

        Args:
            cell: The cold cell the device monitors.
            reading: The validated reading.
            door_before: Door state before this reading was applied.

        Returns:
            List[ConditionSignal]: Signals in application order.
        """
        signals = self.evaluate_temperature(cell, reading)
        signals.extend(self.evaluate_power(cell, reading))
        if door_before is not None:
            signals.extend(self.evaluate_door(cell, door_before, reading))
        signals.append(
            self._signal(
                cell,
                AlertType.SENSOR_ERROR,
                SignalKind.CLEAR,
                reading.recorded_at,
                device_serial=reading.device_serial,
            )
        )
        return signals

    def evaluate_temperature(self, cell: ColdCell, reading: SensorReading) -> List[ConditionSignal]:
        """Threshold check against the cell's [min, max] range."""
        temperature = reading.temperature
        at = reading.recorded_at
        serial = reading.device_serial

        if temperature > cell.temperature_max:
            return [
                self._signal(
                    cell,
                    AlertType.HIGH_TEMP,
                    SignalKind.TRIGGER,
                    at,
                    value=temperature,
                    threshold=cell.temperature_max,
                    device_serial=serial,
                    detail="temperature above maximum",
                ),
                self._signal(cell, AlertType.LOW_TEMP, SignalKind.CLEAR, at, value=temperature,
                             device_serial=serial),
            ]
        if temperature < cell.temperature_min:
            return [
                self._signal(
                    cell,
                    AlertType.LOW_TEMP,
                    SignalKind.TRIGGER,
                    at,
                    value=temperature,
                    threshold=cell.temperature_min,
                    device_serial=serial,
                    detail="temperature below minimum",
                ),
                self._signal(cell, AlertType.HIGH_TEMP, SignalKind.CLEAR, at, value=temperature,
                             device_serial=serial),
            ]
        return [
            self._signal(cell, AlertType.HIGH_TEMP, SignalKind.CLEAR, at, value=temperature,
                         device_serial=serial),
            self._signal(cell, AlertType.LOW_TEMP, SignalKind.CLEAR, at, value=temperature,
                         device_serial=serial),
        ]

    def evaluate_power(self, cell: ColdCell, reading: SensorReading) -> List[ConditionSignal]:
        """Mains power flag; a reading without the flag still proves the device is alive."""
        kind = SignalKind.TRIGGER if reading.power_on is False else SignalKind.CLEAR
        return [
            self._signal(
                cell,
                AlertType.POWER_LOSS,
                kind,
                reading.recorded_at,
                device_serial=reading.device_serial,
                detail="power_on=false" if kind == SignalKind.TRIGGER else None,
            )
        ]

    def evaluate_door(
        self,
        cell: ColdCell,
        door_before: DoorState,
        reading: SensorReading,
    ) -> List[ConditionSignal]:
        """
        Door timer check for a reading.

        Args:
            cell: The cold cell.
            door_before: Door state before the reading.
            reading: The reading, possibly without a door flag.

        Returns:
            List[ConditionSignal]: A trigger when the timer expired, a clear
            when the reading closes the door.
        """
        signals: List[ConditionSignal] = []
        expiry = self._door_expiry(cell, door_before)

        if expiry is not None and reading.recorded_at >= expiry:
            signals.append(self._door_trigger(cell, door_before, expiry, reading.device_serial))

        if reading.door_open is False:
            signals.append(
                self._signal(
                    cell,
                    AlertType.DOOR_OPEN,
                    SignalKind.CLEAR,
                    reading.recorded_at,
                    device_serial=reading.device_serial,
                )
            )
        return signals

    # =========================================================================
    # SWEEPS
    # =========================================================================

    def evaluate_door_timer(
        self,
        cell: ColdCell,
        door: DoorState,
        now: datetime,
    ) -> Optional[ConditionSignal]:
        """Trigger DOOR_OPEN for a door still open past its delay, if any."""
        expiry = self._door_expiry(cell, door)
        if expiry is None or now < expiry:
            return None
        return self._door_trigger(cell, door, expiry, None)

    def evaluate_offline(self, cell: ColdCell, device: Device, now: datetime) -> ConditionSignal:
        """POWER_LOSS trigger for a device that stopped reporting."""
        return self._signal(
            cell,
            AlertType.POWER_LOSS,
            SignalKind.TRIGGER,
            now,
            device_serial=device.serial,
            detail="heartbeat missed",
        )

    def evaluate_online(self, cell: ColdCell, device: Device, now: datetime) -> ConditionSignal:
        """POWER_LOSS clear for a device that reported again."""
        return self._signal(
            cell,
            AlertType.POWER_LOSS,
            SignalKind.CLEAR,
            now,
            device_serial=device.serial,
            detail="device back online",
        )

    def evaluate_malformed(
        self,
        cell: ColdCell,
        device: Device,
        now: datetime,
    ) -> Optional[ConditionSignal]:
        """SENSOR_ERROR trigger once a malformed streak outlasts the tolerance."""
        if device.malformed_since is None:
            return None
        if now - device.malformed_since < self.sensor_error_tolerance:
            return None
        return self._signal(
            cell,
            AlertType.SENSOR_ERROR,
            SignalKind.TRIGGER,
            now,
            device_serial=device.serial,
            detail="malformed readings",
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _door_expiry(self, cell: ColdCell, door: DoorState) -> Optional[datetime]:
        opened_at = door.open_since()
        if opened_at is None:
            return None
        return opened_at + timedelta(seconds=cell.door_alarm_delay_seconds)

    def _door_trigger(
        self,
        cell: ColdCell,
        door: DoorState,
        expiry: datetime,
        device_serial: Optional[str],
    ) -> ConditionSignal:
        return self._signal(
            cell,
            AlertType.DOOR_OPEN,
            SignalKind.TRIGGER,
            expiry,
            value=float(cell.door_alarm_delay_seconds),
            threshold=float(cell.door_alarm_delay_seconds),
            device_serial=device_serial,
            detail=f"door open since {door.last_changed_at.isoformat()}",
        )

    def _signal(
        self,
        cell: ColdCell,
        alert_type: AlertType,
        kind: SignalKind,
        observed_at: datetime,
        value: Optional[float] = None,
        threshold: Optional[float] = None,
        device_serial: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> ConditionSignal:
        return ConditionSignal(
            cold_cell_id=cell.cold_cell_id,
            alert_type=alert_type,
            kind=kind,
            observed_at=observed_at,
            value=value,
            threshold=threshold,
            device_serial=device_serial,
            detail=detail,
        )


def create_evaluator(config: Optional[EngineConfig] = None) -> ConditionEvaluator:
    """
    Factory function to create a ConditionEvaluator.

    Args:
        config: Engine configuration (defaults apply when omitted).

    Returns:
        ConditionEvaluator: Configured evaluator.
    """
    config = config or EngineConfig()
    evaluator = ConditionEvaluator(
        sensor_error_tolerance_seconds=config.sensor_error_tolerance_seconds,
    )
    logger.info(
        "condition_evaluator_created",
        sensor_error_tolerance_seconds=config.sensor_error_tolerance_seconds,
    )
    return evaluator

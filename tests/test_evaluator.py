"""
Unit tests for the ConditionEvaluator.
"""

from datetime import timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from coldchain.engine.evaluator import ConditionEvaluator
from coldchain.engine.rollover import apply_transition
from coldchain.models.alerts import AlertType, ConditionSignal, SignalKind
from coldchain.models.assets import Device
from coldchain.models.door import DoorPosition, DoorState
from coldchain.models.readings import SensorReading
from tests.conftest import CELL_ID, OPEN_AT, SERIAL

UTC = ZoneInfo("UTC")


def _reading(temperature: float = 4.5, at=OPEN_AT, **fields) -> SensorReading:
    return SensorReading(device_serial=SERIAL, temperature=temperature, recorded_at=at, **fields)


def _kinds(signals: List[ConditionSignal]) -> List[Tuple[str, str]]:
    return [(s.alert_type.value, s.kind.value) for s in signals]


def _open_door(at=OPEN_AT) -> DoorState:
    return apply_transition(DoorState(cold_cell_id=CELL_ID), DoorPosition.OPEN, at, UTC)


def _find(signals: List[ConditionSignal], alert_type: AlertType) -> Optional[ConditionSignal]:
    return next((s for s in signals if s.alert_type == alert_type), None)


class TestTemperature:
    """Threshold checks."""

    def test_above_max_triggers_high(self, evaluator, cold_cell):
        """A reading above max triggers HIGH_TEMP and clears LOW_TEMP."""
        signals = evaluator.evaluate_temperature(cold_cell, _reading(9.5))

        assert _kinds(signals) == [("HIGH_TEMP", "trigger"), ("LOW_TEMP", "clear")]
        assert signals[0].value == 9.5
        assert signals[0].threshold == 7.0

    def test_below_min_triggers_low(self, evaluator, cold_cell):
        """A reading below min triggers LOW_TEMP and clears HIGH_TEMP."""
        signals = evaluator.evaluate_temperature(cold_cell, _reading(-1.5))

        assert _kinds(signals) == [("LOW_TEMP", "trigger"), ("HIGH_TEMP", "clear")]
        assert signals[0].threshold == 0.0

    def test_bounds_are_inside_the_range(self, evaluator, cold_cell):
        """Exactly max or min is in range and clears both."""
        for temperature in (7.0, 0.0):
            signals = evaluator.evaluate_temperature(cold_cell, _reading(temperature))
            assert _kinds(signals) == [("HIGH_TEMP", "clear"), ("LOW_TEMP", "clear")]


class TestPower:
    """Mains power flag."""

    def test_power_off_triggers(self, evaluator, cold_cell):
        """power_on=false triggers POWER_LOSS."""
        signals = evaluator.evaluate_power(cold_cell, _reading(power_on=False))

        assert _kinds(signals) == [("POWER_LOSS", "trigger")]

    def test_power_on_or_missing_clears(self, evaluator, cold_cell):
        """A reading with power, or without the flag, clears POWER_LOSS."""
        assert _kinds(evaluator.evaluate_power(cold_cell, _reading(power_on=True))) == [
            ("POWER_LOSS", "clear")
        ]
        assert _kinds(evaluator.evaluate_power(cold_cell, _reading())) == [("POWER_LOSS", "clear")]


class TestDoor:
    """Door timer rules."""

    def test_no_trigger_before_delay(self, evaluator, cold_cell):
        """A door open for less than the delay does not alert."""
        reading = _reading(at=OPEN_AT + timedelta(seconds=299), door_open=True)
        signals = evaluator.evaluate_door(cold_cell, _open_door(), reading)

        assert signals == []

    def test_trigger_at_expiry(self, evaluator, cold_cell):
        """A reading at opened_at + delay triggers, observed at the expiry time."""
        reading = _reading(at=OPEN_AT + timedelta(seconds=300), door_open=True)
        signals = evaluator.evaluate_door(cold_cell, _open_door(), reading)

        assert _kinds(signals) == [("DOOR_OPEN", "trigger")]
        assert signals[0].observed_at == OPEN_AT + timedelta(seconds=300)

    def test_late_close_triggers_then_clears(self, evaluator, cold_cell):
        """A closing reading after expiry raises the alert and clears it."""
        reading = _reading(at=OPEN_AT + timedelta(seconds=400), door_open=False)
        signals = evaluator.evaluate_door(cold_cell, _open_door(), reading)

        assert _kinds(signals) == [("DOOR_OPEN", "trigger"), ("DOOR_OPEN", "clear")]
        assert signals[0].observed_at == OPEN_AT + timedelta(seconds=300)

    def test_close_before_expiry_only_clears(self, evaluator, cold_cell):
        """Closing in time never triggers."""
        reading = _reading(at=OPEN_AT + timedelta(seconds=60), door_open=False)
        signals = evaluator.evaluate_door(cold_cell, _open_door(), reading)

        assert _kinds(signals) == [("DOOR_OPEN", "clear")]

    def test_door_timer_sweep(self, evaluator, cold_cell):
        """The sweep check fires at or after expiry only."""
        door = _open_door()

        assert evaluator.evaluate_door_timer(cold_cell, door, OPEN_AT + timedelta(seconds=299)) is None
        signal = evaluator.evaluate_door_timer(cold_cell, door, OPEN_AT + timedelta(seconds=301))
        assert signal is not None
        assert signal.kind == SignalKind.TRIGGER
        assert signal.observed_at == OPEN_AT + timedelta(seconds=300)

    def test_closed_door_has_no_timer(self, evaluator, cold_cell):
        """A closed door never expires."""
        door = DoorState(cold_cell_id=CELL_ID, position=DoorPosition.CLOSED, last_changed_at=OPEN_AT)

        assert evaluator.evaluate_door_timer(cold_cell, door, OPEN_AT + timedelta(hours=2)) is None


class TestReadingAndDevice:
    """Combined reading evaluation and device-level checks."""

    def test_reading_clears_sensor_error(self, evaluator, cold_cell):
        """Every valid reading clears SENSOR_ERROR."""
        signals = evaluator.evaluate_reading(cold_cell, _reading(), DoorState(cold_cell_id=CELL_ID))

        clear = _find(signals, AlertType.SENSOR_ERROR)
        assert clear is not None
        assert clear.kind == SignalKind.CLEAR

    def test_malformed_streak_within_tolerance(self, evaluator, cold_cell):
        """A malformed streak shorter than the tolerance is tolerated."""
        device = Device(serial=SERIAL, cold_cell_id=CELL_ID, malformed_since=OPEN_AT)

        assert evaluator.evaluate_malformed(cold_cell, device, OPEN_AT + timedelta(seconds=120)) is None

    def test_malformed_streak_beyond_tolerance(self, evaluator, cold_cell):
        """A streak reaching the tolerance triggers SENSOR_ERROR."""
        device = Device(serial=SERIAL, cold_cell_id=CELL_ID, malformed_since=OPEN_AT)
        signal = evaluator.evaluate_malformed(cold_cell, device, OPEN_AT + timedelta(seconds=300))

        assert signal is not None
        assert signal.alert_type == AlertType.SENSOR_ERROR
        assert signal.kind == SignalKind.TRIGGER

    def test_offline_and_online(self, evaluator, cold_cell, device):
        """Silence triggers POWER_LOSS; coming back clears it."""
        offline = evaluator.evaluate_offline(cold_cell, device, OPEN_AT)
        online = evaluator.evaluate_online(cold_cell, device, OPEN_AT)

        assert (offline.alert_type, offline.kind) == (AlertType.POWER_LOSS, SignalKind.TRIGGER)
        assert (online.alert_type, online.kind) == (AlertType.POWER_LOSS, SignalKind.CLEAR)

    def test_custom_tolerance(self, cold_cell):
        """The tolerance comes from the constructor."""
        evaluator = ConditionEvaluator(sensor_error_tolerance_seconds=10)
        device = Device(serial=SERIAL, cold_cell_id=CELL_ID, malformed_since=OPEN_AT)

        assert evaluator.evaluate_malformed(cold_cell, device, OPEN_AT + timedelta(seconds=10)) is not None

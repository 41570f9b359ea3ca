"""
Unit tests for TelemetryIngestor readings, heartbeats and sweeps.
"""

from datetime import timedelta

import pytest

from coldchain.errors import NotFoundError, ValidationError
from coldchain.models.alerts import AlertType
from coldchain.models.assets import DeviceStatus
from coldchain.models.door import DoorPosition
from tests.conftest import CELL_ID, OPEN_AT, SERIAL


def _payload(at, temperature: float = 4.5, **fields):
    return {"temperature": temperature, "recorded_at": at.isoformat(), **fields}


def _seconds(n: int) -> timedelta:
    return timedelta(seconds=n)


class TestReadings:
    """Reading validation and application."""

    async def test_high_temperature_creates_alert(self, ingestor, store):
        """A reading above max creates a HIGH_TEMP alert."""
        result = await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, 9.5), now=OPEN_AT)

        assert result.accepted
        assert not result.stale
        assert [a.alert_type for a in result.created_alerts] == [AlertType.HIGH_TEMP]
        device = await store.get_device(SERIAL)
        assert device.status == DeviceStatus.ONLINE
        assert device.last_reading_at == OPEN_AT

    async def test_normal_reading_creates_nothing(self, ingestor, store):
        """A reading in range creates no alert."""
        result = await ingestor.submit_reading(SERIAL, _payload(OPEN_AT), now=OPEN_AT)

        assert result.created_alerts == []
        assert await store.list_alerts() == []

    async def test_unknown_device(self, ingestor):
        """Readings from unknown devices are rejected."""
        with pytest.raises(NotFoundError):
            await ingestor.submit_reading("CT-9999", _payload(OPEN_AT), now=OPEN_AT)

    async def test_stale_reading_is_flagged(self, ingestor, store):
        """A reading not newer than the last applied one changes nothing."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT + _seconds(60)), now=OPEN_AT)

        result = await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, 9.5), now=OPEN_AT)

        assert result.stale
        assert result.created_alerts == []
        assert (await store.get_device(SERIAL)).last_reading_at == OPEN_AT + _seconds(60)

    async def test_out_of_order_door_reading_is_ignored(self, ingestor, store):
        """An older door reading never overwrites a newer door state."""
        await ingestor.submit_reading(
            SERIAL, _payload(OPEN_AT + _seconds(30), door_open=False), now=OPEN_AT
        )
        result = await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, door_open=True), now=OPEN_AT)

        assert result.stale
        door = await store.get_door_state(CELL_ID)
        assert door.position == DoorPosition.CLOSED


class TestMalformedReadings:
    """SENSOR_ERROR after a malformed streak."""

    async def test_malformed_reading_is_rejected(self, ingestor, store):
        """A string temperature is rejected and starts the malformed streak."""
        with pytest.raises(ValidationError):
            await ingestor.submit_reading(
                SERIAL,
                {"temperature": "5", "recorded_at": OPEN_AT.isoformat()},
                now=OPEN_AT,
            )

        device = await store.get_device(SERIAL)
        assert device.malformed_since == OPEN_AT

    async def test_non_object_payload_is_rejected(self, ingestor):
        """A payload that is not an object is malformed."""
        with pytest.raises(ValidationError):
            await ingestor.submit_reading(SERIAL, ["not", "a", "reading"], now=OPEN_AT)

    async def test_streak_beyond_tolerance_raises_sensor_error(self, ingestor, store):
        """Malformed readings for the whole tolerance create SENSOR_ERROR."""
        for offset in (0, 120, 300):
            with pytest.raises(ValidationError):
                await ingestor.submit_reading(
                    SERIAL,
                    {"temperature": None, "recorded_at": OPEN_AT.isoformat()},
                    now=OPEN_AT + _seconds(offset),
                )

        alerts = await store.list_alerts(open_only=True)
        assert [a.alert_type for a in alerts] == [AlertType.SENSOR_ERROR]

    async def test_valid_reading_clears_sensor_error(self, ingestor, store):
        """The next valid reading ends the streak and clears the condition."""
        for offset in (0, 300):
            with pytest.raises(ValidationError):
                await ingestor.submit_reading(
                    SERIAL, {"recorded_at": OPEN_AT.isoformat()}, now=OPEN_AT + _seconds(offset)
                )

        await ingestor.submit_reading(
            SERIAL, _payload(OPEN_AT + _seconds(310)), now=OPEN_AT + _seconds(310)
        )

        device = await store.get_device(SERIAL)
        assert device.malformed_since is None
        alert = (await store.list_alerts(open_only=True))[0]
        assert alert.alert_type == AlertType.SENSOR_ERROR
        assert alert.condition_cleared


class TestDoor:
    """Door transitions, counters and timers."""

    async def test_door_counters(self, ingestor, store, escalation_config):
        """Open then close counts one opening, one closing and the open seconds."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, door_open=True), now=OPEN_AT)
        result = await ingestor.submit_reading(
            SERIAL, _payload(OPEN_AT + _seconds(90), door_open=False), now=OPEN_AT
        )

        assert result.door_changed
        door = await store.get_door_state(CELL_ID)
        assert door.position == DoorPosition.CLOSED
        assert door.counters.opens == 1
        assert door.counters.closes == 1
        assert door.counters.total_open_seconds == 90

    async def test_sweep_raises_door_alert_at_expiry(self, ingestor, store):
        """A door left open without further readings alerts from the sweep."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, door_open=True), now=OPEN_AT)

        early = await ingestor.sweep(now=OPEN_AT + _seconds(20))
        assert early.created_alerts == []

        # Keep the device online so only the door timer fires.
        await ingestor.heartbeat(SERIAL, now=OPEN_AT + _seconds(290))
        report = await ingestor.sweep(now=OPEN_AT + _seconds(301))

        assert [a.alert_type for a in report.created_alerts] == [AlertType.DOOR_OPEN]
        assert report.created_alerts[0].triggered_at == OPEN_AT + _seconds(300)

    async def test_closing_late_clears_door_alert(self, ingestor, store):
        """Closing after the delay leaves a cleared DOOR_OPEN alert."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, door_open=True), now=OPEN_AT)
        result = await ingestor.submit_reading(
            SERIAL, _payload(OPEN_AT + _seconds(400), door_open=False), now=OPEN_AT
        )

        assert [a.alert_type for a in result.created_alerts] == [AlertType.DOOR_OPEN]
        alert = await store.find_open_alert(CELL_ID, AlertType.DOOR_OPEN)
        assert alert.condition_cleared

    async def test_resolved_door_alert_is_not_retriggered_while_open(self, ingestor, store, manager):
        """Resolving a door alert while the door stays open silences the sweep."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, door_open=True), now=OPEN_AT)
        await ingestor.heartbeat(SERIAL, now=OPEN_AT + _seconds(290))
        first = await ingestor.sweep(now=OPEN_AT + _seconds(301))
        await manager.drain()
        await manager.resolve(
            first.created_alerts[0].alert_id,
            reason="Door propped for delivery",
            now=OPEN_AT + _seconds(310),
        )

        await ingestor.heartbeat(SERIAL, now=OPEN_AT + _seconds(390))
        report = await ingestor.sweep(now=OPEN_AT + _seconds(400))

        assert report.created_alerts == []
        assert await store.find_open_alert(CELL_ID, AlertType.DOOR_OPEN) is None
        assert len(await store.list_alerts(alert_type=AlertType.DOOR_OPEN)) == 1

    async def test_late_close_after_resolve_creates_nothing(self, ingestor, store, manager):
        """Closing a door whose open period was already resolved adds no alert."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, door_open=True), now=OPEN_AT)
        await ingestor.heartbeat(SERIAL, now=OPEN_AT + _seconds(290))
        first = await ingestor.sweep(now=OPEN_AT + _seconds(301))
        await manager.drain()
        await manager.resolve(
            first.created_alerts[0].alert_id,
            reason="Door propped for delivery",
            now=OPEN_AT + _seconds(310),
        )

        result = await ingestor.submit_reading(
            SERIAL, _payload(OPEN_AT + _seconds(320), door_open=False), now=OPEN_AT + _seconds(320)
        )

        assert result.door_changed
        assert result.created_alerts == []
        assert await store.find_open_alert(CELL_ID, AlertType.DOOR_OPEN) is None
        assert len(await store.list_alerts(alert_type=AlertType.DOOR_OPEN)) == 1

    async def test_reopened_door_alerts_again(self, ingestor, store, manager):
        """A new open period after a resolved one raises a fresh door alert."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT, door_open=True), now=OPEN_AT)
        await ingestor.heartbeat(SERIAL, now=OPEN_AT + _seconds(290))
        first = await ingestor.sweep(now=OPEN_AT + _seconds(301))
        await manager.drain()
        await manager.resolve(
            first.created_alerts[0].alert_id,
            reason="Door propped for delivery",
            now=OPEN_AT + _seconds(310),
        )
        await ingestor.submit_reading(
            SERIAL, _payload(OPEN_AT + _seconds(320), door_open=False), now=OPEN_AT + _seconds(320)
        )
        await ingestor.submit_reading(
            SERIAL, _payload(OPEN_AT + _seconds(330), door_open=True), now=OPEN_AT + _seconds(330)
        )

        await ingestor.heartbeat(SERIAL, now=OPEN_AT + _seconds(620))
        report = await ingestor.sweep(now=OPEN_AT + _seconds(631))

        assert [a.alert_type for a in report.created_alerts] == [AlertType.DOOR_OPEN]
        assert report.created_alerts[0].triggered_at == OPEN_AT + _seconds(630)
        assert len(await store.list_alerts(alert_type=AlertType.DOOR_OPEN)) == 2


class TestLiveness:
    """Offline detection and heartbeats."""

    async def test_silent_device_goes_offline(self, ingestor, store):
        """Silence beyond the threshold marks the device offline with POWER_LOSS."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT), now=OPEN_AT)

        quiet = await ingestor.sweep(now=OPEN_AT + _seconds(30))
        assert quiet.offline_devices == []

        report = await ingestor.sweep(now=OPEN_AT + _seconds(31))

        assert report.offline_devices == [SERIAL]
        assert [a.alert_type for a in report.created_alerts] == [AlertType.POWER_LOSS]
        assert (await store.get_device(SERIAL)).status == DeviceStatus.OFFLINE

    async def test_offline_is_reported_once(self, ingestor):
        """A device already offline is not marked again."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT), now=OPEN_AT)
        await ingestor.sweep(now=OPEN_AT + _seconds(31))

        again = await ingestor.sweep(now=OPEN_AT + _seconds(60))

        assert again.offline_devices == []

    async def test_heartbeat_brings_device_back(self, ingestor, store):
        """A heartbeat from an offline device clears POWER_LOSS."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT), now=OPEN_AT)
        await ingestor.sweep(now=OPEN_AT + _seconds(31))

        device = await ingestor.heartbeat(SERIAL, now=OPEN_AT + _seconds(40))

        assert device.status == DeviceStatus.ONLINE
        alert = await store.find_open_alert(CELL_ID, AlertType.POWER_LOSS)
        assert alert.condition_cleared
        assert alert.is_open

    async def test_next_reading_clears_power_loss(self, ingestor, store):
        """A reading after an offline period clears POWER_LOSS."""
        await ingestor.submit_reading(SERIAL, _payload(OPEN_AT), now=OPEN_AT)
        await ingestor.sweep(now=OPEN_AT + _seconds(31))

        await ingestor.submit_reading(
            SERIAL, _payload(OPEN_AT + _seconds(45)), now=OPEN_AT + _seconds(45)
        )

        alert = await store.find_open_alert(CELL_ID, AlertType.POWER_LOSS)
        assert alert.condition_cleared
        assert (await store.get_device(SERIAL)).status == DeviceStatus.ONLINE

    async def test_heartbeat_unknown_device(self, ingestor):
        """Heartbeats from unknown devices are rejected."""
        with pytest.raises(NotFoundError):
            await ingestor.heartbeat("CT-9999")

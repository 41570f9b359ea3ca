"""
Unit tests for the InMemoryStateStore.
"""

import pytest

from coldchain.errors import NotFoundError
from coldchain.models.alerts import Alert, AlertLayer, AlertStatus, AlertType, TimeSlot
from coldchain.storage.memory import InMemoryStateStore
from tests.conftest import CELL_ID, CUSTOMER_ID, OPEN_AT, minutes


def _alert(alert_type: AlertType = AlertType.HIGH_TEMP, at=OPEN_AT) -> Alert:
    return Alert(
        cold_cell_id=CELL_ID,
        customer_id=CUSTOMER_ID,
        alert_type=alert_type,
        status=AlertStatus.ACTIVE,
        layer=AlertLayer.LAYER_1,
        time_slot=TimeSlot.OPEN,
        triggered_at=at,
    )


class TestAlertSlots:
    """Dedup index."""

    async def test_create_rejects_second_open_alert(self):
        """Only one open alert per (cell, type) can be inserted."""
        store = InMemoryStateStore()

        assert await store.create_alert(_alert()) is True
        assert await store.create_alert(_alert()) is False
        assert len(await store.list_open_alerts()) == 1

    async def test_resolution_frees_the_slot(self):
        """Resolving an alert lets a new one of the same type open."""
        store = InMemoryStateStore()
        first = _alert()
        await store.create_alert(first)

        await store.update_alert(
            first.alert_id, lambda current: current.resolve("Fixed", OPEN_AT + minutes(5))
        )

        assert await store.find_open_alert(CELL_ID, AlertType.HIGH_TEMP) is None
        assert await store.create_alert(_alert(at=OPEN_AT + minutes(10))) is True

    async def test_update_returning_none_keeps_state(self):
        """A mutation that declines leaves the stored alert untouched."""
        store = InMemoryStateStore()
        alert = _alert()
        await store.create_alert(alert)

        assert await store.update_alert(alert.alert_id, lambda current: None) is None
        assert await store.get_alert(alert.alert_id) == alert

    async def test_update_unknown_alert(self):
        """Updating a missing alert raises NotFoundError."""
        store = InMemoryStateStore()

        with pytest.raises(NotFoundError):
            await store.update_alert("missing", lambda current: current)


class TestListing:
    """Filtering and ordering."""

    async def test_open_alerts_first_then_newest(self):
        """Open alerts sort before resolved ones, newest first."""
        store = InMemoryStateStore()
        old = _alert(AlertType.HIGH_TEMP, OPEN_AT)
        new = _alert(AlertType.DOOR_OPEN, OPEN_AT + minutes(5))
        closed = _alert(AlertType.POWER_LOSS, OPEN_AT + minutes(10))
        for alert in (old, new, closed):
            await store.create_alert(alert)
        await store.update_alert(closed.alert_id, lambda c: c.resolve("ok", OPEN_AT + minutes(11)))

        listed = await store.list_alerts()

        assert [a.alert_id for a in listed] == [new.alert_id, old.alert_id, closed.alert_id]

    async def test_filters(self):
        """Cell and type filters apply."""
        store = InMemoryStateStore()
        await store.create_alert(_alert(AlertType.HIGH_TEMP))
        await store.create_alert(_alert(AlertType.DOOR_OPEN))

        assert len(await store.list_alerts(alert_type=AlertType.DOOR_OPEN)) == 1
        assert await store.list_alerts(cold_cell_ids=["other"]) == []


class TestAssets:
    """Devices and door state."""

    async def test_device_update(self, store):
        """Device updates apply the mutation atomically."""
        updated = await store.update_device("CT-1001", lambda d: d.bump(last_seen_at=OPEN_AT))

        assert updated.last_seen_at == OPEN_AT
        assert updated.version == 1

    async def test_unknown_device_update(self, store):
        """Updating a missing device raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.update_device("missing", lambda d: d)

    async def test_default_door_state(self, store):
        """A cell without door data reads as an unknown position."""
        door = await store.get_door_state(CELL_ID)

        assert door.position is None
        assert await store.list_open_doors() == []

    async def test_cells_by_customer(self, store):
        """Cold cells can be listed per customer."""
        assert [c.cold_cell_id for c in await store.list_cold_cells(CUSTOMER_ID)] == [CELL_ID]
        assert await store.list_cold_cells("someone-else") == []

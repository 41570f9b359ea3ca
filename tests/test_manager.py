"""
Unit tests for the AlertManager state machine.
"""

import asyncio

import pytest

from coldchain.engine.dispatcher import ChannelKind
from coldchain.engine.manager import AlertManager, SignalAction
from coldchain.errors import ConflictError, NotFoundError, ValidationError
from coldchain.models.alerts import AlertLayer, AlertStatus, AlertType, SignalKind, TimeSlot
from coldchain.models.assets import ColdCell
from tests.conftest import (
    AFTER_CLOSE_AT,
    CELL_ID,
    CUSTOMER_ID,
    NIGHT_AT,
    OPEN_AT,
    make_signal,
    minutes,
    sends,
)


class TestCreation:
    """Alert creation and deduplication."""

    async def test_trigger_during_opening_hours(self, manager):
        """A trigger during opening hours creates an ACTIVE layer-1 alert."""
        outcome = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT, value=9.5))

        assert outcome.action == SignalAction.CREATED
        alert = outcome.alert
        assert alert.status == AlertStatus.ACTIVE
        assert alert.layer == AlertLayer.LAYER_1
        assert alert.time_slot == TimeSlot.OPEN
        assert alert.triggered_at == OPEN_AT
        assert alert.customer_id == CUSTOMER_ID
        assert alert.layer2_at is None

    async def test_second_trigger_is_deduplicated(self, manager, store):
        """A second trigger for the same cell and type updates the open alert."""
        first = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT, value=9.5))
        second = await manager.apply_signal(
            make_signal(AlertType.HIGH_TEMP, OPEN_AT + minutes(1), value=10.5)
        )

        assert second.action == SignalAction.DEDUPLICATED
        assert second.alert.alert_id == first.alert.alert_id
        assert second.alert.last_value == 10.5
        assert second.alert.triggered_at == OPEN_AT
        assert len(await store.list_alerts(open_only=True)) == 1

    async def test_different_types_are_separate(self, manager, store):
        """Dedup is per (cell, type)."""
        await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.apply_signal(make_signal(AlertType.DOOR_OPEN, OPEN_AT))

        assert len(await store.list_alerts(open_only=True)) == 2

    async def test_after_close_enters_at_layer_2(self, manager):
        """A trigger after closing enters at layer 2 with layer2_at stamped."""
        outcome = await manager.apply_signal(make_signal(AlertType.POWER_LOSS, AFTER_CLOSE_AT))

        alert = outcome.alert
        assert alert.time_slot == TimeSlot.AFTER_CLOSE
        assert alert.layer == AlertLayer.LAYER_2
        assert alert.status == AlertStatus.ESCALATING
        assert alert.layer2_at == AFTER_CLOSE_AT

    async def test_night_enters_at_layer_3(self, manager):
        """A trigger at night enters at layer 3."""
        outcome = await manager.apply_signal(make_signal(AlertType.LOW_TEMP, NIGHT_AT))

        alert = outcome.alert
        assert alert.time_slot == TimeSlot.NIGHT
        assert alert.layer == AlertLayer.LAYER_3
        assert alert.layer3_at == NIGHT_AT

    async def test_unknown_cell_raises(self, manager):
        """A trigger for an unknown cell is rejected."""
        with pytest.raises(NotFoundError):
            await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT, cold_cell_id="ghost"))

    async def test_concurrent_triggers_create_one_alert(self, manager, store):
        """Simultaneous triggers for one (cell, type) yield a single open alert."""
        outcomes = await asyncio.gather(
            *(
                manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT + minutes(i)))
                for i in range(5)
            )
        )

        created = [o for o in outcomes if o.action == SignalAction.CREATED]
        assert len(created) == 1
        assert len(await store.list_alerts(open_only=True)) == 1


class TestClear:
    """Condition cleared flag."""

    async def test_clear_flags_but_keeps_alert_open(self, manager):
        """A clear sets condition_cleared; the alert stays open at its layer."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        cleared = await manager.apply_signal(
            make_signal(AlertType.HIGH_TEMP, OPEN_AT + minutes(3), kind=SignalKind.CLEAR, value=5.5)
        )

        assert cleared.action == SignalAction.CLEARED
        alert = await manager.get_alert(created.alert.alert_id)
        assert alert.condition_cleared
        assert alert.is_open
        assert alert.status == AlertStatus.ACTIVE

    async def test_clear_without_alert_is_ignored(self, manager):
        """A clear with no open alert does nothing."""
        outcome = await manager.apply_signal(
            make_signal(AlertType.HIGH_TEMP, OPEN_AT, kind=SignalKind.CLEAR)
        )

        assert outcome.action == SignalAction.IGNORED

    async def test_retrigger_rearms_cleared_alert(self, manager):
        """A trigger after a clear re-arms the same alert."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.apply_signal(
            make_signal(AlertType.HIGH_TEMP, OPEN_AT + minutes(3), kind=SignalKind.CLEAR)
        )
        again = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT + minutes(5)))

        assert again.action == SignalAction.DEDUPLICATED
        assert again.alert.alert_id == created.alert.alert_id
        assert not again.alert.condition_cleared


class TestUserActions:
    """Acknowledge and resolve."""

    async def test_acknowledge_is_idempotent(self, manager):
        """A second acknowledgment keeps the first timestamp and actor."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        alert_id = created.alert.alert_id

        first = await manager.acknowledge(alert_id, by="marie", now=OPEN_AT + minutes(2))
        second = await manager.acknowledge(alert_id, by="luc", now=OPEN_AT + minutes(4))

        assert first.acknowledged_at == OPEN_AT + minutes(2)
        assert second.acknowledged_at == OPEN_AT + minutes(2)
        assert second.acknowledged_by == "marie"
        assert second.layer == AlertLayer.LAYER_1
        assert second.is_open

    async def test_acknowledge_resolved_alert_conflicts(self, manager):
        """A resolved alert cannot be acknowledged."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.resolve(created.alert.alert_id, reason="Compressor restarted")

        with pytest.raises(ConflictError):
            await manager.acknowledge(created.alert.alert_id)

    async def test_resolve_requires_reason(self, manager):
        """A blank reason is rejected when the cell requires one."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))

        with pytest.raises(ValidationError):
            await manager.resolve(created.alert.alert_id, reason="   ")

        alert = await manager.get_alert(created.alert.alert_id)
        assert alert.is_open

    async def test_resolve_records_reason_and_frees_slot(self, manager):
        """Resolution stores the reason and lets a new alert of the type open."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        resolved = await manager.resolve(
            created.alert.alert_id,
            reason="  Door seal replaced ",
            by="marie",
            now=OPEN_AT + minutes(30),
        )

        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolution_reason == "Door seal replaced"
        assert resolved.resolved_by == "marie"
        assert resolved.resolved_at == OPEN_AT + minutes(30)

        fresh = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT + minutes(40)))
        assert fresh.action == SignalAction.CREATED
        assert fresh.alert.alert_id != created.alert.alert_id

    async def test_second_resolve_conflicts(self, manager):
        """Resolving twice is a conflict."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.resolve(created.alert.alert_id, reason="Fixed")

        with pytest.raises(ConflictError):
            await manager.resolve(created.alert.alert_id, reason="Fixed again")

    async def test_second_resolve_without_reason_conflicts(self, manager):
        """A resolved alert conflicts before its missing reason is checked."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.resolve(created.alert.alert_id, reason="Fixed")

        with pytest.raises(ConflictError):
            await manager.resolve(created.alert.alert_id, reason="")

    async def test_reason_optional_when_cell_allows(self, manager, store, cold_cell):
        """A cell without the reason rule resolves with an empty reason."""
        await store.save_cold_cell(
            ColdCell(**{**cold_cell.model_dump(), "require_resolution_reason": False})
        )
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))

        resolved = await manager.resolve(created.alert.alert_id, reason=None)

        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolution_reason is None

    async def test_unknown_alert(self, manager):
        """User actions on unknown alerts raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await manager.acknowledge("missing")
        with pytest.raises(NotFoundError):
            await manager.resolve("missing", reason="x")


class TestEntryNotification:
    """Background dispatch of the entry layer."""

    async def test_layer_1_dispatch(self, manager, delivery_log):
        """Layer 1 sends push and e-mail to the primary contact and the technician."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.drain()

        assert sends(delivery_log, 1) == [
            ("email", "Frost"),
            ("email", "Marie"),
            ("push", "Frost"),
            ("push", "Marie"),
        ]
        alert = await manager.get_alert(created.alert.alert_id)
        assert alert.notified_layer == 1
        assert manager.pending_dispatches == 0

    async def test_failed_dispatch_leaves_layer_unnotified(self, manager, channels):
        """A failing channel leaves notified_layer behind for a retry."""
        channels[ChannelKind.EMAIL].fail = True

        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.drain()

        alert = await manager.get_alert(created.alert.alert_id)
        assert alert.notified_layer == 0
        assert alert.needs_notification

    async def test_change_listener_called(self, store, dispatcher):
        """The change listener hears about the cell once per batch."""
        changed = []

        async def listener(cold_cell_id: str) -> None:
            changed.append(cold_cell_id)

        manager = AlertManager(store=store, dispatcher=dispatcher, change_listener=listener)
        await manager.apply_signals(
            [
                make_signal(AlertType.HIGH_TEMP, OPEN_AT),
                make_signal(AlertType.POWER_LOSS, OPEN_AT),
            ]
        )
        await manager.drain()

        assert changed == [CELL_ID]


class TestQueries:
    """Listing and filtering."""

    async def test_list_by_customer(self, manager):
        """Alerts are listed for the customer's cells only."""
        await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))

        assert len(await manager.list_alerts(customer_id=CUSTOMER_ID)) == 1
        assert await manager.list_alerts(customer_id="someone-else") == []

    async def test_filters(self, manager):
        """Type and open-only filters apply."""
        created = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.apply_signal(make_signal(AlertType.DOOR_OPEN, OPEN_AT))
        await manager.resolve(created.alert.alert_id, reason="Fixed")

        door = await manager.list_alerts(alert_type=AlertType.DOOR_OPEN)
        assert [a.alert_type for a in door] == [AlertType.DOOR_OPEN]
        assert len(await manager.list_alerts(open_only=True)) == 1
        assert len(await manager.list_alerts(status=AlertStatus.RESOLVED)) == 1

"""
Unit tests for history recording and the webhook channel, using mock doubles.
"""

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from coldchain.config.models import PostgresConnectionConfig
from coldchain.engine.channels.webhook import WebhookChannel
from coldchain.engine.dispatcher import ChannelKind, NotificationDispatcher
from coldchain.engine.manager import AlertManager
from coldchain.errors import TransientDeliveryError
from coldchain.models.alerts import Alert, AlertLayer, AlertStatus, AlertType, TimeSlot
from coldchain.models.notifications import DeliveryOutcome, DeliveryStatus, DispatchReport
from coldchain.storage.postgres_client import PostgresClient, PostgresConnectionException
from tests.conftest import OPEN_AT, make_signal


def _response(status: int, text: str = "", message_id=None) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)
    response.headers = {"X-Message-Id": message_id} if message_id else {}
    return response


def _session(response=None, error=None) -> MagicMock:
    session = MagicMock()
    session.closed = False
    context = MagicMock()
    if error is not None:
        context.__aenter__ = AsyncMock(side_effect=error)
    else:
        context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    session.post.return_value = context
    return session


@pytest.fixture
def message(cold_cell, escalation_config):
    alert = Alert(
        cold_cell_id=cold_cell.cold_cell_id,
        customer_id=cold_cell.customer_id,
        alert_type=AlertType.POWER_LOSS,
        status=AlertStatus.ESCALATING,
        layer=AlertLayer.LAYER_2,
        time_slot=TimeSlot.AFTER_CLOSE,
        triggered_at=OPEN_AT,
    )
    return NotificationDispatcher.build_message(alert, cold_cell, escalation_config)


class TestWebhookChannel:
    """Provider gateway channel."""

    async def test_successful_post(self, escalation_config, message):
        """A 2xx answer is DELIVERED with the provider reference."""
        channel = WebhookChannel(ChannelKind.SMS, url="https://notify.example/sms")
        channel._session = _session(_response(202, message_id="msg-1"))

        outcome = await channel.send(escalation_config.primary_contact, AlertLayer.LAYER_2, message)

        assert outcome.status == DeliveryStatus.DELIVERED
        assert outcome.detail == "msg-1"
        payload = channel._session.post.call_args.kwargs["json"]
        assert payload["to"] == "+32470000001"
        assert payload["layer"] == 2

    async def test_error_status_raises(self, escalation_config, message):
        """A non-2xx answer is a transient delivery failure."""
        channel = WebhookChannel(ChannelKind.SMS, url="https://notify.example/sms")
        channel._session = _session(_response(503, text="busy"))

        with pytest.raises(TransientDeliveryError) as exc_info:
            await channel.send(escalation_config.primary_contact, AlertLayer.LAYER_2, message)

        assert "503" in exc_info.value.message

    async def test_client_error_raises(self, escalation_config, message):
        """Connection errors are transient delivery failures."""
        channel = WebhookChannel(ChannelKind.EMAIL, url="https://notify.example/mail")
        channel._session = _session(error=aiohttp.ClientConnectionError("refused"))

        with pytest.raises(TransientDeliveryError):
            await channel.send(escalation_config.primary_contact, AlertLayer.LAYER_1, message)

    async def test_missing_address_is_skipped(self, escalation_config, message):
        """Contacts without a push token are skipped without a request."""
        channel = WebhookChannel(ChannelKind.PUSH, url="https://notify.example/push")
        channel._session = _session(_response(200))

        outcome = await channel.send(
            escalation_config.technician_contact, AlertLayer.LAYER_1, message
        )

        assert outcome.status == DeliveryStatus.SKIPPED
        channel._session.post.assert_not_called()


class TestHistoryRecording:
    """Alert history hooks."""

    async def test_alert_changes_are_recorded(self, store, dispatcher):
        """Creation and notification are written to the history recorder."""
        history = MagicMock()
        history.record_alert = AsyncMock()
        history.record_dispatch = AsyncMock()
        manager = AlertManager(store=store, dispatcher=dispatcher, history=history)

        await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.drain()

        recorded = [call.args[0] for call in history.record_alert.await_args_list]
        assert len(recorded) == 2
        assert recorded[0].notified_layer == 0
        assert recorded[1].notified_layer == 1

    async def test_history_failure_does_not_break_alerting(self, store, dispatcher):
        """A failing recorder is logged and the alert still exists."""
        history = MagicMock()
        history.record_alert = AsyncMock(side_effect=RuntimeError("database down"))
        history.record_dispatch = AsyncMock(side_effect=RuntimeError("database down"))
        manager = AlertManager(store=store, dispatcher=dispatcher, history=history)

        outcome = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.drain()

        assert await store.get_alert(outcome.alert.alert_id) is not None

    async def test_dispatch_is_recorded(self, store, dispatcher):
        """Every layer dispatch is written to the escalation log."""
        history = MagicMock()
        history.record_alert = AsyncMock()
        history.record_dispatch = AsyncMock()
        manager = AlertManager(store=store, dispatcher=dispatcher, history=history)

        outcome = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.drain()

        history.record_dispatch.assert_awaited_once()
        report = history.record_dispatch.await_args.args[0]
        assert report.alert_id == outcome.alert.alert_id
        assert report.layer == AlertLayer.LAYER_1
        assert sorted((o.channel.value, o.contact) for o in report.outcomes) == [
            ("email", "Frost"),
            ("email", "Marie"),
            ("push", "Frost"),
            ("push", "Marie"),
        ]

    async def test_dispatch_log_failure_keeps_notified_layer(self, store, dispatcher):
        """A failing escalation log does not undo a successful delivery."""
        history = MagicMock()
        history.record_alert = AsyncMock()
        history.record_dispatch = AsyncMock(side_effect=RuntimeError("database down"))
        manager = AlertManager(store=store, dispatcher=dispatcher, history=history)

        outcome = await manager.apply_signal(make_signal(AlertType.HIGH_TEMP, OPEN_AT))
        await manager.drain()

        alert = await store.get_alert(outcome.alert.alert_id)
        assert alert.notified_layer == 1


class TestPostgresClient:
    """History client behavior against a mocked pool."""

    def test_sanitize_url(self):
        """Passwords never reach the logs."""
        client = PostgresClient(PostgresConnectionConfig(url="postgresql://user:secret@db:5432/x"))

        assert "secret" not in client._sanitize_url(client.config.url)

    async def test_requires_connection(self):
        """Writes before connect fail with a connection error."""
        client = PostgresClient(PostgresConnectionConfig())

        assert not client.is_connected
        assert await client.ping() is False
        with pytest.raises(PostgresConnectionException):
            async with client._acquire_connection():
                pass

    async def test_record_dispatch_writes_one_row_per_outcome(self, escalation_config):
        """Each delivery outcome becomes one escalation_log row."""
        conn = MagicMock()
        conn.executemany = AsyncMock()
        acquire = MagicMock()
        acquire.__aenter__ = AsyncMock(return_value=conn)
        acquire.__aexit__ = AsyncMock(return_value=False)
        client = PostgresClient(PostgresConnectionConfig())
        client._pool = MagicMock()
        client._pool.acquire.return_value = acquire
        client._connected = True

        marie = escalation_config.primary_contact
        report = DispatchReport(
            alert_id="a1",
            layer=AlertLayer.LAYER_2,
            outcomes=[
                DeliveryOutcome.delivered(ChannelKind.SMS, marie, "msg-1"),
                DeliveryOutcome.failed(ChannelKind.EMAIL, marie, "provider unavailable"),
            ],
        )

        await client.record_dispatch(report)

        sql, rows = conn.executemany.await_args.args
        assert "escalation_log" in sql
        assert [row[:6] for row in rows] == [
            ("a1", 2, "sms", "Marie", "delivered", "msg-1"),
            ("a1", 2, "email", "Marie", "failed", "provider unavailable"),
        ]

    async def test_record_dispatch_skips_empty_report(self):
        """A report without outcomes needs no connection."""
        client = PostgresClient(PostgresConnectionConfig())

        await client.record_dispatch(DispatchReport(alert_id="a1", layer=AlertLayer.LAYER_1))

"""
Shared fixtures for the cold-chain engine test suite.

Times are fixed on Monday 2026-10-19, when Europe/Brussels is at UTC+2:

    OPEN_AT        08:00 UTC = 10:00 local (OPEN)
    AFTER_CLOSE_AT 17:00 UTC = 19:00 local (AFTER_CLOSE)
    NIGHT_AT       00:00 UTC = 02:00 local on the 20th (NIGHT)
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from coldchain.engine.dispatcher import (
    AlertMessage,
    ChannelKind,
    DeliveryOutcome,
    NotificationDispatcher,
)
from coldchain.engine.evaluator import ConditionEvaluator
from coldchain.engine.ingest import TelemetryIngestor
from coldchain.engine.manager import AlertManager
from coldchain.engine.scheduler import EscalationScheduler
from coldchain.errors import TransientDeliveryError
from coldchain.models.alerts import AlertLayer, AlertType, ConditionSignal, SignalKind
from coldchain.models.assets import ColdCell, Contact, Device, EscalationConfig
from coldchain.storage.memory import InMemoryStateStore

OPEN_AT = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
AFTER_CLOSE_AT = datetime(2026, 10, 19, 17, 0, tzinfo=timezone.utc)
NIGHT_AT = datetime(2026, 10, 20, 0, 0, tzinfo=timezone.utc)

CUSTOMER_ID = "bakery-dupont"
CELL_ID = "dupont-walkin"
SERIAL = "CT-1001"


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


def make_signal(
    alert_type: AlertType,
    observed_at: datetime,
    kind: SignalKind = SignalKind.TRIGGER,
    value: Optional[float] = None,
    cold_cell_id: str = CELL_ID,
) -> ConditionSignal:
    """Build a condition signal for the walk-in cooler."""
    return ConditionSignal(
        cold_cell_id=cold_cell_id,
        alert_type=alert_type,
        kind=kind,
        observed_at=observed_at,
        value=value,
    )


class RecordingChannel:
    """Channel double recording every send; can be switched to failing."""

    def __init__(self, kind: ChannelKind, log: List[Tuple[str, str, int]]):
        self.kind = kind
        self.log = log
        self.fail = False

    async def send(
        self,
        contact: Contact,
        layer: AlertLayer,
        message: AlertMessage,
    ) -> DeliveryOutcome:
        if self.fail:
            raise TransientDeliveryError(self.kind.value, "provider unavailable")
        self.log.append((self.kind.value, contact.name, int(layer)))
        return DeliveryOutcome.delivered(self.kind, contact)


def sends(log: List[Tuple[str, str, int]], layer: int) -> List[Tuple[str, str]]:
    """(channel, contact) pairs sent for one layer."""
    return sorted((channel, contact) for channel, contact, sent_layer in log if sent_layer == layer)


@pytest.fixture
def escalation_config() -> EscalationConfig:
    """Escalation configuration with two backups and a technician."""
    return EscalationConfig(
        customer_id=CUSTOMER_ID,
        timezone="Europe/Brussels",
        primary_contact=Contact(
            name="Marie",
            email="marie@bakery.example",
            phone="+32470000001",
            push_token="expo-marie",
        ),
        backup_contacts=[
            Contact(name="Luc", phone="+32470000002"),
            Contact(name="Anne", phone="+32470000003"),
        ],
        technician_contact=Contact(name="Frost", email="service@frost.example", phone="+32470000099"),
    )


@pytest.fixture
def cold_cell() -> ColdCell:
    """Walk-in cooler kept between 0 and 7 degrees."""
    return ColdCell(
        cold_cell_id=CELL_ID,
        customer_id=CUSTOMER_ID,
        name="Walk-in cooler",
        temperature_min=0.0,
        temperature_max=7.0,
        door_alarm_delay_seconds=300,
        require_resolution_reason=True,
    )


@pytest.fixture
def device() -> Device:
    return Device(serial=SERIAL, cold_cell_id=CELL_ID)


@pytest.fixture
async def store(escalation_config, cold_cell, device) -> InMemoryStateStore:
    """In-memory store seeded with one customer, cell and device."""
    store = InMemoryStateStore()
    await store.connect()
    await store.save_escalation_config(escalation_config)
    await store.save_cold_cell(cold_cell)
    await store.save_device(device)
    return store


@pytest.fixture
def delivery_log() -> List[Tuple[str, str, int]]:
    return []


@pytest.fixture
def channels(delivery_log):
    """One recording channel per kind, sharing a delivery log."""
    return {kind: RecordingChannel(kind, delivery_log) for kind in ChannelKind}


@pytest.fixture
def dispatcher(channels) -> NotificationDispatcher:
    return NotificationDispatcher(channels, timeout_seconds=1.0)


@pytest.fixture
async def manager(store, dispatcher):
    """Alert manager whose background dispatches are awaited at teardown."""
    manager = AlertManager(store=store, dispatcher=dispatcher)
    yield manager
    await manager.drain()


@pytest.fixture
def scheduler(manager) -> EscalationScheduler:
    return EscalationScheduler(manager, scan_interval_seconds=60)


@pytest.fixture
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator(sensor_error_tolerance_seconds=300)


@pytest.fixture
def ingestor(store, evaluator, manager) -> TelemetryIngestor:
    return TelemetryIngestor(
        store=store,
        evaluator=evaluator,
        manager=manager,
        offline_threshold_seconds=30,
        sweep_interval_seconds=5,
    )

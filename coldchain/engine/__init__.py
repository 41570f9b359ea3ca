"""
Alert lifecycle and escalation engine.

This package turns telemetry into alerts, escalates them through the
three-layer notification ladder and publishes live cold-cell state.

Components:
    evaluator: ConditionEvaluator, telemetry to trigger/clear signals
    manager: AlertManager, the alert state machine
    scheduler: EscalationScheduler, the recurring promotion pass
    timeslots: Customer time-slot resolution
    dispatcher: NotificationDispatcher, layer to channel fan-out
    channels: Log and webhook channel implementations
    broadcaster: LiveStateBroadcaster, per-cell latest-value subscriptions
    rollover: Lazy door day counters
    ingest: TelemetryIngestor, readings, heartbeats and sweeps
    settings: SettingsService, threshold and window updates
    factory: create_engine_components wiring

Example:
    >>> from coldchain.engine import create_engine_components
    >>> components = create_engine_components(config, store)
    >>> await components.scheduler.run_tick()
"""

from coldchain.engine.broadcaster import LiveStateBroadcaster, Subscription
from coldchain.engine.dispatcher import (
    LAYER_CHANNELS,
    AlertMessage,
    ChannelKind,
    DeliveryOutcome,
    DispatchReport,
    NotificationChannel,
    NotificationDispatcher,
    create_dispatcher,
)
from coldchain.engine.evaluator import ConditionEvaluator, create_evaluator
from coldchain.engine.factory import EngineComponents, create_engine_components
from coldchain.engine.ingest import IngestResult, SweepReport, TelemetryIngestor
from coldchain.engine.manager import AlertManager, SignalAction, SignalOutcome
from coldchain.engine.rollover import apply_transition, effective_counters, local_day
from coldchain.engine.scheduler import (
    PROMOTE_TO_LAYER_2_AFTER,
    PROMOTE_TO_LAYER_3_AFTER,
    EscalationReport,
    EscalationScheduler,
)
from coldchain.engine.settings import SettingsService
from coldchain.engine.timeslots import initial_layer_for_slot, resolve_time_slot
from coldchain.models.notifications import DeliveryStatus

__all__: list[str] = [
    # Evaluation
    "ConditionEvaluator",
    "create_evaluator",
    # Alerts
    "AlertManager",
    "SignalAction",
    "SignalOutcome",
    # Escalation
    "EscalationReport",
    "EscalationScheduler",
    "PROMOTE_TO_LAYER_2_AFTER",
    "PROMOTE_TO_LAYER_3_AFTER",
    "initial_layer_for_slot",
    "resolve_time_slot",
    # Notification
    "AlertMessage",
    "ChannelKind",
    "DeliveryOutcome",
    "DeliveryStatus",
    "DispatchReport",
    "LAYER_CHANNELS",
    "NotificationChannel",
    "NotificationDispatcher",
    "create_dispatcher",
    # Live state
    "LiveStateBroadcaster",
    "Subscription",
    "apply_transition",
    "effective_counters",
    "local_day",
    # Ingest and settings
    "IngestResult",
    "SettingsService",
    "SweepReport",
    "TelemetryIngestor",
    # Wiring
    "EngineComponents",
    "create_engine_components",
]

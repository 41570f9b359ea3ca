"""
Wiring of the engine component graph.

Example:
    >>> store = create_state_store(config)
    >>> await store.connect()
    >>> components = create_engine_components(config, store)
    >>> await components.ingestor.submit_reading("CT-1001", payload)
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from coldchain.config.models import AppConfig
from coldchain.engine.broadcaster import ChangeRelay, LiveStateBroadcaster
from coldchain.engine.dispatcher import NotificationDispatcher, create_dispatcher
from coldchain.engine.evaluator import ConditionEvaluator, create_evaluator
from coldchain.engine.ingest import TelemetryIngestor
from coldchain.engine.manager import AlertManager
from coldchain.engine.scheduler import EscalationScheduler
from coldchain.engine.settings import SettingsService
from coldchain.interfaces.history import HistoryRecorder
from coldchain.interfaces.state_store import StateStore

logger = structlog.get_logger(__name__)


@dataclass
class EngineComponents:
    """The wired engine."""

    store: StateStore
    evaluator: ConditionEvaluator
    dispatcher: NotificationDispatcher
    broadcaster: LiveStateBroadcaster
    manager: AlertManager
    scheduler: EscalationScheduler
    ingestor: TelemetryIngestor
    settings: SettingsService


def create_engine_components(
    config: AppConfig,
    store: StateStore,
    history: Optional[HistoryRecorder] = None,
    relay: Optional[ChangeRelay] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> EngineComponents:
    """
    Build every engine component around one store.

    Args:
        config: Application configuration.
        store: Connected live state store.
        history: Optional history recorder.
        relay: Optional cross-process change feed for the broadcaster.
        dispatcher: Dispatcher override (tests); built from config otherwise.

    Returns:
        EngineComponents: The wired components.
    """
    evaluator = create_evaluator(config.engine)
    dispatcher = dispatcher or create_dispatcher(config.notifications, config.engine)
    broadcaster = LiveStateBroadcaster(store, relay=relay)
    manager = AlertManager(
        store=store,
        dispatcher=dispatcher,
        history=history,
        change_listener=broadcaster.notify_changed,
    )
    scheduler = EscalationScheduler(
        manager,
        scan_interval_seconds=config.engine.scan_interval_seconds,
    )
    ingestor = TelemetryIngestor(
        store=store,
        evaluator=evaluator,
        manager=manager,
        history=history,
        offline_threshold_seconds=config.engine.device_offline_threshold_seconds,
        sweep_interval_seconds=config.engine.sweep_interval_seconds,
    )

    logger.info(
        "engine_components_created",
        store=type(store).__name__,
        history_enabled=history is not None,
        relay_enabled=relay is not None,
    )
    return EngineComponents(
        store=store,
        evaluator=evaluator,
        dispatcher=dispatcher,
        broadcaster=broadcaster,
        manager=manager,
        scheduler=scheduler,
        ingestor=ingestor,
        settings=SettingsService(store),
    )

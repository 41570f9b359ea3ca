"""
Alert manager: the alert state machine.

This module owns every alert transition: creation with deduplication, the
condition-cleared flag, acknowledgment, resolution and notification
bookkeeping. Promotion over time lives in the EscalationScheduler, which
uses the manager's per-alert locks and delivery helper.

Lifecycle:
    ACTIVE (layer 1) -> ESCALATING (layer 2) -> ESCALATING (layer 3) -> RESOLVED

    - Acknowledged is an orthogonal flag, settable while not resolved.
    - Condition cleared is an internal flag: it halts promotion but never
      resolves the alert. Resolution is always manual.

Key Features:
    - One open alert per (cold cell, type), enforced by the store
    - Entry layer from the customer's time slot at trigger time
    - Entry notifications dispatched in tracked background tasks
    - Best-effort history recording and live-state change notification

Example:
    >>> manager = AlertManager(store=store, dispatcher=dispatcher)
    >>> outcomes = await manager.apply_signals(signals)
    >>> await manager.acknowledge(alert_id, by="marie")
    >>> await manager.resolve(alert_id, reason="Compressor restarted", by="marie")
    >>> await manager.drain()
"""

import asyncio
import weakref
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple

import structlog
from pydantic import BaseModel, Field

from coldchain.engine.dispatcher import DispatchReport, NotificationDispatcher
from coldchain.engine.timeslots import initial_layer_for_slot, resolve_time_slot
from coldchain.errors import ConflictError, NotFoundError, ValidationError
from coldchain.interfaces.history import HistoryRecorder
from coldchain.interfaces.state_store import StateStore
from coldchain.models.alerts import (
    Alert,
    AlertLayer,
    AlertStatus,
    AlertType,
    ConditionSignal,
)
from coldchain.models.assets import ColdCell, EscalationConfig

logger = structlog.get_logger(__name__)


ChangeListener = Callable[[str], Awaitable[None]]


def utc_now() -> datetime:
    """Current aware UTC time."""
    return datetime.now(timezone.utc)


class SignalAction(str, Enum):
    """What applying a signal did."""

    CREATED = "created"
    DEDUPLICATED = "deduplicated"
    CLEARED = "cleared"
    IGNORED = "ignored"


class SignalOutcome(BaseModel):
    """Result of applying one ConditionSignal."""

    model_config = {"frozen": True, "extra": "forbid"}

    signal: ConditionSignal = Field(..., description="Applied signal")
    action: SignalAction = Field(..., description="Resulting action")
    alert: Optional[Alert] = Field(default=None, description="Alert touched, if any")

    @property
    def changed(self) -> bool:
        """Whether an alert was written."""
        return self.action != SignalAction.IGNORED


class AlertManager:
    """
    Applies condition signals and user actions to alerts.

    Attributes:
        store: Live state store.
        dispatcher: Notification dispatcher.
        history: Optional history recorder.
        change_listener: Awaited with a cold cell id after alert changes.
    """

    def __init__(
        self,
        store: StateStore,
        dispatcher: NotificationDispatcher,
        history: Optional[HistoryRecorder] = None,
        change_listener: Optional[ChangeListener] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.history = history
        self.change_listener = change_listener

        self._pending: Set["asyncio.Task[None]"] = set()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

        logger.info(
            "alert_manager_initialized",
            history_enabled=history is not None,
        )

    # =========================================================================
    # SIGNALS
    # =========================================================================

    async def apply_signal(self, signal: ConditionSignal) -> SignalOutcome:
        """Apply one signal; see ``apply_signals``."""
        outcomes = await self.apply_signals([signal])
        return outcomes[0]

    async def apply_signals(
        self,
        signals: Iterable[ConditionSignal],
        notify: bool = True,
    ) -> List[SignalOutcome]:
        """
        Apply signals in order.

        Args:
            signals: Signals from the ConditionEvaluator.
            notify: Whether to notify the change listener once per changed cell.

        Returns:
            List[SignalOutcome]: One outcome per signal.

        Raises:
            NotFoundError: If a signal references an unknown cold cell.
        """
        outcomes: List[SignalOutcome] = []
        for signal in signals:
            if signal.is_trigger:
                outcomes.append(await self._apply_trigger(signal))
            else:
                outcomes.append(await self._apply_clear(signal))

        if notify:
            changed_cells = {o.signal.cold_cell_id for o in outcomes if o.changed}
            for cold_cell_id in sorted(changed_cells):
                await self.notify_changed(cold_cell_id)
        return outcomes

    async def _apply_trigger(self, signal: ConditionSignal) -> SignalOutcome:
        existing = await self.store.find_open_alert(signal.cold_cell_id, signal.alert_type)
        if existing is not None:
            refreshed = await self._refresh(existing, signal)
            if refreshed is not None:
                return SignalOutcome(
                    signal=signal,
                    action=SignalAction.DEDUPLICATED,
                    alert=refreshed,
                )

        cell, config = await self.load_context(signal.cold_cell_id)
        slot = resolve_time_slot(config, signal.observed_at)
        layer = initial_layer_for_slot(slot)
        alert = Alert(
            cold_cell_id=cell.cold_cell_id,
            customer_id=cell.customer_id,
            alert_type=signal.alert_type,
            status=AlertStatus.for_layer(layer),
            layer=layer,
            time_slot=slot,
            triggered_at=signal.observed_at,
            last_triggered_at=signal.observed_at,
            value=signal.value,
            threshold=signal.threshold,
            last_value=signal.value,
            layer2_at=signal.observed_at if layer == AlertLayer.LAYER_2 else None,
            layer3_at=signal.observed_at if layer == AlertLayer.LAYER_3 else None,
        )

        if not await self.store.create_alert(alert):
            # Another writer took the slot between lookup and insert.
            winner = await self.store.find_open_alert(signal.cold_cell_id, signal.alert_type)
            refreshed = await self._refresh(winner, signal) if winner is not None else None
            return SignalOutcome(
                signal=signal,
                action=SignalAction.DEDUPLICATED if refreshed else SignalAction.IGNORED,
                alert=refreshed,
            )

        logger.info(
            "alert_created",
            alert_id=alert.alert_id,
            cold_cell_id=alert.cold_cell_id,
            alert_type=alert.alert_type.value,
            layer=int(alert.layer),
            time_slot=alert.time_slot.value,
            value=alert.value,
            threshold=alert.threshold,
            detail=signal.detail,
        )
        await self.record_history(alert)
        self._dispatch_in_background(alert)
        return SignalOutcome(signal=signal, action=SignalAction.CREATED, alert=alert)

    async def _refresh(self, existing: Alert, signal: ConditionSignal) -> Optional[Alert]:
        def mutate(current: Alert) -> Optional[Alert]:
            if not current.is_open:
                return None
            return current.refresh_trigger(signal.observed_at, signal.value)

        refreshed = await self.store.update_alert(existing.alert_id, mutate)
        if refreshed is not None:
            logger.debug(
                "alert_deduplicated",
                alert_id=refreshed.alert_id,
                alert_type=refreshed.alert_type.value,
                rearmed=existing.condition_cleared,
            )
            if existing.condition_cleared:
                await self.record_history(refreshed)
        return refreshed

    async def _apply_clear(self, signal: ConditionSignal) -> SignalOutcome:
        existing = await self.store.find_open_alert(signal.cold_cell_id, signal.alert_type)
        if existing is None or existing.condition_cleared:
            return SignalOutcome(signal=signal, action=SignalAction.IGNORED)

        def mutate(current: Alert) -> Optional[Alert]:
            if not current.is_open or current.condition_cleared:
                return None
            return current.mark_cleared(signal.observed_at, signal.value)

        cleared = await self.store.update_alert(existing.alert_id, mutate)
        if cleared is None:
            return SignalOutcome(signal=signal, action=SignalAction.IGNORED)

        logger.info(
            "alert_condition_cleared",
            alert_id=cleared.alert_id,
            alert_type=cleared.alert_type.value,
            layer=int(cleared.layer),
        )
        await self.record_history(cleared)
        return SignalOutcome(signal=signal, action=SignalAction.CLEARED, alert=cleared)

    # =========================================================================
    # USER ACTIONS
    # =========================================================================

    async def acknowledge(
        self,
        alert_id: str,
        by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Alert:
        """
        Acknowledge an alert. Idempotent; layer and escalation are untouched.

        Raises:
            NotFoundError: Unknown alert.
            ConflictError: The alert is resolved.
        """
        now = now or utc_now()

        def mutate(current: Alert) -> Optional[Alert]:
            if not current.is_open:
                raise ConflictError(
                    "Cannot acknowledge a resolved alert",
                    details={"alert_id": alert_id},
                )
            if current.is_acknowledged:
                return None
            return current.acknowledge(now, by)

        updated = await self.store.update_alert(alert_id, mutate)
        if updated is None:
            return await self.get_alert(alert_id)

        logger.info("alert_acknowledged", alert_id=alert_id, by=by, layer=int(updated.layer))
        await self.record_history(updated)
        await self.notify_changed(updated.cold_cell_id)
        return updated

    async def resolve(
        self,
        alert_id: str,
        reason: Optional[str],
        by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Alert:
        """
        Resolve an alert and release its dedup slot.

        Raises:
            NotFoundError: Unknown alert.
            ValidationError: Blank reason while the cell requires one.
            ConflictError: The alert is already resolved.
        """
        now = now or utc_now()
        alert = await self.get_alert(alert_id)
        if not alert.is_open:
            raise ConflictError("Alert is already resolved", details={"alert_id": alert_id})
        cell = await self.store.get_cold_cell(alert.cold_cell_id)
        require_reason = cell.require_resolution_reason if cell is not None else True

        cleaned = (reason or "").strip()
        if require_reason and not cleaned:
            raise ValidationError(
                "A resolution reason is required for this cold cell",
                details={"alert_id": alert_id, "cold_cell_id": alert.cold_cell_id},
            )

        def mutate(current: Alert) -> Optional[Alert]:
            if not current.is_open:
                raise ConflictError("Alert is already resolved", details={"alert_id": alert_id})
            return current.resolve(cleaned or None, now, by)

        resolved = await self.store.update_alert(alert_id, mutate)
        if resolved is None:
            raise ConflictError("Alert could not be resolved", details={"alert_id": alert_id})

        logger.info(
            "alert_resolved",
            alert_id=alert_id,
            alert_type=resolved.alert_type.value,
            layer=int(resolved.layer),
            by=by,
            duration_minutes=resolved.elapsed_minutes(now),
        )
        await self.record_history(resolved)
        await self.notify_changed(resolved.cold_cell_id)
        return resolved

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_alert(self, alert_id: str) -> Alert:
        """
        Get one alert.

        Raises:
            NotFoundError: Unknown alert.
        """
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)
        return alert

    async def list_alerts(
        self,
        customer_id: Optional[str] = None,
        cold_cell_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
        alert_type: Optional[AlertType] = None,
        open_only: bool = False,
    ) -> List[Alert]:
        """
        List alerts, open first then newest first.

        Args:
            customer_id: Restrict to the customer's cold cells.
            cold_cell_id: Restrict to one cold cell.
            status: Status filter.
            alert_type: Type filter.
            open_only: Exclude resolved alerts.
        """
        cold_cell_ids: Optional[List[str]] = None
        if customer_id is not None:
            cells = await self.store.list_cold_cells(customer_id)
            cold_cell_ids = [cell.cold_cell_id for cell in cells]
        if cold_cell_id is not None:
            if cold_cell_ids is not None and cold_cell_id not in cold_cell_ids:
                return []
            cold_cell_ids = [cold_cell_id]

        return await self.store.list_alerts(
            cold_cell_ids=cold_cell_ids,
            status=status,
            alert_type=alert_type,
            open_only=open_only,
        )

    # =========================================================================
    # NOTIFICATION
    # =========================================================================

    def alert_lock(self, alert_id: str) -> asyncio.Lock:
        """Per-alert lock serializing promotion and delivery."""
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[alert_id] = lock
        return lock

    async def load_context(self, cold_cell_id: str) -> Tuple[ColdCell, EscalationConfig]:
        """
        Load a cold cell and its customer's escalation config.

        Raises:
            NotFoundError: Unknown cold cell or customer configuration.
        """
        cell = await self.store.get_cold_cell(cold_cell_id)
        if cell is None:
            raise NotFoundError("cold cell", cold_cell_id)
        config = await self.store.get_escalation_config(cell.customer_id)
        if config is None:
            raise NotFoundError("escalation config", cell.customer_id)
        return cell, config

    async def deliver(self, alert: Alert, layer: Optional[AlertLayer] = None) -> DispatchReport:
        """
        Dispatch ``layer`` for an alert and record success in ``notified_layer``.

        Every outcome is appended to the escalation log. The caller holds
        ``alert_lock(alert.alert_id)``. A failed channel leaves
        ``notified_layer`` behind so the scheduler retries.
        """
        layer = layer or alert.layer
        cell, config = await self.load_context(alert.cold_cell_id)
        report = await self.dispatcher.notify(alert, cell, config, layer)
        await self.record_dispatch(report)

        if report.all_delivered:

            def mutate(current: Alert) -> Optional[Alert]:
                if current.notified_layer >= int(layer):
                    return None
                return current.mark_notified(layer)

            updated = await self.store.update_alert(alert.alert_id, mutate)
            if updated is not None:
                await self.record_history(updated)
        return report

    def _dispatch_in_background(self, alert: Alert) -> None:
        task = asyncio.create_task(self._deliver_entry_layer(alert))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver_entry_layer(self, alert: Alert) -> None:
        try:
            async with self.alert_lock(alert.alert_id):
                current = await self.store.get_alert(alert.alert_id)
                if current is None or not current.needs_notification:
                    return
                await self.deliver(current)
        except Exception as e:
            logger.error(
                "alert_dispatch_failed",
                alert_id=alert.alert_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def drain(self) -> None:
        """Wait for every background dispatch started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_dispatches(self) -> int:
        """Number of background dispatches still running."""
        return len(self._pending)

    async def notify_changed(self, cold_cell_id: str) -> None:
        """Tell the change listener that a cell's alerts changed."""
        if self.change_listener is None:
            return
        try:
            await self.change_listener(cold_cell_id)
        except Exception as e:
            logger.warning("change_listener_failed", cold_cell_id=cold_cell_id, error=str(e))

    async def record_history(self, alert: Alert) -> None:
        if self.history is None:
            return
        try:
            await self.history.record_alert(alert)
        except Exception as e:
            logger.warning("alert_history_record_failed", alert_id=alert.alert_id, error=str(e))

    async def record_dispatch(self, report: DispatchReport) -> None:
        if self.history is None:
            return
        try:
            await self.history.record_dispatch(report)
        except Exception as e:
            logger.warning(
                "dispatch_history_record_failed",
                alert_id=report.alert_id,
                layer=int(report.layer),
                error=str(e),
            )

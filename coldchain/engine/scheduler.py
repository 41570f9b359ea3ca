"""
Escalation scheduler: the recurring promotion pass.

Every ``scan_interval_seconds`` the scheduler visits each non-resolved
alert. Alerts born during opening hours climb one layer per tick once
enough time has elapsed since ``triggered_at``:

    layer 1 -> 2 after PROMOTE_TO_LAYER_2_AFTER (20 minutes)
    layer 2 -> 3 after PROMOTE_TO_LAYER_3_AFTER (35 minutes)

Alerts born after closing or at night entered at their final layer and are
never promoted. A cleared condition halts promotion and re-dispatch. When a
layer's dispatch did not fully succeed, later ticks re-attempt it.

Promotion is guarded twice: a per-alert asyncio.Lock serializes the pass for
one alert inside this process, and the store update only applies when the
stored layer is still the one the tick observed.

Example:
    >>> scheduler = EscalationScheduler(manager, scan_interval_seconds=60)
    >>> report = await scheduler.run_tick()
    >>> report.promoted
    ['2f0c...']
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from coldchain.engine.manager import AlertManager, utc_now
from coldchain.engine.timeslots import promotes_over_time, resolve_time_slot
from coldchain.models.alerts import Alert, AlertLayer

logger = structlog.get_logger(__name__)


PROMOTE_TO_LAYER_2_AFTER = timedelta(minutes=20)
PROMOTE_TO_LAYER_3_AFTER = timedelta(minutes=35)

PROMOTION_DELAYS: Dict[AlertLayer, timedelta] = {
    AlertLayer.LAYER_2: PROMOTE_TO_LAYER_2_AFTER,
    AlertLayer.LAYER_3: PROMOTE_TO_LAYER_3_AFTER,
}


class TickAction(str, Enum):
    """What one scheduler pass did to one alert."""

    PROMOTED = "promoted"
    REDISPATCHED = "redispatched"
    SKIPPED = "skipped"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class EscalationReport(BaseModel):
    """Summary of one scheduler tick."""

    model_config = {"extra": "forbid"}

    tick_at: datetime = Field(..., description="Tick time")
    promoted: List[str] = Field(default_factory=list, description="Promoted alert ids")
    redispatched: List[str] = Field(default_factory=list, description="Re-dispatched alert ids")
    skipped: List[str] = Field(default_factory=list, description="Cleared or closed alert ids")
    failed: List[str] = Field(default_factory=list, description="Alert ids whose pass failed")

    @property
    def visited(self) -> int:
        return len(self.promoted) + len(self.redispatched) + len(self.skipped) + len(self.failed)

    def add(self, alert_id: str, action: TickAction) -> None:
        if action == TickAction.PROMOTED:
            self.promoted.append(alert_id)
        elif action == TickAction.REDISPATCHED:
            self.redispatched.append(alert_id)
        elif action == TickAction.SKIPPED:
            self.skipped.append(alert_id)
        elif action == TickAction.FAILED:
            self.failed.append(alert_id)


class EscalationScheduler:
    """
    Recurring promotion pass over open alerts.

    Attributes:
        manager: Alert manager providing store, locks and delivery.
        scan_interval_seconds: Seconds between ticks.
    """

    def __init__(self, manager: AlertManager, scan_interval_seconds: int = 60) -> None:
        self.manager = manager
        self.store = manager.store
        self.scan_interval_seconds = scan_interval_seconds

        logger.info(
            "escalation_scheduler_initialized",
            scan_interval_seconds=scan_interval_seconds,
            layer2_after_minutes=int(PROMOTE_TO_LAYER_2_AFTER.total_seconds() // 60),
            layer3_after_minutes=int(PROMOTE_TO_LAYER_3_AFTER.total_seconds() // 60),
        )

    @staticmethod
    def target_layer(alert: Alert, now: datetime) -> Optional[AlertLayer]:
        """
        Layer the alert should be promoted to at ``now``, if any.

        At most one step above the current layer is returned.
        """
        if not alert.is_open or alert.condition_cleared:
            return None
        if not promotes_over_time(alert.time_slot):
            return None
        next_layer = alert.layer.next
        if next_layer is None:
            return None
        if now - alert.triggered_at >= PROMOTION_DELAYS[next_layer]:
            return next_layer
        return None

    async def run_tick(self, now: Optional[datetime] = None) -> EscalationReport:
        """
        Run one pass over every open alert.

        Alerts are processed concurrently; a failure in one is logged and
        does not affect the others.

        Args:
            now: Tick time (defaults to the current UTC time).

        Returns:
            EscalationReport: What happened to each alert.
        """
        now = now or utc_now()
        report = EscalationReport(tick_at=now)
        alerts = await self.store.list_open_alerts()

        actions = await asyncio.gather(
            *(self._process_safely(alert.alert_id, now) for alert in alerts)
        )
        for alert, action in zip(alerts, actions):
            report.add(alert.alert_id, action)

        if report.promoted or report.redispatched or report.failed:
            logger.info(
                "escalation_tick_complete",
                open_alerts=len(alerts),
                promoted=len(report.promoted),
                redispatched=len(report.redispatched),
                skipped=len(report.skipped),
                failed=len(report.failed),
            )
        else:
            logger.debug("escalation_tick_complete", open_alerts=len(alerts))
        return report

    async def escalate_now(self, alert_id: str, now: Optional[datetime] = None) -> Alert:
        """
        Run the per-alert pass for one alert immediately.

        Raises:
            NotFoundError: Unknown alert.
        """
        now = now or utc_now()
        await self.manager.get_alert(alert_id)
        await self._process(alert_id, now)
        return await self.manager.get_alert(alert_id)

    async def _process_safely(self, alert_id: str, now: datetime) -> TickAction:
        try:
            return await self._process(alert_id, now)
        except Exception as e:
            logger.error(
                "escalation_alert_failed",
                alert_id=alert_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return TickAction.FAILED

    async def _process(self, alert_id: str, now: datetime) -> TickAction:
        async with self.manager.alert_lock(alert_id):
            alert = await self.store.get_alert(alert_id)
            if alert is None or not alert.is_open or alert.condition_cleared:
                return TickAction.SKIPPED

            _, config = await self.manager.load_context(alert.cold_cell_id)
            current_slot = resolve_time_slot(config, now)
            logger.debug(
                "escalation_alert_visited",
                alert_id=alert_id,
                layer=int(alert.layer),
                origin_slot=alert.time_slot.value,
                current_slot=current_slot.value,
                elapsed_minutes=alert.elapsed_minutes(now),
            )

            target = self.target_layer(alert, now)
            if target is not None:
                promoted = await self._promote(alert, target, now)
                if promoted is None:
                    return TickAction.UNCHANGED
                await self.manager.deliver(promoted)
                await self.manager.notify_changed(promoted.cold_cell_id)
                return TickAction.PROMOTED

            if alert.needs_notification:
                logger.info(
                    "escalation_redispatch",
                    alert_id=alert_id,
                    layer=int(alert.layer),
                    notified_layer=alert.notified_layer,
                )
                await self.manager.deliver(alert)
                return TickAction.REDISPATCHED

            return TickAction.UNCHANGED

    async def _promote(self, alert: Alert, target: AlertLayer, now: datetime) -> Optional[Alert]:
        expected = alert.layer

        def mutate(current: Alert) -> Optional[Alert]:
            if not current.is_open or current.condition_cleared or current.layer != expected:
                return None
            return current.promote(target, now)

        promoted = await self.store.update_alert(alert.alert_id, mutate)
        if promoted is None:
            logger.debug("escalation_promotion_lost", alert_id=alert.alert_id, expected=int(expected))
            return None

        logger.info(
            "alert_promoted",
            alert_id=alert.alert_id,
            alert_type=alert.alert_type.value,
            from_layer=int(expected),
            to_layer=int(target),
            acknowledged=promoted.is_acknowledged,
        )
        await self.manager.record_history(promoted)
        return promoted

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Tick every ``scan_interval_seconds`` until ``stop_event`` is set.

        Args:
            stop_event: Event signalling shutdown.
        """
        logger.info("escalation_scheduler_started", interval=self.scan_interval_seconds)
        while not stop_event.is_set():
            try:
                await self.run_tick()
            except Exception as e:
                logger.error("escalation_tick_failed", error=str(e), error_type=type(e).__name__)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.scan_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("escalation_scheduler_stopped")


def create_scheduler(manager: AlertManager, scan_interval_seconds: int = 60) -> EscalationScheduler:
    """Factory function to create an EscalationScheduler."""
    return EscalationScheduler(manager, scan_interval_seconds=scan_interval_seconds)

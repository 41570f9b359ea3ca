"""
Live state broadcaster for cold cells.

For each cold cell the broadcaster serves one message: the current door
state with today's effective counters and a summary of the open alerts.
Clients either poll ``snapshot`` or hold a ``subscription``; both read the
same latest value and neither replays history.

A subscription is a size-1 queue. Offering a new snapshot replaces any
value the subscriber has not consumed yet, so a slow client never blocks
the publisher and only ever sees the newest state.

Message shape:
    {
        "type": "cell_state",
        "coldCellId": "dupont-walkin",
        "doorState": "open",
        "doorLastChangedAt": "2026-10-19T08:12:00+00:00",
        "doorStatsToday": {"opens": 3, "closes": 2, "totalOpenSeconds": 410},
        "alerts": [{"alertId": "...", "type": "DOOR_OPEN", ...}],
        "generatedAt": "2026-10-19T08:15:03+00:00"
    }

Example:
    >>> async with broadcaster.subscription("dupont-walkin") as subscription:
    ...     message = await subscription.get()
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Set
from zoneinfo import ZoneInfo

import structlog

from coldchain.engine.rollover import effective_counters
from coldchain.errors import NotFoundError
from coldchain.interfaces.state_store import StateStore

logger = structlog.get_logger(__name__)


MESSAGE_TYPE = "cell_state"

UTC = ZoneInfo("UTC")


class ChangeRelay(Protocol):
    """Cross-process change feed (implemented by RedisStateStore)."""

    async def publish_change(self, cold_cell_id: str) -> int:
        ...

    def subscribe_changes(self) -> Any:
        ...


class Subscription:
    """
    Latest-value subscription to one cold cell.

    Attributes:
        cold_cell_id: The subscribed cold cell.
        dropped: Number of unconsumed values replaced by newer ones.
    """

    def __init__(self, cold_cell_id: str) -> None:
        self.cold_cell_id = cold_cell_id
        self.dropped = 0
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, message: Dict[str, Any]) -> None:
        """Store ``message`` as the latest value, dropping an unread one."""
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(message)

    async def get(self) -> Dict[str, Any]:
        """Wait for the next value."""
        return await self._queue.get()

    def get_nowait(self) -> Optional[Dict[str, Any]]:
        """The pending value, if any."""
        if self._queue.empty():
            return None
        return self._queue.get_nowait()

    def close(self) -> None:
        self._closed = True


class LiveStateBroadcaster:
    """
    Fans cold-cell snapshots out to subscribers.

    Attributes:
        store: Live state store the snapshots are read from.
        relay: Optional cross-process change feed.
    """

    def __init__(self, store: StateStore, relay: Optional[ChangeRelay] = None) -> None:
        self.store = store
        self.relay = relay
        self._subscribers: Dict[str, Set[Subscription]] = {}

        logger.info("live_state_broadcaster_initialized", relay_enabled=relay is not None)

    async def snapshot(self, cold_cell_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Build the current state message for a cold cell.

        Args:
            cold_cell_id: Cold cell identifier.
            now: Reference time for counter rollover.

        Returns:
            Dict[str, Any]: The push message.

        Raises:
            NotFoundError: If the cold cell does not exist.
        """
        now = now or datetime.now(timezone.utc)
        cell = await self.store.get_cold_cell(cold_cell_id)
        if cell is None:
            raise NotFoundError("cold cell", cold_cell_id)

        config = await self.store.get_escalation_config(cell.customer_id)
        zone = config.zone if config is not None else UTC

        door = await self.store.get_door_state(cold_cell_id)
        counters = effective_counters(door, zone, now)
        alerts = await self.store.list_alerts(cold_cell_ids=[cold_cell_id], open_only=True)

        return {
            "type": MESSAGE_TYPE,
            "coldCellId": cold_cell_id,
            "doorState": door.position.value if door.position else None,
            "doorLastChangedAt": door.last_changed_at.isoformat() if door.last_changed_at else None,
            "doorStatsToday": counters.to_message(),
            "alerts": [alert.summary() for alert in alerts],
            "generatedAt": now.isoformat(),
        }

    @asynccontextmanager
    async def subscription(self, cold_cell_id: str) -> AsyncIterator[Subscription]:
        """
        Subscribe to a cold cell for the duration of the context.

        Raises:
            NotFoundError: If the cold cell does not exist.
        """
        if await self.store.get_cold_cell(cold_cell_id) is None:
            raise NotFoundError("cold cell", cold_cell_id)

        subscription = Subscription(cold_cell_id)
        self._subscribers.setdefault(cold_cell_id, set()).add(subscription)
        logger.debug(
            "live_subscription_opened",
            cold_cell_id=cold_cell_id,
            subscribers=self.subscriber_count(cold_cell_id),
        )
        try:
            yield subscription
        finally:
            subscription.close()
            subscribers = self._subscribers.get(cold_cell_id)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscribers[cold_cell_id]
            logger.debug(
                "live_subscription_closed",
                cold_cell_id=cold_cell_id,
                dropped=subscription.dropped,
            )

    def subscriber_count(self, cold_cell_id: Optional[str] = None) -> int:
        """Subscribers of one cell, or of every cell."""
        if cold_cell_id is not None:
            return len(self._subscribers.get(cold_cell_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    async def notify_changed(self, cold_cell_id: str, propagate: bool = True) -> None:
        """
        Push a fresh snapshot to the cell's local subscribers.

        Args:
            cold_cell_id: Cold cell whose state changed.
            propagate: Also publish on the relay for other processes.
        """
        subscribers = list(self._subscribers.get(cold_cell_id, ()))
        if subscribers:
            try:
                message = await self.snapshot(cold_cell_id)
            except NotFoundError:
                logger.warning("live_snapshot_cell_missing", cold_cell_id=cold_cell_id)
                return
            for subscription in subscribers:
                subscription.offer(message)

        if propagate and self.relay is not None:
            try:
                await self.relay.publish_change(cold_cell_id)
            except Exception as e:
                logger.warning("live_relay_publish_failed", cold_cell_id=cold_cell_id, error=str(e))

    async def run_relay(self, stop_event: asyncio.Event) -> None:
        """
        Refresh local subscribers on changes published by other processes.

        Runs until ``stop_event`` is set or the task is cancelled.
        """
        if self.relay is None:
            return

        async with self.relay.subscribe_changes() as changes:
            logger.info("live_relay_listening")
            async for cold_cell_id in changes:
                if stop_event.is_set():
                    break
                await self.notify_changed(cold_cell_id, propagate=False)

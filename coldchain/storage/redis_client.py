"""
Async Redis state store for shared live engine state.

This module provides a Redis-backed StateStore so that the gateway and the
alert-engine service (and any number of replicas) share one authoritative
view of devices, door state and alerts. It also carries the cold-cell change
feed over pub/sub so every gateway can refresh its live subscribers.

Key Patterns:
    - Cold cells: `coldcell:{id}` (JSON), `coldcells` (set of ids)
    - Escalation config: `escalation:{customer_id}` (JSON)
    - Devices: `device:{serial}` (JSON), `devices` (set of serials)
    - Door state: `door:{cold_cell_id}` (JSON), `doors:open` (set of ids)
    - Alerts: `alert:{alert_id}` (JSON), `alerts:all` (set), `alerts:open` (set),
              `alerts:by_cell:{cold_cell_id}` (set)
    - Dedup slot: `alert:slot:{cold_cell_id}:{alert_type}` -> open alert id (claimed with the alert write in one WATCH/MULTI)
    - Pub/Sub channel: `updates:coldcell`

Read-modify-write operations use WATCH/MULTI optimistic transactions and
retry on WatchError, so concurrent writers never lose an update.

Example:
    >>> from coldchain.config.models import RedisConnectionConfig
    >>> from coldchain.storage.redis_client import RedisStateStore
    >>>
    >>> store = RedisStateStore(RedisConnectionConfig(url="redis://localhost:6379"))
    >>> await store.connect()
    >>> created = await store.create_alert(alert)
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional, TypeVar

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import Pipeline, PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from coldchain.config.models import RedisConnectionConfig
from coldchain.errors import NotFoundError
from coldchain.interfaces.state_store import (
    AlertMutation,
    DeviceMutation,
    DoorMutation,
    StateStore,
    matches_filters,
    sort_alerts,
)
from coldchain.models.alerts import Alert, AlertStatus, AlertType, build_dedup_key
from coldchain.models.assets import ColdCell, Device, EscalationConfig
from coldchain.models.door import DoorState

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RedisClientError(Exception):
    """Base exception for Redis client errors."""

    pass


class RedisConnectionException(RedisClientError):
    """Raised when Redis connection fails."""

    pass


class RedisOperationError(RedisClientError):
    """Raised when a Redis operation fails."""

    pass


class RedisStateStore(StateStore):
    """
    Redis implementation of the StateStore.

    Attributes:
        config: Redis connection configuration.
        _pool: Connection pool for efficient connection reuse.
        _client: Redis client instance.
        _connected: Whether the client is connected.

    Example:
        >>> store = RedisStateStore(RedisConnectionConfig())
        >>> await store.connect()
        >>> try:
        ...     await store.save_cold_cell(cell)
        ... finally:
        ...     await store.disconnect()
    """

    # Key prefixes
    KEY_COLD_CELL = "coldcell"
    KEY_COLD_CELLS = "coldcells"
    KEY_ESCALATION = "escalation"
    KEY_DEVICE = "device"
    KEY_DEVICES = "devices"
    KEY_DOOR = "door"
    KEY_DOORS_OPEN = "doors:open"
    KEY_ALERT = "alert"
    KEY_ALERT_SLOT = "alert:slot"
    KEY_ALERTS_ALL = "alerts:all"
    KEY_ALERTS_OPEN = "alerts:open"
    KEY_ALERTS_BY_CELL = "alerts:by_cell"

    # Pub/sub channels
    CHANNEL_COLD_CELL = "updates:coldcell"

    # Optimistic transaction attempts before giving up
    MAX_CAS_RETRIES = 10

    def __init__(self, config: RedisConnectionConfig) -> None:
        """
        Initialize the Redis state store.

        Args:
            config: Redis connection configuration containing URL, db, and pool settings.
        """
        self.config = config
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None  # type: ignore[type-arg]
        self._connected: bool = False

        logger.info(
            "redis_client_initialized",
            url=config.url,
            db=config.db,
            max_connections=config.max_connections,
        )

    @property
    def is_connected(self) -> bool:
        """
        Check if the client is connected to Redis.

        Returns:
            bool: True if connected, False otherwise.
        """
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """
        Establish connection to Redis.

        Raises:
            RedisConnectionException: If connection fails.
        """
        if self._connected:
            logger.warning("redis_already_connected")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.config.url,
                db=self.config.db,
                max_connections=self.config.max_connections,
                socket_timeout=self.config.socket_timeout,
                socket_connect_timeout=self.config.socket_timeout,
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._connected = True

            logger.info(
                "redis_connected",
                url=self.config.url,
                db=self.config.db,
            )

        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            self._connected = False
            logger.error(
                "redis_connection_failed",
                url=self.config.url,
                error=str(e),
            )
            raise RedisConnectionException(
                f"Failed to connect to Redis at {self.config.url}: {e}"
            ) from e

    async def disconnect(self) -> None:
        """
        Close Redis connection and release resources.

        Safe to call multiple times.
        """
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning("redis_close_error", error=str(e))
            finally:
                self._client = None

        if self._pool is not None:
            try:
                await self._pool.aclose()
            except RedisError as e:
                logger.warning("redis_pool_close_error", error=str(e))
            finally:
                self._pool = None

        self._connected = False
        logger.info("redis_disconnected")

    async def ping(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            bool: True if Redis responds to PING, False otherwise.
        """
        if not self._client:
            return False

        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    def _require_connection(self) -> Redis:  # type: ignore[type-arg]
        """
        Ensure client is connected and return the Redis instance.

        Raises:
            RedisConnectionException: If not connected.
        """
        if not self._connected or self._client is None:
            raise RedisConnectionException("Redis client is not connected")
        return self._client

    async def _get_json(self, key: str) -> Optional[str]:
        client = self._require_connection()
        try:
            return await client.get(key)
        except RedisError as e:
            logger.error("redis_get_failed", key=key, error=str(e))
            raise RedisOperationError(f"Failed to read {key}: {e}") from e

    async def _get_many(self, keys: List[str]) -> List[str]:
        if not keys:
            return []
        client = self._require_connection()
        try:
            values = await client.mget(keys)
        except RedisError as e:
            logger.error("redis_mget_failed", count=len(keys), error=str(e))
            raise RedisOperationError(f"Failed to read {len(keys)} keys: {e}") from e
        return [value for value in values if value is not None]

    async def _set_indexed(self, key: str, payload: str, index_key: str, member: str) -> None:
        client = self._require_connection()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(key, payload)
                pipe.sadd(index_key, member)
                await pipe.execute()
        except RedisError as e:
            logger.error("redis_set_failed", key=key, error=str(e))
            raise RedisOperationError(f"Failed to store {key}: {e}") from e

    async def _compare_and_set(
        self,
        key: str,
        decode: Callable[[Optional[str]], T],
        mutate: Callable[[T], Optional[T]],
        write: Callable[[Pipeline, T, T], None],
    ) -> Optional[T]:
        """
        Run an optimistic read-modify-write on one key.

        Args:
            key: Key to watch and read.
            decode: Turns the raw value into a model (may raise NotFoundError).
            mutate: Produces the replacement, or None to leave the key untouched.
            write: Queues the writes for the replacement inside MULTI.

        Returns:
            Optional[T]: The written replacement, or None if ``mutate`` declined.

        Raises:
            RedisOperationError: On Redis failure or sustained contention.
        """
        client = self._require_connection()

        try:
            async with client.pipeline(transaction=True) as pipe:
                for attempt in range(1, self.MAX_CAS_RETRIES + 1):
                    try:
                        await pipe.watch(key)
                        current = decode(await pipe.get(key))
                        replacement = mutate(current)
                        if replacement is None:
                            return None
                        pipe.multi()
                        write(pipe, current, replacement)
                        await pipe.execute()
                        return replacement
                    except WatchError:
                        logger.debug("redis_cas_retry", key=key, attempt=attempt)
                        continue
        except RedisError as e:
            logger.error("redis_cas_failed", key=key, error=str(e))
            raise RedisOperationError(f"Failed to update {key}: {e}") from e

        raise RedisOperationError(
            f"Failed to update {key}: contention after {self.MAX_CAS_RETRIES} attempts"
        )

    # =========================================================================
    # ASSETS
    # =========================================================================

    def _cold_cell_key(self, cold_cell_id: str) -> str:
        return f"{self.KEY_COLD_CELL}:{cold_cell_id}"

    async def get_cold_cell(self, cold_cell_id: str) -> Optional[ColdCell]:
        data = await self._get_json(self._cold_cell_key(cold_cell_id))
        return ColdCell.model_validate_json(data) if data else None

    async def list_cold_cells(self, customer_id: Optional[str] = None) -> List[ColdCell]:
        client = self._require_connection()
        try:
            ids = await client.smembers(self.KEY_COLD_CELLS)
        except RedisError as e:
            raise RedisOperationError(f"Failed to list cold cells: {e}") from e
        cells = [
            ColdCell.model_validate_json(raw)
            for raw in await self._get_many([self._cold_cell_key(i) for i in sorted(ids)])
        ]
        return [c for c in cells if customer_id is None or c.customer_id == customer_id]

    async def save_cold_cell(self, cell: ColdCell) -> None:
        await self._set_indexed(
            self._cold_cell_key(cell.cold_cell_id),
            cell.model_dump_json(),
            self.KEY_COLD_CELLS,
            cell.cold_cell_id,
        )

    def _escalation_key(self, customer_id: str) -> str:
        return f"{self.KEY_ESCALATION}:{customer_id}"

    async def get_escalation_config(self, customer_id: str) -> Optional[EscalationConfig]:
        data = await self._get_json(self._escalation_key(customer_id))
        return EscalationConfig.model_validate_json(data) if data else None

    async def save_escalation_config(self, config: EscalationConfig) -> None:
        client = self._require_connection()
        try:
            await client.set(self._escalation_key(config.customer_id), config.model_dump_json())
        except RedisError as e:
            raise RedisOperationError(
                f"Failed to store escalation config {config.customer_id}: {e}"
            ) from e

    # =========================================================================
    # DEVICES
    # =========================================================================

    def _device_key(self, serial: str) -> str:
        return f"{self.KEY_DEVICE}:{serial}"

    async def get_device(self, serial: str) -> Optional[Device]:
        data = await self._get_json(self._device_key(serial))
        return Device.model_validate_json(data) if data else None

    async def list_devices(self) -> List[Device]:
        client = self._require_connection()
        try:
            serials = await client.smembers(self.KEY_DEVICES)
        except RedisError as e:
            raise RedisOperationError(f"Failed to list devices: {e}") from e
        return [
            Device.model_validate_json(raw)
            for raw in await self._get_many([self._device_key(s) for s in sorted(serials)])
        ]

    async def save_device(self, device: Device) -> None:
        await self._set_indexed(
            self._device_key(device.serial),
            device.model_dump_json(),
            self.KEY_DEVICES,
            device.serial,
        )

    async def update_device(self, serial: str, mutate: DeviceMutation) -> Optional[Device]:
        key = self._device_key(serial)

        def decode(raw: Optional[str]) -> Device:
            if raw is None:
                raise NotFoundError("device", serial)
            return Device.model_validate_json(raw)

        def write(pipe: Pipeline, current: Device, replacement: Device) -> None:
            pipe.set(key, replacement.model_dump_json())

        return await self._compare_and_set(key, decode, mutate, write)

    # =========================================================================
    # DOOR STATE
    # =========================================================================

    def _door_key(self, cold_cell_id: str) -> str:
        return f"{self.KEY_DOOR}:{cold_cell_id}"

    async def get_door_state(self, cold_cell_id: str) -> DoorState:
        data = await self._get_json(self._door_key(cold_cell_id))
        if data is None:
            return DoorState(cold_cell_id=cold_cell_id)
        return DoorState.model_validate_json(data)

    async def update_door_state(
        self,
        cold_cell_id: str,
        mutate: DoorMutation,
    ) -> Optional[DoorState]:
        key = self._door_key(cold_cell_id)

        def decode(raw: Optional[str]) -> DoorState:
            if raw is None:
                return DoorState(cold_cell_id=cold_cell_id)
            return DoorState.model_validate_json(raw)

        def write(pipe: Pipeline, current: DoorState, replacement: DoorState) -> None:
            pipe.set(key, replacement.model_dump_json())
            if replacement.is_open:
                pipe.sadd(self.KEY_DOORS_OPEN, cold_cell_id)
            else:
                pipe.srem(self.KEY_DOORS_OPEN, cold_cell_id)

        return await self._compare_and_set(key, decode, mutate, write)

    async def list_open_doors(self) -> List[DoorState]:
        client = self._require_connection()
        try:
            ids = await client.smembers(self.KEY_DOORS_OPEN)
        except RedisError as e:
            raise RedisOperationError(f"Failed to list open doors: {e}") from e
        states = [
            DoorState.model_validate_json(raw)
            for raw in await self._get_many([self._door_key(i) for i in sorted(ids)])
        ]
        return [state for state in states if state.is_open]

    # =========================================================================
    # ALERTS
    # =========================================================================

    def _alert_key(self, alert_id: str) -> str:
        return f"{self.KEY_ALERT}:{alert_id}"

    def _slot_key(self, cold_cell_id: str, alert_type: AlertType) -> str:
        return f"{self.KEY_ALERT_SLOT}:{build_dedup_key(cold_cell_id, alert_type)}"

    def _alerts_by_cell_key(self, cold_cell_id: str) -> str:
        return f"{self.KEY_ALERTS_BY_CELL}:{cold_cell_id}"

    async def create_alert(self, alert: Alert) -> bool:
        """
        Claim the dedup slot and store the alert in one WATCH/MULTI transaction.

        A slot pointing at a missing or resolved alert is left over from an
        interrupted write and is reclaimed.

        Returns:
            bool: False when another open alert already holds the slot.
        """
        client = self._require_connection()
        slot_key = self._slot_key(alert.cold_cell_id, alert.alert_type)

        try:
            async with client.pipeline(transaction=True) as pipe:
                for attempt in range(1, self.MAX_CAS_RETRIES + 1):
                    try:
                        await pipe.watch(slot_key)
                        holder_id = await pipe.get(slot_key)
                        if holder_id is not None:
                            holder = await pipe.get(self._alert_key(holder_id))
                            if holder is not None and Alert.model_validate_json(holder).is_open:
                                await pipe.unwatch()
                                logger.debug("alert_slot_taken", dedup_key=alert.dedup_key)
                                return False
                            logger.warning(
                                "alert_slot_reclaimed",
                                dedup_key=alert.dedup_key,
                                stale_alert_id=holder_id,
                            )

                        pipe.multi()
                        pipe.set(slot_key, alert.alert_id)
                        pipe.set(self._alert_key(alert.alert_id), alert.model_dump_json())
                        pipe.sadd(self.KEY_ALERTS_ALL, alert.alert_id)
                        pipe.sadd(self.KEY_ALERTS_OPEN, alert.alert_id)
                        pipe.sadd(self._alerts_by_cell_key(alert.cold_cell_id), alert.alert_id)
                        await pipe.execute()

                        logger.debug(
                            "alert_stored",
                            alert_id=alert.alert_id,
                            alert_type=alert.alert_type.value,
                            layer=int(alert.layer),
                        )
                        return True
                    except WatchError:
                        logger.debug("alert_slot_retry", dedup_key=alert.dedup_key, attempt=attempt)
                        continue

        except RedisError as e:
            logger.error(
                "alert_store_failed",
                alert_id=alert.alert_id,
                error=str(e),
            )
            raise RedisOperationError(f"Failed to store alert {alert.alert_id}: {e}") from e

        raise RedisOperationError(
            f"Failed to store alert {alert.alert_id}: contention after {self.MAX_CAS_RETRIES} attempts"
        )

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        data = await self._get_json(self._alert_key(alert_id))
        return Alert.model_validate_json(data) if data else None

    async def find_open_alert(
        self,
        cold_cell_id: str,
        alert_type: AlertType,
    ) -> Optional[Alert]:
        """Open alert holding the slot; a dangling slot counts as free."""
        alert_id = await self._get_json(self._slot_key(cold_cell_id, alert_type))
        if alert_id is None:
            return None
        alert = await self.get_alert(alert_id)
        if alert is None or not alert.is_open:
            return None
        return alert

    async def _load_alerts(self, alert_ids: Iterable[str]) -> List[Alert]:
        keys = [self._alert_key(alert_id) for alert_id in alert_ids]
        return [Alert.model_validate_json(raw) for raw in await self._get_many(keys)]

    async def list_alerts(
        self,
        cold_cell_ids: Optional[Iterable[str]] = None,
        status: Optional[AlertStatus] = None,
        alert_type: Optional[AlertType] = None,
        open_only: bool = False,
    ) -> List[Alert]:
        client = self._require_connection()
        cell_filter = set(cold_cell_ids) if cold_cell_ids is not None else None

        try:
            if open_only:
                ids = await client.smembers(self.KEY_ALERTS_OPEN)
            elif cell_filter is not None:
                keys = [self._alerts_by_cell_key(c) for c in cell_filter]
                ids = await client.sunion(keys) if keys else set()
            else:
                ids = await client.smembers(self.KEY_ALERTS_ALL)
        except RedisError as e:
            raise RedisOperationError(f"Failed to list alerts: {e}") from e

        alerts = await self._load_alerts(ids)
        return sort_alerts(
            a for a in alerts if matches_filters(a, cell_filter, status, alert_type, open_only)
        )

    async def list_open_alerts(self) -> List[Alert]:
        client = self._require_connection()
        try:
            ids = await client.smembers(self.KEY_ALERTS_OPEN)
        except RedisError as e:
            raise RedisOperationError(f"Failed to list open alerts: {e}") from e
        return [alert for alert in await self._load_alerts(ids) if alert.is_open]

    async def update_alert(self, alert_id: str, mutate: AlertMutation) -> Optional[Alert]:
        key = self._alert_key(alert_id)

        def decode(raw: Optional[str]) -> Alert:
            if raw is None:
                raise NotFoundError("alert", alert_id)
            return Alert.model_validate_json(raw)

        def write(pipe: Pipeline, current: Alert, replacement: Alert) -> None:
            pipe.set(key, replacement.model_dump_json())
            if current.is_open and not replacement.is_open:
                pipe.srem(self.KEY_ALERTS_OPEN, alert_id)
                pipe.delete(self._slot_key(current.cold_cell_id, current.alert_type))

        return await self._compare_and_set(key, decode, mutate, write)

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    async def publish_change(self, cold_cell_id: str) -> int:
        """
        Announce that a cold cell's live state changed.

        Args:
            cold_cell_id: The changed cold cell.

        Returns:
            int: Number of subscribers that received the message.

        Raises:
            RedisOperationError: If the publish fails.
        """
        client = self._require_connection()
        try:
            count = await client.publish(
                self.CHANNEL_COLD_CELL,
                json.dumps({"cold_cell_id": cold_cell_id}),
            )
            return int(count)
        except RedisError as e:
            logger.error("cold_cell_publish_failed", cold_cell_id=cold_cell_id, error=str(e))
            raise RedisOperationError(f"Failed to publish change: {e}") from e

    @asynccontextmanager
    async def subscribe_changes(self) -> AsyncIterator[AsyncIterator[str]]:
        """
        Subscribe to the cold-cell change feed.

        Yields:
            AsyncIterator[str]: Async iterator of changed cold cell ids.

        Example:
            >>> async with store.subscribe_changes() as changes:
            ...     async for cold_cell_id in changes:
            ...         await broadcaster.notify_changed(cold_cell_id, propagate=False)
        """
        client = self._require_connection()
        pubsub: PubSub = client.pubsub()

        try:
            await pubsub.subscribe(self.CHANNEL_COLD_CELL)
            logger.info("pubsub_subscribed", channels=[self.CHANNEL_COLD_CELL])

            async def change_iterator() -> AsyncIterator[str]:
                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    try:
                        payload: Any = json.loads(message["data"])
                        yield str(payload["cold_cell_id"])
                    except (json.JSONDecodeError, KeyError, TypeError) as e:
                        logger.warning(
                            "pubsub_message_parse_failed",
                            channel=message["channel"],
                            error=str(e),
                        )

            yield change_iterator()

        finally:
            await pubsub.unsubscribe(self.CHANNEL_COLD_CELL)
            await pubsub.aclose()
            logger.info("pubsub_unsubscribed", channels=[self.CHANNEL_COLD_CELL])

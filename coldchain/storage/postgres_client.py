"""
Async PostgreSQL client for reading and alert history.

This module provides the PostgreSQL-backed HistoryRecorder: the append-only
reading log, the alert archive and the escalation log used for reporting.
Live engine state lives in the StateStore; this client only receives
best-effort copies.

Key Tables (see sql/schema.sql):
    - sensor_readings: Append-only telemetry ordered by recorded_at
    - alerts: Alert archive, upserted on every lifecycle change. A partial
      unique index on (cold_cell_id, alert_type) WHERE status <> 'RESOLVED'
      mirrors the engine's dedup rule.
    - escalation_log: One row per notification sent for an alert layer

Example:
    >>> from coldchain.config.models import PostgresConnectionConfig
    >>> from coldchain.storage.postgres_client import PostgresClient
    >>>
    >>> client = PostgresClient(PostgresConnectionConfig(url="postgresql://..."))
    >>> await client.connect()
    >>> await client.record_alert(alert)
    >>> await client.record_dispatch(report)
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Tuple

import asyncpg
import structlog
from asyncpg import Connection, Pool
from asyncpg.exceptions import (
    ConnectionDoesNotExistError,
    InterfaceError,
    PostgresError,
    TooManyConnectionsError,
)

from coldchain.config.models import PostgresConnectionConfig
from coldchain.interfaces.history import HistoryRecorder
from coldchain.models.alerts import Alert
from coldchain.models.notifications import DispatchReport
from coldchain.models.readings import SensorReading

logger = structlog.get_logger(__name__)


class PostgresClientError(Exception):
    """Base exception for PostgreSQL client errors."""

    pass


class PostgresConnectionException(PostgresClientError):
    """Raised when PostgreSQL connection fails."""

    pass


class PostgresOperationError(PostgresClientError):
    """Raised when a PostgreSQL operation fails."""

    pass


class PostgresClient(HistoryRecorder):
    """
    Async PostgreSQL client implementing the HistoryRecorder.

    Attributes:
        config: PostgreSQL connection configuration.
        _pool: Connection pool for efficient connection reuse.
        _connected: Whether the client is connected.
    """

    # Maximum retries for transient errors
    MAX_RETRIES = 3

    # Retry delay in seconds
    RETRY_DELAY = 0.5

    def __init__(self, config: PostgresConnectionConfig) -> None:
        """
        Initialize the PostgreSQL client.

        Args:
            config: PostgreSQL connection configuration containing URL and pool settings.
        """
        self.config = config
        self._pool: Optional[Pool] = None
        self._connected: bool = False

        logger.info(
            "postgres_client_initialized",
            url=self._sanitize_url(config.url),
            pool_size=config.pool_size,
        )

    def _sanitize_url(self, url: str) -> str:
        """Sanitize URL for logging (remove password)."""
        if "@" in url:
            credentials, host = url.rsplit("@", 1)
            if credentials.count(":") > 1:
                user_part = credentials.rsplit(":", 1)[0]
                return f"{user_part}:***@{host}"
        return url

    @property
    def is_connected(self) -> bool:
        """
        Check if the client is connected to PostgreSQL.

        Returns:
            bool: True if connected, False otherwise.
        """
        return self._connected and self._pool is not None

    async def connect(self) -> None:
        """
        Establish connection pool to PostgreSQL.

        Raises:
            PostgresConnectionException: If connection fails.
        """
        if self._connected:
            logger.warning("postgres_already_connected")
            return

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.config.url,
                min_size=1,
                max_size=self.config.pool_size + self.config.max_overflow,
                command_timeout=self.config.pool_timeout,
                init=self._init_connection,
            )

            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")

            self._connected = True
            logger.info("postgres_connected", url=self._sanitize_url(self.config.url))

        except (PostgresError, OSError, asyncio.TimeoutError) as e:
            self._connected = False
            logger.error(
                "postgres_connection_failed",
                url=self._sanitize_url(self.config.url),
                error=str(e),
            )
            raise PostgresConnectionException(f"Failed to connect to PostgreSQL: {e}") from e

    async def _init_connection(self, conn: Connection) -> None:
        """Use UTC for every session."""
        await conn.execute("SET timezone = 'UTC'")

    async def disconnect(self) -> None:
        """
        Close PostgreSQL connection pool and release resources.

        Safe to call multiple times.
        """
        if self._pool is not None:
            try:
                await self._pool.close()
            except (PostgresError, OSError) as e:
                logger.warning("postgres_close_error", error=str(e))
            finally:
                self._pool = None

        self._connected = False
        logger.info("postgres_disconnected")

    async def ping(self) -> bool:
        """
        Check PostgreSQL connection health.

        Returns:
            bool: True if PostgreSQL responds, False otherwise.
        """
        if not self._pool:
            return False

        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (PostgresError, OSError, InterfaceError) as e:
            logger.warning("postgres_ping_failed", error=str(e))
            return False

    @asynccontextmanager
    async def _acquire_connection(self) -> AsyncIterator[Connection]:
        """
        Acquire a connection from the pool with error handling.

        Raises:
            PostgresConnectionException: If not connected or pool exhausted.
        """
        if not self._connected or self._pool is None:
            raise PostgresConnectionException("PostgreSQL client is not connected")

        try:
            async with self._pool.acquire() as conn:
                yield conn
        except TooManyConnectionsError as e:
            logger.error("postgres_pool_exhausted", error=str(e))
            raise PostgresConnectionException(f"Connection pool exhausted: {e}") from e
        except (ConnectionDoesNotExistError, InterfaceError) as e:
            logger.error("postgres_connection_lost", error=str(e))
            self._connected = False
            raise PostgresConnectionException(f"Connection lost: {e}") from e

    async def _execute_with_retry(
        self,
        operation: str,
        func: Any,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute a database operation with retry logic for transient errors.

        Args:
            operation: Name of the operation for logging.
            func: Async function to execute.

        Returns:
            Any: Result of the function call.

        Raises:
            PostgresOperationError: If all retries fail.
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.MAX_RETRIES):
            try:
                return await func(*args, **kwargs)
            except (PostgresError, ConnectionDoesNotExistError, InterfaceError) as e:
                last_error = e
                if attempt < self.MAX_RETRIES - 1:
                    logger.warning(
                        "postgres_operation_retry",
                        operation=operation,
                        attempt=attempt + 1,
                        max_retries=self.MAX_RETRIES,
                        error=str(e),
                    )
                    await asyncio.sleep(self.RETRY_DELAY * (attempt + 1))
                else:
                    logger.error(
                        "postgres_operation_failed",
                        operation=operation,
                        error=str(e),
                    )

        raise PostgresOperationError(
            f"Operation '{operation}' failed after {self.MAX_RETRIES} attempts: {last_error}"
        )

    # =========================================================================
    # READINGS
    # =========================================================================

    async def record_reading(self, reading: SensorReading, cold_cell_id: str) -> None:
        """
        Append a reading to ``sensor_readings``.

        Duplicate (device, recorded_at) pairs are ignored.

        Raises:
            PostgresConnectionException: If not connected.
            PostgresOperationError: If the operation fails.
        """

        async def _insert() -> None:
            async with self._acquire_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO sensor_readings (
                        device_serial, cold_cell_id, recorded_at,
                        temperature, humidity, door_open, power_on, battery_level
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (device_serial, recorded_at) DO NOTHING
                    """,
                    reading.device_serial,
                    cold_cell_id,
                    reading.recorded_at,
                    reading.temperature,
                    reading.humidity,
                    reading.door_open,
                    reading.power_on,
                    reading.battery_level,
                )

        await self._execute_with_retry("record_reading", _insert)

    # =========================================================================
    # ALERTS
    # =========================================================================

    async def record_alert(self, alert: Alert) -> None:
        """
        Insert or update the archived copy of an alert.

        Raises:
            PostgresConnectionException: If not connected.
            PostgresOperationError: If the operation fails.
        """
        start_time = time.monotonic()

        async def _upsert() -> None:
            async with self._acquire_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO alerts (
                        alert_id, cold_cell_id, customer_id, alert_type, status, layer,
                        time_slot, triggered_at, last_triggered_at, value, threshold,
                        last_value, acknowledged_at, acknowledged_by, layer2_at, layer3_at,
                        condition_cleared, condition_cleared_at, notified_layer,
                        resolved_at, resolution_reason, resolved_by
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                        $12, $13, $14, $15, $16, $17, $18, $19, $20, $21, $22
                    )
                    ON CONFLICT (alert_id) DO UPDATE SET
                        status = EXCLUDED.status,
                        layer = GREATEST(alerts.layer, EXCLUDED.layer),
                        last_triggered_at = EXCLUDED.last_triggered_at,
                        last_value = EXCLUDED.last_value,
                        acknowledged_at = COALESCE(alerts.acknowledged_at, EXCLUDED.acknowledged_at),
                        acknowledged_by = COALESCE(alerts.acknowledged_by, EXCLUDED.acknowledged_by),
                        layer2_at = COALESCE(alerts.layer2_at, EXCLUDED.layer2_at),
                        layer3_at = COALESCE(alerts.layer3_at, EXCLUDED.layer3_at),
                        condition_cleared = EXCLUDED.condition_cleared,
                        condition_cleared_at = EXCLUDED.condition_cleared_at,
                        notified_layer = GREATEST(alerts.notified_layer, EXCLUDED.notified_layer),
                        resolved_at = EXCLUDED.resolved_at,
                        resolution_reason = EXCLUDED.resolution_reason,
                        resolved_by = EXCLUDED.resolved_by,
                        updated_at = NOW()
                    WHERE alerts.status <> 'RESOLVED'
                    """,
                    alert.alert_id,
                    alert.cold_cell_id,
                    alert.customer_id,
                    alert.alert_type.value,
                    alert.status.value,
                    int(alert.layer),
                    alert.time_slot.value,
                    alert.triggered_at,
                    alert.last_triggered_at,
                    alert.value,
                    alert.threshold,
                    alert.last_value,
                    alert.acknowledged_at,
                    alert.acknowledged_by,
                    alert.layer2_at,
                    alert.layer3_at,
                    alert.condition_cleared,
                    alert.condition_cleared_at,
                    alert.notified_layer,
                    alert.resolved_at,
                    alert.resolution_reason,
                    alert.resolved_by,
                )

        await self._execute_with_retry("record_alert", _upsert)

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.debug(
            "alert_recorded",
            alert_id=alert.alert_id,
            status=alert.status.value,
            layer=int(alert.layer),
            elapsed_ms=round(elapsed_ms, 2),
        )

    # =========================================================================
    # ESCALATION LOG
    # =========================================================================

    async def record_dispatch(self, report: DispatchReport) -> None:
        """
        Append one ``escalation_log`` row per delivery outcome of a dispatch.

        Raises:
            PostgresConnectionException: If not connected.
            PostgresOperationError: If the operation fails.
        """
        if not report.outcomes:
            return

        rows: List[Tuple[Any, ...]] = [
            (
                report.alert_id,
                int(report.layer),
                outcome.channel.value,
                outcome.contact,
                outcome.status.value,
                outcome.detail,
                outcome.sent_at,
            )
            for outcome in report.outcomes
        ]

        async def _insert() -> None:
            async with self._acquire_connection() as conn:
                await conn.executemany(
                    """
                    INSERT INTO escalation_log (
                        alert_id, layer, channel, contact_name, status, detail, sent_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    rows,
                )

        await self._execute_with_retry("record_dispatch", _insert)
        logger.debug(
            "dispatch_recorded",
            alert_id=report.alert_id,
            layer=int(report.layer),
            rows=len(rows),
        )

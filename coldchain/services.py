"""
Shared service infrastructure.

This module provides the base class the deployable services subclass, and
the structlog configuration every process uses.

ServiceRunner lifecycle:
    1. Load configuration from ``config_path`` (ConfigLoader)
    2. Build and connect the live state store and, when enabled, the
       PostgreSQL history recorder
    3. Seed assets from config/assets.yaml
    4. ``_initialize()`` (service-specific setup)
    5. ``_run()`` until SIGINT/SIGTERM sets ``shutdown_event``
    6. ``_cleanup()`` then disconnect storage

Example:
    >>> class MyService(ServiceRunner):
    ...     @property
    ...     def service_name(self) -> str:
    ...         return "my-service"
    ...     async def _initialize(self) -> None: ...
    ...     async def _run(self) -> None:
    ...         await self.shutdown_event.wait()
    >>> asyncio.run(MyService("config").run())
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from coldchain.config.loader import ConfigLoader
from coldchain.config.models import AppConfig, AssetsConfig, LogFormat
from coldchain.interfaces.state_store import StateStore
from coldchain.storage import PostgresClient, create_state_store

logger = structlog.get_logger(__name__)


def setup_logging(level: str = "INFO", fmt: LogFormat = LogFormat.JSON) -> None:
    """
    Configure structlog over the standard library logger.

    Args:
        level: Minimum log level name.
        fmt: JSON for machines, TEXT for a console renderer.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
        force=True,
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if fmt == LogFormat.TEXT
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


async def seed_assets(store: StateStore, assets: AssetsConfig) -> int:
    """
    Write the configured asset seed into a store.

    Existing devices keep their liveness state; only unknown devices are
    inserted.

    Returns:
        int: Number of records written.
    """
    written = 0
    for escalation in assets.customers:
        await store.save_escalation_config(escalation)
        written += 1
    for cell in assets.cold_cells:
        await store.save_cold_cell(cell)
        written += 1
    for device in assets.devices:
        if await store.get_device(device.serial) is None:
            await store.save_device(device)
            written += 1

    if written:
        logger.info(
            "assets_seeded",
            customers=len(assets.customers),
            cold_cells=len(assets.cold_cells),
            devices=len(assets.devices),
        )
    return written


class ServiceRunner(ABC):
    """
    Base class for long-running services.

    Attributes:
        config_path: Directory holding the YAML configuration.
        config: Loaded configuration (after ``run`` starts).
        store: Connected live state store.
        postgres_client: History recorder, when history is enabled.
        shutdown_event: Set when the service should stop.
        logger: Logger bound to the service name.
    """

    def __init__(self, config_path: str = "config") -> None:
        self.config_path = config_path
        self.config: Optional[AppConfig] = None
        self.store: Optional[StateStore] = None
        self.postgres_client: Optional[PostgresClient] = None
        self.shutdown_event = asyncio.Event()
        self.logger = structlog.get_logger(self.service_name)

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Service name used in logs."""

    @abstractmethod
    async def _initialize(self) -> None:
        """Service-specific setup, after storage is connected."""

    @abstractmethod
    async def _run(self) -> None:
        """Main loop; return when ``shutdown_event`` is set."""

    async def _cleanup(self) -> None:
        """Service-specific cleanup (no-op by default)."""

    def request_shutdown(self) -> None:
        """Ask the service to stop."""
        if not self.shutdown_event.is_set():
            self.logger.info("shutdown_requested")
            self.shutdown_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform/loop.
                pass

    async def _connect_storage(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration not loaded")

        self.store = create_state_store(self.config)
        await self.store.connect()

        if self.config.storage.history_enabled:
            self.postgres_client = PostgresClient(self.config.postgres)
            await self.postgres_client.connect()

        await seed_assets(self.store, self.config.assets)

    async def _disconnect_storage(self) -> None:
        if self.postgres_client is not None:
            await self.postgres_client.disconnect()
        if self.store is not None:
            await self.store.disconnect()

    async def run(self) -> None:
        """Load config, connect, run until shutdown, then clean up."""
        self.config = ConfigLoader(self.config_path).load()
        setup_logging(self.config.log_level.value, self.config.logging.format)
        self.logger.info(
            "service_starting",
            service=self.service_name,
            storage=self.config.storage.backend.value,
            history_enabled=self.config.storage.history_enabled,
        )

        self._install_signal_handlers()
        try:
            await self._connect_storage()
            await self._initialize()
            self.logger.info("service_started", service=self.service_name)
            await self._run()
        finally:
            try:
                await self._cleanup()
            finally:
                await self._disconnect_storage()
                self.logger.info("service_stopped", service=self.service_name)

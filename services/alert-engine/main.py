"""
Alert Engine Service entry point.

This service is responsible for:
- Running the escalation scheduler every scan_interval_seconds
- Sweeping for silent devices and expired door timers every sweep_interval_seconds
- Dispatching layer notifications for promoted alerts
- Relaying cold-cell changes to gateway processes through Redis pub/sub

Readings and user actions arrive through the gateway; both processes share
the Redis state store.

Usage:
    python services/alert-engine/main.py

Environment Variables:
    REDIS_URL: Redis connection URL (default: redis://localhost:6379)
    DATABASE_URL: PostgreSQL connection URL
    STORAGE_BACKEND: memory or redis (default: from config/engine.yaml)
    LOG_LEVEL: Logging level (default: INFO)
    CONFIG_PATH: Path to config directory (default: config)
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

import structlog

# Add project root to path for imports
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from coldchain.engine.factory import EngineComponents, create_engine_components
from coldchain.services import ServiceRunner, setup_logging
from coldchain.storage.redis_client import RedisStateStore

logger = structlog.get_logger(__name__)


class AlertEngineService(ServiceRunner):
    """
    Background escalation and sweep service.

    Attributes:
        components: The wired engine.
    """

    def __init__(self, config_path: str = "config") -> None:
        """Initialize the alert engine service."""
        super().__init__(config_path)
        self.components: Optional[EngineComponents] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def service_name(self) -> str:
        """Return service name."""
        return "alert-engine"

    async def _initialize(self) -> None:
        """Wire the engine around the connected store."""
        if self.config is None or self.store is None:
            raise RuntimeError("Service not properly initialized")

        relay = self.store if isinstance(self.store, RedisStateStore) else None
        self.components = create_engine_components(
            self.config,
            self.store,
            history=self.postgres_client,
            relay=relay,
        )

        self.logger.info(
            "engine_initialized",
            scan_interval_seconds=self.config.engine.scan_interval_seconds,
            sweep_interval_seconds=self.config.engine.sweep_interval_seconds,
            channels=[kind.value for kind in self.components.dispatcher.channels],
        )

    async def _run(self) -> None:
        """Run the scheduler and sweeper until shutdown."""
        if self.components is None:
            raise RuntimeError("Service not properly initialized")

        self._tasks = [
            asyncio.create_task(self.components.scheduler.run(self.shutdown_event)),
            asyncio.create_task(self.components.ingestor.run(self.shutdown_event)),
        ]

        await self.shutdown_event.wait()

        for task in self._tasks:
            try:
                await asyncio.wait_for(task, timeout=30)
            except asyncio.TimeoutError:
                task.cancel()
                self.logger.warning("engine_task_cancelled", task=task.get_name())

    async def _cleanup(self) -> None:
        """Wait for in-flight notifications."""
        if self.components is not None:
            pending = self.components.manager.pending_dispatches
            if pending:
                self.logger.info("draining_dispatches", pending=pending)
            await self.components.manager.drain()
            await self.components.dispatcher.close()


async def main() -> None:
    """Main entry point."""
    # Set up initial logging
    setup_logging()

    config_path = os.getenv("CONFIG_PATH", "config")

    logger.info(
        "alert_engine_service_starting",
        version="0.1.0",
        config_path=config_path,
    )

    service = AlertEngineService(config_path=config_path)

    try:
        await service.run()
    except Exception as e:
        logger.error("service_failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())

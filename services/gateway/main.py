"""
Gateway service entry point.

This module initializes and runs the FastAPI cold-chain gateway using Uvicorn.

The gateway:
- Runs on 0.0.0.0:8060 by default
- Accepts device readings and heartbeats
- Provides REST API for alerts, settings, cold-cell state and health
- Provides a WebSocket per cold cell for live state

Usage:
    python -m services.gateway.main

    Or with uvicorn directly:
    uvicorn services.gateway.main:app --host 0.0.0.0 --port 8060

Environment Variables:
    CONFIG_PATH: Path to config directory (default: config)
    REDIS_URL: Redis connection URL (default: redis://localhost:6379)
    DATABASE_URL: PostgreSQL connection URL
    STORAGE_BACKEND: memory or redis (default: from config/engine.yaml)
    LOG_LEVEL: Logging level (default: INFO)
    GATEWAY_PORT: Port to run the gateway on (default: 8060)
    GATEWAY_HOST: Host to bind to (default: 0.0.0.0)
"""

import os
import sys
from pathlib import Path

import structlog
import uvicorn

# Add project root to path for imports
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from coldchain.config.models import LogFormat
from coldchain.services import setup_logging


def main() -> None:
    """
    Main entry point for the gateway service.

    Configures logging and starts the Uvicorn server with the FastAPI application.
    """
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_format = LogFormat(os.getenv("LOG_FORMAT", LogFormat.JSON.value).lower())
    setup_logging(log_level, log_format)

    logger = structlog.get_logger(__name__)
    logger.info(
        "gateway_service_starting",
        version="0.1.0",
        python_version=sys.version,
    )

    host = os.getenv("GATEWAY_HOST", "0.0.0.0")
    port = int(os.getenv("GATEWAY_PORT", "8060"))

    uvicorn.run(
        "services.gateway.app:app",
        host=host,
        port=port,
        log_level=log_level.lower(),
        reload=False,
        workers=1,
        access_log=False,
    )


# Export the app for uvicorn direct usage
from services.gateway.app import app

if __name__ == "__main__":
    main()

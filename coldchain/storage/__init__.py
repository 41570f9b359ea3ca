"""
Storage backends for the cold-chain engine.

This module provides the live state stores (in-memory and Redis) behind the
StateStore interface, and the PostgreSQL history recorder.

Components:
    memory: Single-process InMemoryStateStore
    redis_client: Shared RedisStateStore with WATCH/MULTI transactions and pub/sub
    postgres_client: Async PostgreSQL client for reading and alert history

Example:
    >>> from coldchain.storage import create_state_store
    >>> store = create_state_store(config)
    >>> await store.connect()
"""

from coldchain.config.models import AppConfig, StorageBackend
from coldchain.interfaces.state_store import StateStore
from coldchain.storage.memory import InMemoryStateStore
from coldchain.storage.postgres_client import (
    PostgresClient,
    PostgresClientError,
    PostgresConnectionException,
    PostgresOperationError,
)
from coldchain.storage.redis_client import (
    RedisClientError,
    RedisConnectionException,
    RedisOperationError,
    RedisStateStore,
)


def create_state_store(config: AppConfig) -> StateStore:
    """
    Build the live state store selected by ``config.storage.backend``.

    The store is returned unconnected; call ``connect()`` before use.

    Args:
        config: Application configuration.

    Returns:
        StateStore: Memory or Redis store.
    """
    if config.storage.backend == StorageBackend.REDIS:
        return RedisStateStore(config.redis)
    return InMemoryStateStore()


__all__: list[str] = [
    "create_state_store",
    # Memory
    "InMemoryStateStore",
    # Redis
    "RedisStateStore",
    "RedisClientError",
    "RedisConnectionException",
    "RedisOperationError",
    # PostgreSQL
    "PostgresClient",
    "PostgresClientError",
    "PostgresConnectionException",
    "PostgresOperationError",
]

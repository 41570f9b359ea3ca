"""
Abstract interfaces for the cold-chain engine.

These interfaces are the persistence seams consumed by the engine. The
engine components depend only on them, never on a concrete backend.

Example:
    >>> from coldchain.interfaces import StateStore
    >>> class MyStore(StateStore):
    ...     async def get_cold_cell(self, cold_cell_id):
    ...         ...

Modules:
    state_store: StateStore ABC for live engine state
    history: HistoryRecorder ABC for the reading log and alert archive
"""

from coldchain.interfaces.history import HistoryRecorder
from coldchain.interfaces.state_store import (
    AlertMutation,
    DeviceMutation,
    DoorMutation,
    StateStore,
    matches_filters,
    sort_alerts,
)

__all__: list[str] = [
    "AlertMutation",
    "DeviceMutation",
    "DoorMutation",
    "HistoryRecorder",
    "StateStore",
    "matches_filters",
    "sort_alerts",
]

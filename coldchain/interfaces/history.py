"""
Abstract base class for history recorders.

A history recorder keeps the append-only reading log, the alert archive
and the escalation log used for reporting. It is a best-effort side
effect: the engine logs and continues when a recorder call fails.
"""

from abc import ABC, abstractmethod

from coldchain.models.alerts import Alert
from coldchain.models.notifications import DispatchReport
from coldchain.models.readings import SensorReading


class HistoryRecorder(ABC):
    """Append-only sink for readings, alert snapshots and dispatches."""

    @abstractmethod
    async def record_reading(self, reading: SensorReading, cold_cell_id: str) -> None:
        """Append a reading to the history."""

    @abstractmethod
    async def record_alert(self, alert: Alert) -> None:
        """Insert or update the archived copy of an alert."""

    @abstractmethod
    async def record_dispatch(self, report: DispatchReport) -> None:
        """Append one row per delivery outcome to the escalation log."""

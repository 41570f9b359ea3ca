"""
Abstract base class for live state stores.

The StateStore is the single source of truth for engine state: assets the
engine reads, device liveness, door state and alerts. Notification dispatch
and live broadcast are downstream side effects of writes to it.

Concurrency contract:
    - ``update_*`` methods are atomic read-modify-write operations. The
      ``mutate`` callable receives the currently stored value and returns
      the replacement, or None to leave it untouched. Implementations may
      call ``mutate`` more than once (optimistic retry), so it must be pure.
      Exceptions raised by ``mutate`` propagate to the caller.
    - ``create_alert`` enforces at most one non-resolved alert per
      (cold cell, alert type). Storing a RESOLVED alert through
      ``update_alert`` releases that slot.

Example:
    >>> store = InMemoryStateStore()
    >>> created = await store.create_alert(alert)
    >>> promoted = await store.update_alert(
    ...     alert.alert_id,
    ...     lambda current: current.promote(AlertLayer.LAYER_2, now)
    ...     if current.layer == AlertLayer.LAYER_1 else None,
    ... )
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional

from coldchain.models.alerts import Alert, AlertStatus, AlertType
from coldchain.models.assets import ColdCell, Device, EscalationConfig
from coldchain.models.door import DoorState


AlertMutation = Callable[[Alert], Optional[Alert]]
DeviceMutation = Callable[[Device], Optional[Device]]
DoorMutation = Callable[[DoorState], Optional[DoorState]]


class StateStore(ABC):
    """
    Abstract live state store.

    Implementations:
        InMemoryStateStore: Single-process store guarded by an asyncio.Lock.
        RedisStateStore: Shared store using WATCH/MULTI transactions.
    """

    async def connect(self) -> None:
        """Open underlying connections (no-op by default)."""

    async def disconnect(self) -> None:
        """Release underlying connections (no-op by default)."""

    async def ping(self) -> bool:
        """Check the backend responds (always True by default)."""
        return True

    # =========================================================================
    # ASSETS
    # =========================================================================

    @abstractmethod
    async def get_cold_cell(self, cold_cell_id: str) -> Optional[ColdCell]:
        """Return a cold cell or None."""

    @abstractmethod
    async def list_cold_cells(self, customer_id: Optional[str] = None) -> List[ColdCell]:
        """Return cold cells, optionally restricted to one customer."""

    @abstractmethod
    async def save_cold_cell(self, cell: ColdCell) -> None:
        """Insert or replace a cold cell."""

    @abstractmethod
    async def get_escalation_config(self, customer_id: str) -> Optional[EscalationConfig]:
        """Return a customer's escalation configuration or None."""

    @abstractmethod
    async def save_escalation_config(self, config: EscalationConfig) -> None:
        """Insert or replace a customer's escalation configuration."""

    # =========================================================================
    # DEVICES
    # =========================================================================

    @abstractmethod
    async def get_device(self, serial: str) -> Optional[Device]:
        """Return a device or None."""

    @abstractmethod
    async def list_devices(self) -> List[Device]:
        """Return all devices."""

    @abstractmethod
    async def save_device(self, device: Device) -> None:
        """Insert or replace a device."""

    @abstractmethod
    async def update_device(self, serial: str, mutate: DeviceMutation) -> Optional[Device]:
        """
        Atomically replace a device.

        Returns:
            Optional[Device]: The stored replacement, or None if ``mutate`` declined.

        Raises:
            NotFoundError: If the device does not exist.
        """

    # =========================================================================
    # DOOR STATE
    # =========================================================================

    @abstractmethod
    async def get_door_state(self, cold_cell_id: str) -> DoorState:
        """Return the door state, or an empty state if none was recorded."""

    @abstractmethod
    async def update_door_state(
        self,
        cold_cell_id: str,
        mutate: DoorMutation,
    ) -> Optional[DoorState]:
        """
        Atomically replace a cold cell's door state.

        Returns:
            Optional[DoorState]: The stored replacement, or None if ``mutate`` declined.
        """

    @abstractmethod
    async def list_open_doors(self) -> List[DoorState]:
        """Return door states whose position is OPEN."""

    # =========================================================================
    # ALERTS
    # =========================================================================

    @abstractmethod
    async def create_alert(self, alert: Alert) -> bool:
        """
        Store a new alert unless its (cold cell, type) slot is taken.

        Returns:
            bool: True if stored, False if an open alert already exists.
        """

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        """Return an alert or None."""

    @abstractmethod
    async def find_open_alert(
        self,
        cold_cell_id: str,
        alert_type: AlertType,
    ) -> Optional[Alert]:
        """Return the non-resolved alert occupying a (cold cell, type) slot."""

    @abstractmethod
    async def list_alerts(
        self,
        cold_cell_ids: Optional[Iterable[str]] = None,
        status: Optional[AlertStatus] = None,
        alert_type: Optional[AlertType] = None,
        open_only: bool = False,
    ) -> List[Alert]:
        """Return alerts matching the filters, open first then newest first."""

    @abstractmethod
    async def list_open_alerts(self) -> List[Alert]:
        """Return all non-resolved alerts."""

    @abstractmethod
    async def update_alert(self, alert_id: str, mutate: AlertMutation) -> Optional[Alert]:
        """
        Atomically replace an alert.

        Returns:
            Optional[Alert]: The stored replacement, or None if ``mutate`` declined.

        Raises:
            NotFoundError: If the alert does not exist.
        """


def sort_alerts(alerts: Iterable[Alert]) -> List[Alert]:
    """
    Order alerts for listing: open before resolved, newest first.

    Args:
        alerts: Alerts to order.

    Returns:
        List[Alert]: Ordered alerts.
    """
    return sorted(
        alerts,
        key=lambda a: (not a.is_open, -a.triggered_at.timestamp()),
    )


def matches_filters(
    alert: Alert,
    cold_cell_ids: Optional[Iterable[str]],
    status: Optional[AlertStatus],
    alert_type: Optional[AlertType],
    open_only: bool,
) -> bool:
    """Shared filter predicate for ``list_alerts`` implementations."""
    if cold_cell_ids is not None and alert.cold_cell_id not in set(cold_cell_ids):
        return False
    if status is not None and alert.status != status:
        return False
    if alert_type is not None and alert.alert_type != alert_type:
        return False
    if open_only and not alert.is_open:
        return False
    return True

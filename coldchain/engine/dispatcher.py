"""
Notification dispatcher routing alerts to channels by escalation layer.

Channel selection is a table lookup from layer to an ordered channel list;
contacts widen as the layer climbs. Every (channel, contact) pair yields one
DeliveryOutcome. Failures are logged and reported, never raised: a failed
dispatch leaves the alert's layer untouched and the scheduler retries it on
its next tick.

Layer table:
    LAYER_1: push, email   -> primary, technician
    LAYER_2: sms, email, push -> primary, first backup, technician
    LAYER_3: voice, sms    -> primary, every backup, technician

Example:
    >>> dispatcher = create_dispatcher(config.notifications)
    >>> report = await dispatcher.notify(alert, cell, escalation_config)
    >>> report.all_delivered
    True
"""

import asyncio
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field

from coldchain.config.models import EngineConfig, NotificationsConfig
from coldchain.errors import TransientDeliveryError
from coldchain.models.alerts import Alert, AlertLayer
from coldchain.models.assets import ColdCell, Contact, EscalationConfig
from coldchain.models.notifications import (
    ChannelKind,
    DeliveryOutcome,
    DispatchReport,
)

logger = structlog.get_logger(__name__)


LAYER_CHANNELS: Dict[AlertLayer, Tuple[ChannelKind, ...]] = {
    AlertLayer.LAYER_1: (ChannelKind.PUSH, ChannelKind.EMAIL),
    AlertLayer.LAYER_2: (ChannelKind.SMS, ChannelKind.EMAIL, ChannelKind.PUSH),
    AlertLayer.LAYER_3: (ChannelKind.VOICE, ChannelKind.SMS),
}


# =============================================================================
# MESSAGES
# =============================================================================


class AlertMessage(BaseModel):
    """Rendered notification content."""

    model_config = {"frozen": True, "extra": "forbid"}

    alert_id: str = Field(..., description="Alert identifier")
    cold_cell_id: str = Field(..., description="Cold cell identifier")
    layer: AlertLayer = Field(..., description="Layer being notified")
    subject: str = Field(..., description="Short subject line")
    body: str = Field(..., description="Full text")


class NotificationChannel(Protocol):
    """
    Protocol for notification channels.

    ``send`` returns SKIPPED when the contact lacks an address for the
    channel and raises TransientDeliveryError when the provider fails.
    """

    kind: ChannelKind

    async def send(
        self,
        contact: Contact,
        layer: AlertLayer,
        message: AlertMessage,
    ) -> DeliveryOutcome:
        ...


# =============================================================================
# DISPATCHER
# =============================================================================


class NotificationDispatcher:
    """
    Fans an alert out to the channels and contacts of a layer.

    Attributes:
        channels: Enabled channels keyed by kind.
        timeout_seconds: Upper bound for each send.
    """

    def __init__(
        self,
        channels: Dict[ChannelKind, NotificationChannel],
        timeout_seconds: float = 10.0,
    ) -> None:
        self.channels = channels
        self.timeout_seconds = timeout_seconds

        logger.info(
            "notification_dispatcher_initialized",
            available_channels=[kind.value for kind in channels],
            timeout_seconds=timeout_seconds,
        )

    @staticmethod
    def contacts_for_layer(config: EscalationConfig, layer: AlertLayer) -> List[Contact]:
        """
        Contacts notified at ``layer``.

        Args:
            config: The customer's escalation configuration.
            layer: Layer being notified.

        Returns:
            List[Contact]: Primary first, then backups, then the technician.
        """
        contacts = [config.primary_contact]
        if layer == AlertLayer.LAYER_2:
            contacts.extend(config.backup_contacts[:1])
        elif layer == AlertLayer.LAYER_3:
            contacts.extend(config.backup_contacts)
        if config.technician_contact is not None:
            contacts.append(config.technician_contact)
        return contacts

    @staticmethod
    def build_message(
        alert: Alert,
        cell: ColdCell,
        config: EscalationConfig,
        layer: Optional[AlertLayer] = None,
    ) -> AlertMessage:
        """
        Render the notification text for an alert.

        The trigger time is shown in the customer's timezone.
        """
        layer = layer or alert.layer
        label = alert.alert_type.label
        local = config.local_time(alert.triggered_at)

        parts = [f"{label} in {cell.display_name}."]
        if alert.value is not None:
            reading = f"Value {alert.value:g}"
            if alert.threshold is not None:
                reading += f" (threshold {alert.threshold:g})"
            parts.append(reading + ".")
        parts.append(f"Triggered at {local:%Y-%m-%d %H:%M} ({config.timezone}).")
        parts.append(f"Escalation layer {int(layer)}.")

        return AlertMessage(
            alert_id=alert.alert_id,
            cold_cell_id=alert.cold_cell_id,
            layer=layer,
            subject=f"[Layer {int(layer)}] {label}: {cell.display_name}",
            body=" ".join(parts),
        )

    async def dispatch(
        self,
        alert: Alert,
        layer: AlertLayer,
        contacts: Sequence[Contact],
        message: AlertMessage,
    ) -> DispatchReport:
        """
        Send ``message`` to every contact over every channel of ``layer``.

        Sends run concurrently; each is bounded by ``timeout_seconds``.

        Returns:
            DispatchReport: One outcome per (channel, contact).
        """
        sends = []
        for kind in LAYER_CHANNELS[layer]:
            for contact in contacts:
                sends.append(self._send_one(kind, contact, layer, message))

        outcomes = list(await asyncio.gather(*sends))
        report = DispatchReport(alert_id=alert.alert_id, layer=layer, outcomes=outcomes)

        log = logger.info if report.all_delivered else logger.warning
        log(
            "alert_dispatch_complete",
            alert_id=alert.alert_id,
            layer=int(layer),
            delivered=report.delivered_count,
            failed=report.failed_count,
            total=len(outcomes),
        )
        return report

    async def notify(
        self,
        alert: Alert,
        cell: ColdCell,
        config: EscalationConfig,
        layer: Optional[AlertLayer] = None,
    ) -> DispatchReport:
        """Resolve contacts and message for ``layer`` and dispatch."""
        layer = layer or alert.layer
        contacts = self.contacts_for_layer(config, layer)
        message = self.build_message(alert, cell, config, layer)
        return await self.dispatch(alert, layer, contacts, message)

    async def close(self) -> None:
        """Release channel resources such as HTTP sessions."""
        for channel in self.channels.values():
            close = getattr(channel, "close", None)
            if close is not None:
                await close()

    async def _send_one(
        self,
        kind: ChannelKind,
        contact: Contact,
        layer: AlertLayer,
        message: AlertMessage,
    ) -> DeliveryOutcome:
        channel = self.channels.get(kind)
        if channel is None:
            return DeliveryOutcome.skipped(kind, contact, "channel disabled")

        try:
            return await asyncio.wait_for(
                channel.send(contact, layer, message),
                timeout=self.timeout_seconds,
            )
        except TransientDeliveryError as e:
            logger.warning(
                "channel_dispatch_failed",
                channel=kind.value,
                contact=contact.name,
                alert_id=message.alert_id,
                error=e.message,
            )
            return DeliveryOutcome.failed(kind, contact, e.message)
        except asyncio.TimeoutError:
            logger.warning(
                "channel_dispatch_timeout",
                channel=kind.value,
                contact=contact.name,
                alert_id=message.alert_id,
                timeout_seconds=self.timeout_seconds,
            )
            return DeliveryOutcome.failed(kind, contact, "timeout")
        except Exception as e:
            logger.error(
                "channel_dispatch_error",
                channel=kind.value,
                contact=contact.name,
                alert_id=message.alert_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return DeliveryOutcome.failed(kind, contact, str(e))


def create_dispatcher(
    notifications: NotificationsConfig,
    engine: Optional[EngineConfig] = None,
) -> NotificationDispatcher:
    """
    Factory function to create a NotificationDispatcher from configuration.

    Args:
        notifications: Channel configuration.
        engine: Engine configuration for the send timeout.

    Returns:
        NotificationDispatcher: Dispatcher over the enabled channels.
    """
    from coldchain.engine.channels import create_channel

    engine = engine or EngineConfig()
    channels: Dict[ChannelKind, NotificationChannel] = {}
    for name in notifications.get_enabled_channels():
        kind = ChannelKind(name)
        channels[kind] = create_channel(kind, notifications.channels[name])

    return NotificationDispatcher(channels, timeout_seconds=engine.dispatch_timeout_seconds)

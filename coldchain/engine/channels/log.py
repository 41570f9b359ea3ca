"""
Log notification channel.

Writes every notification as a structlog event. Used in development and
wherever a provider gateway is not configured.
"""

import structlog

from coldchain.engine.dispatcher import AlertMessage, ChannelKind, DeliveryOutcome
from coldchain.models.alerts import AlertLayer
from coldchain.models.assets import Contact

logger = structlog.get_logger(__name__)


class LogChannel:
    """Channel that records notifications in the log instead of sending them."""

    def __init__(self, kind: ChannelKind) -> None:
        self.kind = kind

    async def send(
        self,
        contact: Contact,
        layer: AlertLayer,
        message: AlertMessage,
    ) -> DeliveryOutcome:
        address = self.kind.address_of(contact)
        if not address:
            return DeliveryOutcome.skipped(self.kind, contact, f"no {self.kind.value} address")

        logger.info(
            "notification_sent",
            channel=self.kind.value,
            to=address,
            contact=contact.name,
            layer=int(layer),
            alert_id=message.alert_id,
            subject=message.subject,
            body=message.body,
        )
        return DeliveryOutcome.delivered(self.kind, contact)

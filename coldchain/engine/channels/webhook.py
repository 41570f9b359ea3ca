"""
HTTP webhook notification channel.

POSTs a JSON payload to a provider gateway (an e-mail relay, an SMS or
voice provider bridge, a push service). Any non-2xx answer, client error or
timeout is raised as TransientDeliveryError so that the scheduler retries
on its next tick.

Payload:
    {
        "channel": "sms",
        "to": "+32470000000",
        "contact": "Marie Dupont",
        "layer": 2,
        "alertId": "...",
        "coldCellId": "...",
        "subject": "...",
        "body": "..."
    }
"""

import asyncio
from typing import Dict, Optional

import aiohttp
import structlog

from coldchain.engine.dispatcher import AlertMessage, ChannelKind, DeliveryOutcome
from coldchain.errors import TransientDeliveryError
from coldchain.models.alerts import AlertLayer
from coldchain.models.assets import Contact

logger = structlog.get_logger(__name__)


class WebhookChannel:
    """
    Channel backed by an HTTP provider gateway.

    Attributes:
        kind: Channel kind served by this gateway.
        url: Gateway endpoint.
        headers: Extra request headers (API keys and the like).
        timeout_seconds: Request timeout.
    """

    def __init__(
        self,
        kind: ChannelKind,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.kind = kind
        self.url = url
        self.headers = headers or {}
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

        logger.info("webhook_channel_initialized", channel=kind.value, url=url)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure aiohttp session is created."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": "coldchain-alerts/1.0", **self.headers},
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def send(
        self,
        contact: Contact,
        layer: AlertLayer,
        message: AlertMessage,
    ) -> DeliveryOutcome:
        address = self.kind.address_of(contact)
        if not address:
            return DeliveryOutcome.skipped(self.kind, contact, f"no {self.kind.value} address")

        payload = {
            "channel": self.kind.value,
            "to": address,
            "contact": contact.name,
            "layer": int(layer),
            "alertId": message.alert_id,
            "coldCellId": message.cold_cell_id,
            "subject": message.subject,
            "body": message.body,
        }

        session = await self._ensure_session()
        try:
            async with session.post(self.url, json=payload) as response:
                if response.status >= 300:
                    error_text = await response.text()
                    raise TransientDeliveryError(
                        self.kind.value,
                        f"gateway answered {response.status}: {error_text[:200]}",
                    )
                reference = response.headers.get("X-Message-Id")
        except aiohttp.ClientError as e:
            raise TransientDeliveryError(self.kind.value, f"gateway request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransientDeliveryError(
                self.kind.value,
                f"gateway timeout after {self.timeout_seconds}s",
            ) from e

        logger.debug(
            "webhook_notification_sent",
            channel=self.kind.value,
            contact=contact.name,
            alert_id=message.alert_id,
            reference=reference,
        )
        return DeliveryOutcome.delivered(self.kind, contact, reference)

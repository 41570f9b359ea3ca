"""
Notification channel implementations.

Channels:
    LogChannel: Writes notifications as structlog events
    WebhookChannel: POSTs notifications to an HTTP provider gateway

Example:
    >>> channel = create_channel(ChannelKind.SMS, ChannelConfig(provider="webhook", url="..."))
    >>> outcome = await channel.send(contact, AlertLayer.LAYER_2, message)
"""

from coldchain.config.models import ChannelConfig, ChannelProvider
from coldchain.engine.channels.log import LogChannel
from coldchain.engine.channels.webhook import WebhookChannel
from coldchain.engine.dispatcher import ChannelKind, NotificationChannel


def create_channel(kind: ChannelKind, config: ChannelConfig) -> NotificationChannel:
    """
    Build the channel implementation selected by ``config.provider``.

    Args:
        kind: Channel kind.
        config: Channel configuration.

    Returns:
        NotificationChannel: Log or webhook channel.
    """
    if config.provider == ChannelProvider.WEBHOOK:
        return WebhookChannel(kind, url=config.url or "", headers=dict(config.headers))
    return LogChannel(kind)


__all__: list[str] = [
    "LogChannel",
    "WebhookChannel",
    "create_channel",
]

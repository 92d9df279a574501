"""Messaging channels a bot reply can be delivered through."""
from channels.base import ChannelError, LoggingChannel, MessagingChannel
from channels.whatsapp_adapter import WhatsAppGatewayChannel


def create_channel(config) -> MessagingChannel:
    """Build the configured channel from a ``ChannelConfig``."""
    if config.type == "whatsapp" and config.base_url:
        return WhatsAppGatewayChannel(
            base_url=config.base_url,
            api_key=config.api_key,
            instance_name=config.instance_name,
            timeout=config.timeout,
        )
    return LoggingChannel(instance_name=config.instance_name)


__all__ = [
    "ChannelError", "MessagingChannel", "LoggingChannel",
    "WhatsAppGatewayChannel", "create_channel",
]

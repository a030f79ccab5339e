"""Outbound messaging gateways."""
from channels.base import (
    ChannelError, ConfigurationError, ProviderError,
    InteractiveOption, MessageDeduplicator, OutboundGateway, SendReceipt,
)
from channels.whatsapp_adapter import WhatsAppCloudGateway

__all__ = [
    "ChannelError", "ConfigurationError", "ProviderError",
    "InteractiveOption", "MessageDeduplicator", "OutboundGateway", "SendReceipt",
    "WhatsAppCloudGateway",
]

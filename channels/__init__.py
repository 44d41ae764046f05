"""Outbound messaging clients."""
from channels.base import ChannelError, MessagingClient, NotConnectedError, TransportError
from channels.whatsapp_client import WhatsAppBridgeClient

__all__ = [
    "ChannelError", "MessagingClient", "NotConnectedError", "TransportError",
    "WhatsAppBridgeClient",
]

"""
Messaging client interface — the outbound side the queue delivers through.

Provides:
- ChannelError: structured error hierarchy for transport failures
- MessagingClient: abstract client with private / group send operations

Connection lifecycle (pairing, reconnection, session persistence) belongs to
the concrete client; the queue only sees send success or a ChannelError.
"""
from __future__ import annotations

import abc
from typing import Any


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class TransportError(ChannelError):
    """A send reached the transport and failed."""

    def __init__(self, message: str, channel: str = "whatsapp"):
        super().__init__(message, channel, retryable=True)


class NotConnectedError(TransportError):
    def __init__(self, channel: str = "whatsapp"):
        super().__init__("WhatsApp is not connected", channel)


# ══════════════════════════════════════════════════════════════
#  CLIENT INTERFACE
# ══════════════════════════════════════════════════════════════

class MessagingClient(abc.ABC):
    """Outbound messaging client used by the delivery executor."""

    channel: str = "whatsapp"

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        ...

    @abc.abstractmethod
    async def send_private_message(self, number: str, text: str) -> dict[str, Any]:
        """Send to a private recipient address. Raises ChannelError on failure."""
        ...

    @abc.abstractmethod
    async def send_group_message(self, group_id: str, text: str) -> dict[str, Any]:
        """Send to a group address. Raises ChannelError on failure."""
        ...

    async def connect(self) -> bool:
        """Open or re-check the session; returns is_connected."""
        return self.is_connected

    async def close(self) -> None:
        """Release client resources. Default: nothing to do."""

    def get_connection_status(self) -> dict[str, Any]:
        return {"channel": self.channel, "connected": self.is_connected}

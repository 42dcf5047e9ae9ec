"""
Abstract base class for the messaging gateway client.

The gateway owns the actual messaging-network connection. This core only
drives it: create/fund/delete a channel, fetch a pairing QR, check health,
register the webhook callback and send messages.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

# Suffix the gateway expects on individual chat ids
_CHAT_DOMAIN = "s.whatsapp.net"

# Gateway health status meaning "paired and authenticated"
HEALTH_AUTHENTICATED = "AUTH"


def normalize_chat_id(chat_id: str) -> str:
    """Strip the @domain part: "1234567890@s.whatsapp.net" -> "1234567890"."""
    return re.sub(r"@.*$", "", chat_id or "")


def to_gateway_chat_id(chat_id: str) -> str:
    """Inverse of normalize_chat_id for outgoing sends."""
    if "@" in chat_id:
        return chat_id
    return f"{chat_id}@{_CHAT_DOMAIN}"


@dataclass
class GatewayChannel:
    """A channel as created on the gateway."""
    id: str
    token: str
    name: str
    status: Optional[str] = None


@dataclass
class QRCode:
    """Raw pairing QR payload and its expiry (seconds), if the gateway sent one."""
    qr: str
    expire: Optional[int] = None


@dataclass
class HealthStatus:
    """Live connection state reported by the gateway."""
    status_text: str  # INIT / AUTH / STOP / SYNC_ERROR
    phone: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.status_text.upper() == HEALTH_AUTHENTICATED


@dataclass
class InboundMessage:
    """A message received from the gateway webhook."""
    external_message_id: Optional[str]
    sender: str  # "from" in the payload
    recipient: str  # "to" in the payload
    chat_id: str
    body: str
    message_type: str = "text"
    from_name: Optional[str] = None
    metadata: Optional[dict] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_self_sent(self) -> bool:
        return self.sender == self.recipient


@dataclass
class StatusUpdate:
    """Delivery status of a message we sent earlier."""
    external_message_id: str
    status: str
    chat_id: Optional[str] = None


class GatewayClient(ABC):
    """Abstract contract for the messaging gateway.

    Partner-level calls take the external channel id; channel-level calls
    take the channel token.
    """

    @abstractmethod
    async def create_channel(self, name: str) -> GatewayChannel:
        """Create a new external channel."""
        ...

    @abstractmethod
    async def extend_channel(self, channel_id: str, days: int) -> None:
        """Fund/activate the channel for ``days`` days."""
        ...

    @abstractmethod
    async def delete_channel(self, channel_id: str) -> None:
        """Delete the external channel. Missing channels are not an error."""
        ...

    @abstractmethod
    async def logout_channel(self, token: str) -> None:
        """Log the paired phone out of the channel."""
        ...

    @abstractmethod
    async def get_qr(self, token: str) -> QRCode:
        """Fetch the current pairing QR.

        Raises GatewayConflict when the channel is already authenticated.
        """
        ...

    @abstractmethod
    async def check_health(self, token: str, accelerate: bool = False) -> HealthStatus:
        """Fetch live status. ``accelerate`` nudges a still-provisioning channel."""
        ...

    @abstractmethod
    async def register_webhook(self, token: str, url: str) -> None:
        """Point the channel's message/status events at ``url``."""
        ...

    @abstractmethod
    async def wait_for_ready(
        self,
        token: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Block until the channel is provisioned.

        Raises ProvisioningTimeout after ``timeout`` seconds and
        ProvisioningCancelled as soon as ``cancel_event`` is set.
        """
        ...

    @abstractmethod
    async def send_text(self, token: str, to: str, body: str) -> Optional[str]:
        """Send a text message and return the gateway message id."""
        ...

    async def aclose(self) -> None:
        """Release transport resources."""
        return None

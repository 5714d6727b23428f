"""
Domain Models - Instances, Assignments and Reconnection Tasks
==============================================================

Pure data: no I/O, no asyncio. The application layer owns every mutation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class InstanceStatus(str, Enum):
    """Connection status of one agent's WhatsApp session."""
    DISCONNECTED = "disconnected"
    QR_READY = "qr_ready"
    CONNECTED = "connected"


class MessageStatus(str, Enum):
    """Delivery status of an outbound message."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ConversationMode(str, Enum):
    """Who answers a conversation."""
    AI = "ai"
    HUMAN = "human"
    SUPPORT = "support"

    @classmethod
    def parse(cls, value: Any) -> "ConversationMode":
        """Accept legacy values (False/None meant AI, True meant human)."""
        if value is None or value is False:
            return cls.AI
        if value is True:
            return cls.HUMAN
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.AI


def credential_namespace(agent_id: int) -> str:
    """Per-agent credential directory name, derived only from the agent id."""
    return f"user_{agent_id}"


@dataclass
class Instance:
    """
    One agent's WhatsApp session.

    The session client handle belongs to the SessionManager; it is excluded
    from equality, repr and the public snapshot.
    """
    agent_id: int
    display_name: str = ""
    status: InstanceStatus = InstanceStatus.DISCONNECTED
    qr_payload: Optional[str] = None
    phone_number: Optional[str] = None
    client: Any = field(default=None, repr=False, compare=False)

    reconnect_attempts: int = 0
    max_reconnect_attempts: int = 3
    qr_regeneration_attempts: int = 0
    max_qr_regenerations: int = 10

    is_reconnecting: bool = False
    has_been_connected: bool = False
    first_qr_generated: bool = False

    last_connected_at: Optional[datetime] = None

    @property
    def credential_namespace(self) -> str:
        return credential_namespace(self.agent_id)

    @property
    def is_connected(self) -> bool:
        return self.status == InstanceStatus.CONNECTED

    def to_dict(self) -> dict:
        """Public snapshot for the HTTP layer (no client handle)."""
        return {
            "agent_id": self.agent_id,
            "display_name": self.display_name,
            "status": self.status.value,
            "qr": self.qr_payload,
            "phone": self.phone_number,
            "connected": self.is_connected,
            "reconnect_attempts": self.reconnect_attempts,
            "qr_regeneration_attempts": self.qr_regeneration_attempts,
            "is_reconnecting": self.is_reconnecting,
            "has_been_connected": self.has_been_connected,
            "last_connected_at": (
                self.last_connected_at.isoformat() if self.last_connected_at else None
            ),
        }


@dataclass
class ReconnectTask:
    """A pending reconnection timer. At most one exists per agent."""
    agent_id: int
    attempt_number: int
    scheduled_at: float
    delay_seconds: float
    handle: Any = field(default=None, repr=False, compare=False)

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()


@dataclass
class ClientAssignment:
    """Binding of an end-user contact to exactly one agent."""
    contact_id: str
    agent_id: int
    is_group: bool = False
    group_name: Optional[str] = None
    last_message_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "contact_id": self.contact_id,
            "agent_id": self.agent_id,
            "is_group": self.is_group,
            "group_name": self.group_name,
            "last_message_at": (
                self.last_message_at.isoformat() if self.last_message_at else None
            ),
        }

"""
Session Events - What a Session Client Emits
=============================================

Typed payloads passed to the handlers subscribed on a session client,
plus the Disconnected notification the lifecycle controller publishes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional


class EventKind(str, Enum):
    """Subscription channels on a session client."""
    QR = "qr"
    STATUS = "status"
    MESSAGE = "message"
    ACK = "ack"


class SessionState(str, Enum):
    """Connection states reported by a session client."""
    LOGGED_IN = "logged-in"
    QR_CONFIRMED = "qr-confirmed"
    SESSION_CLOSED = "session-closed"
    DEVICE_DISCONNECTED = "device-disconnected"

    @property
    def is_open(self) -> bool:
        return self in (SessionState.LOGGED_IN, SessionState.QR_CONFIRMED)


class DisconnectReason(IntEnum):
    """Close codes attached to a session-closed status."""
    LOGGED_OUT = 401
    FORBIDDEN = 403
    METHOD_NOT_ALLOWED = 405
    TIMED_OUT = 408
    CONNECTION_CLOSED = 428
    BAD_SESSION = 500
    RESTART_REQUIRED = 515


AUTH_FAILURE_REASONS = frozenset({
    DisconnectReason.LOGGED_OUT,
    DisconnectReason.FORBIDDEN,
    DisconnectReason.METHOD_NOT_ALLOWED,
})


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class QrEvent:
    payload: str


@dataclass(frozen=True)
class StatusEvent:
    state: SessionState
    reason: Optional[int] = None
    phone_number: Optional[str] = None


@dataclass(frozen=True)
class InboundMessage:
    """A message observed on the session, before routing."""
    message_id: str
    remote_address: str
    from_me: bool = False
    kind: MessageKind = MessageKind.TEXT
    text: str = ""
    caption: Optional[str] = None
    push_name: Optional[str] = None
    profile_name: Optional[str] = None
    group_name: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class AckEvent:
    """Transport-level delivery acknowledgement for an outbound message."""
    message_id: str
    ack: int
    remote_address: Optional[str] = None


@dataclass(frozen=True)
class Disconnected:
    """Published when an instance's session drops; observers decide on retries."""
    agent_id: int
    reason: Optional[int] = None
    logged_out: bool = False


@dataclass(frozen=True)
class RoutedMessage:
    """A message accepted by the router for the owning agent."""
    contact_id: str
    text: str
    agent_id: int
    timestamp: datetime
    display_name: str
    is_group: bool = False
    message_id: Optional[str] = None

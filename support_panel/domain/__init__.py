# Domain Layer
# ============
# Pure data and rules shared by the application layer:
# - models: Instance, ClientAssignment, ReconnectTask, status enums
# - events: session client event payloads
# - addresses: WhatsApp address classification

from .models import (
    Instance,
    InstanceStatus,
    MessageStatus,
    ConversationMode,
    ClientAssignment,
    ReconnectTask,
    credential_namespace,
)
from .events import (
    EventKind,
    SessionState,
    DisconnectReason,
    MessageKind,
    QrEvent,
    StatusEvent,
    InboundMessage,
    AckEvent,
    Disconnected,
    RoutedMessage,
)
from .addresses import AddressKind, classify_address, contact_id_from_address, to_chat_address

__all__ = [
    "Instance",
    "InstanceStatus",
    "MessageStatus",
    "ConversationMode",
    "ClientAssignment",
    "ReconnectTask",
    "credential_namespace",
    "EventKind",
    "SessionState",
    "DisconnectReason",
    "MessageKind",
    "QrEvent",
    "StatusEvent",
    "InboundMessage",
    "AckEvent",
    "Disconnected",
    "RoutedMessage",
    "AddressKind",
    "classify_address",
    "contact_id_from_address",
    "to_chat_address",
]

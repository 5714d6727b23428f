# Application Layer
# =================
# Session lifecycle and message flow, independent of the transport:
# - lifecycle: SessionManager (start / stop / logout / send)
# - registry: in-memory instance map
# - scheduler: backoff timers and the global start window
# - reconnection: retry decisions for dropped sessions
# - router: inbound filtering, client assignment, ACK routing

from .errors import (
    SessionError,
    SessionCreationError,
    InstanceNotAvailableError,
    InstanceNotConnectedError,
    CredentialStoreError,
)
from .registry import InstanceRegistry
from .scheduler import GlobalRateWindow, ReconnectScheduler, calculate_backoff_delay
from .lifecycle import SessionManager
from .reconnection import ReconnectionCoordinator
from .router import MessageRouter, ack_to_status, extract_text

__all__ = [
    "SessionError",
    "SessionCreationError",
    "InstanceNotAvailableError",
    "InstanceNotConnectedError",
    "CredentialStoreError",
    "InstanceRegistry",
    "GlobalRateWindow",
    "ReconnectScheduler",
    "calculate_backoff_delay",
    "SessionManager",
    "ReconnectionCoordinator",
    "MessageRouter",
    "ack_to_status",
    "extract_text",
]

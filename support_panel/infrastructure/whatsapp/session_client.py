"""
Session Client - Abstraction Layer for One WhatsApp Session
============================================================

A session client is one live connection bound to one credential store.
It is created and owned by the SessionManager and reports what happens on
the connection through four typed subscriptions.

USAGE:
    client = factory(agent_id=7, credential_dir=Path("sessions/user_7"))
    client.subscribe(EventKind.QR, on_qr)
    client.subscribe(EventKind.STATUS, on_status)
    await client.connect()
    message_id = await client.send_text("5551234@s.whatsapp.net", "Hello!")
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from ...domain.events import EventKind

logger = logging.getLogger(__name__)

EventHandler = Callable[[object], Awaitable[None]]


class SessionClient(ABC):
    """
    Abstract base class for WhatsApp session clients.
    Implement this interface to add new transports.
    """

    def __init__(self, agent_id: int, credential_dir: Path):
        self.agent_id = agent_id
        self.credential_dir = Path(credential_dir)
        self._handlers: Dict[EventKind, List[EventHandler]] = {kind: [] for kind in EventKind}

    # ── Subscriptions ──────────────────────────────────────────────

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        """Register an async handler for one event kind."""
        self._handlers[EventKind(kind)].append(handler)

    async def _emit(self, kind: EventKind, event: object) -> None:
        """Deliver an event to every subscriber, in subscription order."""
        for handler in self._handlers[kind]:
            try:
                await handler(event)
            except Exception as e:
                logger.exception(f"{kind.value} handler failed for agent {self.agent_id}: {e}")

    # ── Transport ──────────────────────────────────────────────────

    @abstractmethod
    async def connect(self) -> None:
        """Open the session. Raises if the connection cannot be created."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call on a dead session."""
        ...

    @abstractmethod
    async def logout(self) -> None:
        """Unlink the device from the account, then release the connection."""
        ...

    @abstractmethod
    async def send_text(self, address: str, text: str) -> Optional[str]:
        """Send a text message. Returns the transport message id if known."""
        ...

    @abstractmethod
    async def send_media(
        self,
        address: str,
        path: Path,
        caption: str = "",
        mime_type: Optional[str] = None,
    ) -> Optional[str]:
        """Send a file with an optional caption. Returns the message id if known."""
        ...

    @property
    @abstractmethod
    def phone_number(self) -> Optional[str]:
        """Phone number of the linked account, once logged in."""
        ...


class SessionClientFactory(Protocol):
    """Builds an unconnected client for one agent's credential store."""

    def __call__(self, agent_id: int, credential_dir: Path) -> SessionClient:
        ...

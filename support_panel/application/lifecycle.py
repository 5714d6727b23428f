"""
Session Manager - Lifecycle of Per-Agent WhatsApp Sessions
===========================================================

Creates, stops, logs out and restarts one WhatsApp session per support
agent, and turns the session client's events into registry and store
updates.

ARCHITECTURAL DECISION:
- Built once per process and handed to the web layer (no module singleton)
- Everything runs on one event loop. start_instance sets the
  is_reconnecting guard before its first await, so two concurrent starts
  for the same agent can never create two clients
- Drop detection lives here; whether to retry is decided by the
  ReconnectionCoordinator, which observes Disconnected notifications

USAGE:
    manager = SessionManager(database, SeleniumSessionClientFactory(), settings)
    instance = await manager.start_instance(7, "Maria")
    await manager.send_message(7, "5551234", "Hello!")
    await manager.shutdown()
"""

import logging
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from .errors import (
    CredentialStoreError,
    InstanceNotAvailableError,
    InstanceNotConnectedError,
    SessionCreationError,
)
from .reconnection import ReconnectionCoordinator
from .registry import InstanceRegistry
from .scheduler import ReconnectScheduler
from ..domain.addresses import to_chat_address
from ..domain.events import (
    AckEvent,
    Disconnected,
    EventKind,
    InboundMessage,
    QrEvent,
    SessionState,
    StatusEvent,
)
from ..domain.models import Instance, InstanceStatus, credential_namespace
from ..infrastructure.config import Settings, get_settings
from ..infrastructure.persistence import ConversationLogger, PersistenceGateway
from ..infrastructure.whatsapp import SessionClient, SessionClientFactory, clear_credential_store

logger = logging.getLogger(__name__)

DisconnectObserver = Callable[[Disconnected], Awaitable[None]]


class SessionManager:
    """
    Owns the instance registry, the reconnection scheduler and every
    session client in the process.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        client_factory: SessionClientFactory,
        settings: Optional[Settings] = None,
        scheduler: Optional[ReconnectScheduler] = None,
        router=None,
        conversation_log: Optional[ConversationLogger] = None,
        credential_wiper: Callable[[Path], bool] = clear_credential_store,
        auto_reconnect: bool = True,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.client_factory = client_factory
        self.registry = InstanceRegistry()
        self.scheduler = scheduler or ReconnectScheduler(self.settings.reconnect)
        self.router = router
        self.conversation_log = conversation_log or ConversationLogger(gateway)
        self._credential_wiper = credential_wiper
        self._observers: List[DisconnectObserver] = []

        if auto_reconnect:
            self.coordinator = ReconnectionCoordinator(self)
            self.add_disconnect_observer(self.coordinator.on_disconnected)
        else:
            self.coordinator = None

    # ── Queries ────────────────────────────────────────────────────

    def list_instances(self) -> List[Instance]:
        return self.registry.list()

    def get_instance(self, agent_id: int) -> Optional[Instance]:
        return self.registry.get(agent_id)

    def credential_dir(self, agent_id: int) -> Path:
        return self.settings.session.sessions_dir / credential_namespace(agent_id)

    def add_disconnect_observer(self, observer: DisconnectObserver) -> None:
        self._observers.append(observer)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start_instance(self, agent_id: int, display_name: str = "") -> Optional[Instance]:
        """
        Start (or return) the agent's session.

        Returns None when the global start window is exhausted. Raises
        SessionCreationError if the client cannot be created.
        """
        if not self.scheduler.rate_window.try_acquire():
            window = self.scheduler.rate_window
            logger.warning(
                f"Global start limit reached ({window.count}/{window.max_per_window}), "
                f"not starting agent {agent_id}"
            )
            return None

        carried = {}
        existing = self.registry.get(agent_id)
        if existing is not None:
            if existing.is_connected:
                logger.info(f"Instance already connected for agent {agent_id}")
                return existing

            if existing.is_reconnecting:
                logger.info(f"Instance for agent {agent_id} is already being started")
                return existing

            if self.scheduler.has_pending(agent_id):
                logger.info(f"Reconnection already scheduled for agent {agent_id}")
                return existing

            # Retry budgets survive a restart of the same session
            carried = {
                "reconnect_attempts": existing.reconnect_attempts,
                "qr_regeneration_attempts": existing.qr_regeneration_attempts,
            }
            display_name = display_name or existing.display_name
            existing.is_reconnecting = True
            logger.info(f"Closing disconnected instance for agent {agent_id} before restart")
            await self.stop_instance(agent_id)

        logger.info(f"Starting WhatsApp instance for agent {agent_id}...")

        instance = Instance(
            agent_id=agent_id,
            display_name=display_name,
            max_reconnect_attempts=self.settings.session.max_reconnect_attempts,
            max_qr_regenerations=self.settings.session.max_qr_regenerations,
            is_reconnecting=True,
            **carried,
        )
        self.registry.add(instance)

        try:
            client = self._create_client(agent_id)
            instance.client = client

            self._persist(agent_id, display_name=display_name, status=InstanceStatus.DISCONNECTED)

            await client.connect()
        except Exception as e:
            if self.registry.get(agent_id) is instance:
                self.registry.remove(agent_id)
            if instance.client is not None:
                try:
                    await instance.client.close()
                except Exception as close_error:
                    logger.debug(f"Close after failed start for agent {agent_id}: {close_error}")
            logger.error(f"Error starting instance for agent {agent_id}: {e}")
            if isinstance(e, SessionCreationError):
                raise
            raise SessionCreationError(agent_id, f"Could not start session for agent {agent_id}: {e}") from e

        if self.registry.get(agent_id) is not instance:
            # Stopped while connecting; the entry is gone so the client must go too
            try:
                await client.close()
            except Exception as e:
                logger.debug(f"Close after cancelled start for agent {agent_id}: {e}")
            raise SessionCreationError(agent_id, f"Session for agent {agent_id} was stopped while starting")

        instance.is_reconnecting = False
        return instance

    def _create_client(self, agent_id: int) -> SessionClient:
        credential_dir = self.credential_dir(agent_id)
        if credential_dir.exists() and not credential_dir.is_dir():
            raise SessionCreationError(
                agent_id, f"Credential store is corrupted: {credential_dir} is not a directory"
            )
        credential_dir.mkdir(parents=True, exist_ok=True)

        client = self.client_factory(agent_id, credential_dir)
        client.subscribe(EventKind.QR, partial(self.handle_qr, agent_id))
        client.subscribe(EventKind.STATUS, partial(self.handle_status, agent_id))
        client.subscribe(EventKind.MESSAGE, partial(self.handle_message, agent_id))
        client.subscribe(EventKind.ACK, partial(self.handle_ack, agent_id))
        return client

    async def stop_instance(self, agent_id: int) -> bool:
        """Tear down the agent's session. Returns False if there was none."""
        instance = self.registry.get(agent_id)
        if instance is None:
            self.scheduler.cancel(agent_id)
            return False

        logger.info(f"Stopping instance for agent {agent_id}...")
        self.scheduler.cancel(agent_id)

        if instance.client is not None:
            try:
                await instance.client.close()
            except Exception as e:
                logger.warning(f"Error closing session for agent {agent_id}: {e}")

        if self.registry.get(agent_id) is instance:
            self.registry.remove(agent_id)

        self._persist(agent_id, status=InstanceStatus.DISCONNECTED, qr_payload=None)
        return True

    async def logout_instance(self, agent_id: int) -> bool:
        """
        Unlink the agent's device, wipe its saved session and start over
        with a fresh QR. Returns False if the agent has no instance.
        """
        instance = self.registry.get(agent_id)
        if instance is None:
            return False

        logger.info(f"Logging out WhatsApp session for agent {agent_id}...")
        self.scheduler.cancel(agent_id)

        client = instance.client
        if client is not None:
            try:
                await client.logout()
            except Exception as e:
                logger.warning(f"Error during logout for agent {agent_id}: {e}")

        try:
            self.clear_credentials(agent_id)
        finally:
            # The browser is gone either way
            self.registry.upsert(
                agent_id,
                client=None,
                status=InstanceStatus.DISCONNECTED,
                qr_payload=None,
                phone_number=None,
                has_been_connected=False,
                is_reconnecting=False,
            )
            self._persist(agent_id, status=InstanceStatus.DISCONNECTED, qr_payload=None, phone_number=None)

        self.scheduler.schedule(
            agent_id,
            1,
            partial(self.restart_instance, agent_id, instance.display_name),
            delay=self.settings.session.logout_restart_delay_seconds,
        )
        return True

    async def restart_instance(self, agent_id: int, display_name: str = "") -> Optional[Instance]:
        """Scheduled restart; a rate-limited start is logged, not raised."""
        instance = await self.start_instance(agent_id, display_name)
        if instance is None:
            logger.warning(f"Restart of agent {agent_id} was rate limited")
        return instance

    def clear_credentials(self, agent_id: int) -> None:
        """Delete the agent's saved session. Failures raise CredentialStoreError."""
        credential_dir = self.credential_dir(agent_id)
        try:
            self._credential_wiper(credential_dir)
        except Exception as e:
            raise CredentialStoreError(
                agent_id, f"Could not clear saved session {credential_dir}: {e}"
            ) from e

    async def shutdown(self) -> None:
        """Stop every instance and every pending timer."""
        self.scheduler.cancel_all()
        for instance in self.registry.list():
            await self.stop_instance(instance.agent_id)
        logger.info("All WhatsApp instances stopped")

    async def restore_instances(self, agents: Iterable[Tuple[int, str]]) -> Tuple[int, int]:
        """
        Start sessions for agents that have a saved login, one at a time.

        Empty credential directories are removed and skipped.
        Returns (started, failed).
        """
        started = failed = 0
        for agent_id, display_name in agents:
            credential_dir = self.credential_dir(agent_id)
            if not credential_dir.is_dir():
                continue
            if not any(credential_dir.iterdir()):
                logger.info(f"Removing empty session directory for agent {agent_id}")
                try:
                    credential_dir.rmdir()
                except OSError as e:
                    logger.warning(f"Could not remove {credential_dir}: {e}")
                continue

            try:
                instance = await self.start_instance(agent_id, display_name)
            except Exception as e:
                failed += 1
                logger.error(f"Could not restore instance for agent {agent_id}: {e}")
                continue

            if instance is None:
                failed += 1
            else:
                started += 1

        logger.info(f"Restored {started} instance(s), {failed} failed")
        return started, failed

    # ── Sending ────────────────────────────────────────────────────

    def require_connected(self, agent_id: int) -> SessionClient:
        instance = self.registry.get(agent_id)
        if instance is None or instance.client is None:
            raise InstanceNotAvailableError(agent_id)
        if not instance.is_connected:
            raise InstanceNotConnectedError(agent_id)
        return instance.client

    async def send_message(
        self,
        agent_id: int,
        contact_id: str,
        text: str,
        is_group: bool = False,
    ) -> Optional[str]:
        """Send a text through the agent's session. Returns the message id if known."""
        client = self.require_connected(agent_id)
        message_id = await client.send_text(to_chat_address(contact_id, is_group), text)
        self.conversation_log.log(
            "support", text, contact_id.split("@", 1)[0],
            is_group=is_group, agent_id=agent_id, message_id=message_id,
        )
        return message_id

    async def send_media(
        self,
        agent_id: int,
        contact_id: str,
        path: Path,
        caption: str = "",
        mime_type: Optional[str] = None,
        is_group: bool = False,
    ) -> Optional[str]:
        client = self.require_connected(agent_id)
        message_id = await client.send_media(
            to_chat_address(contact_id, is_group), Path(path), caption, mime_type
        )
        self.conversation_log.log(
            "support", caption or f"[{Path(path).name}]", contact_id.split("@", 1)[0],
            is_group=is_group, agent_id=agent_id, message_id=message_id,
        )
        return message_id

    # ── Client events ──────────────────────────────────────────────

    async def handle_qr(self, agent_id: int, event: QrEvent) -> None:
        instance = self.registry.get(agent_id)
        if instance is None:
            return

        # The page rotates the QR every ~20s; only the first one is worth a log line
        if not instance.first_qr_generated:
            logger.info(f"QR generated for agent {agent_id}, available in the panel")
            instance.first_qr_generated = True

        instance.qr_payload = event.payload
        instance.status = InstanceStatus.QR_READY

        self._persist(
            agent_id,
            qr_payload=event.payload,
            status=InstanceStatus.QR_READY,
            last_qr_at=datetime.now(),
        )

    async def handle_status(self, agent_id: int, event: StatusEvent) -> None:
        instance = self.registry.get(agent_id)
        if instance is None:
            return

        if event.state.is_open:
            await self._on_connected(instance, event)
        else:
            await self._on_closed(instance, event)

    async def _on_connected(self, instance: Instance, event: StatusEvent) -> None:
        agent_id = instance.agent_id
        logger.info(f"WhatsApp connected for agent {agent_id}")

        self.scheduler.cancel(agent_id)

        now = datetime.now()
        phone = event.phone_number
        if phone is None and instance.client is not None:
            phone = instance.client.phone_number

        instance.status = InstanceStatus.CONNECTED
        instance.qr_payload = None
        instance.phone_number = phone
        instance.reconnect_attempts = 0
        instance.qr_regeneration_attempts = 0
        instance.is_reconnecting = False
        instance.has_been_connected = True
        instance.first_qr_generated = False
        instance.last_connected_at = now

        self._persist(
            agent_id,
            status=InstanceStatus.CONNECTED,
            qr_payload=None,
            phone_number=phone,
            last_connected_at=now,
        )
        self.conversation_log.log("system", f"Session started for agent {agent_id}", agent_id=agent_id)

    async def _on_closed(self, instance: Instance, event: StatusEvent) -> None:
        agent_id = instance.agent_id
        logger.info(
            f"Connection closed for agent {agent_id}. Code: {event.reason}, "
            f"status: {instance.status.value}, has been connected: {instance.has_been_connected}"
        )

        instance.status = InstanceStatus.DISCONNECTED
        instance.qr_payload = None
        self._persist(agent_id, status=InstanceStatus.DISCONNECTED, qr_payload=None)

        notice = Disconnected(
            agent_id=agent_id,
            reason=event.reason,
            logged_out=event.state == SessionState.DEVICE_DISCONNECTED,
        )
        for observer in list(self._observers):
            try:
                await observer(notice)
            except Exception as e:
                logger.exception(f"Disconnect observer failed for agent {agent_id}: {e}")

    async def handle_message(self, agent_id: int, message: InboundMessage) -> None:
        instance = self.registry.get(agent_id)
        if instance is None or instance.client is None or self.router is None:
            return
        await self.router.handle_message(agent_id, message)

    async def handle_ack(self, agent_id: int, event: AckEvent) -> None:
        if self.router is None:
            return
        await self.router.handle_ack(agent_id, event)

    # ── Persistence ────────────────────────────────────────────────

    def _persist(self, agent_id: int, **fields) -> None:
        try:
            self.gateway.save_instance_state(agent_id, **fields)
        except Exception as e:
            logger.error(f"Error saving instance state for agent {agent_id}: {e}")

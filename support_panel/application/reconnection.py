"""
Reconnection Coordinator - Retry Decisions for Dropped Sessions
================================================================

The SessionManager only reports that a session dropped. This module decides
whether (and when) it is started again:

- QR expired on a session that never logged in: regenerate the QR, up to
  max_qr_regenerations times
- Never logged in, any other reason: wait for the agent to scan
- Device unlinked from the phone: stay disconnected
- Auth failure (401/403/405) on a session that was logged in: wipe the saved
  session and retry with backoff, up to max_reconnect_attempts times
- Any other drop of a logged-in session: retry right away with attempt 1
"""

import logging
from functools import partial
from typing import TYPE_CHECKING

from ..domain.events import AUTH_FAILURE_REASONS, Disconnected, DisconnectReason

if TYPE_CHECKING:
    from .lifecycle import SessionManager

logger = logging.getLogger(__name__)


class ReconnectionCoordinator:
    """Disconnect observer that schedules restarts on the manager's scheduler."""

    def __init__(self, manager: "SessionManager"):
        self.manager = manager

    def _schedule(self, agent_id: int, attempt: int, display_name: str) -> None:
        self.manager.scheduler.schedule(
            agent_id,
            attempt,
            partial(self.manager.restart_instance, agent_id, display_name),
        )

    async def on_disconnected(self, event: Disconnected) -> None:
        agent_id = event.agent_id
        instance = self.manager.registry.get(agent_id)
        if instance is None:
            return

        instance.is_reconnecting = False

        if event.reason == DisconnectReason.TIMED_OUT and not instance.has_been_connected:
            instance.qr_regeneration_attempts += 1
            if instance.qr_regeneration_attempts > instance.max_qr_regenerations:
                logger.info(
                    f"Agent {agent_id} reached the QR regeneration limit "
                    f"({instance.max_qr_regenerations}), stopping"
                )
                return

            logger.info(
                f"Regenerating QR for agent {agent_id} "
                f"(attempt {instance.qr_regeneration_attempts}/{instance.max_qr_regenerations})"
            )
            instance.first_qr_generated = False
            self._schedule(agent_id, 1, instance.display_name)
            return

        if not instance.has_been_connected:
            logger.info(f"Agent {agent_id} never logged in, waiting for QR scan")
            return

        if event.logged_out:
            logger.info(f"Agent {agent_id} unlinked the device, not reconnecting")
            return

        if event.reason in AUTH_FAILURE_REASONS:
            instance.reconnect_attempts += 1
            if instance.reconnect_attempts > instance.max_reconnect_attempts:
                logger.error(f"Max reconnection attempts reached for agent {agent_id}")
                self.manager.conversation_log.log(
                    "error",
                    f"Instance {agent_id} reached the reconnection limit",
                    agent_id=agent_id,
                )
                return

            logger.info(
                f"Clearing saved session for agent {agent_id} "
                f"(attempt {instance.reconnect_attempts}/{instance.max_reconnect_attempts})"
            )
            try:
                self.manager.clear_credentials(agent_id)
            except Exception as e:
                logger.exception(f"Not reconnecting agent {agent_id}: {e}")
                return

            instance.has_been_connected = False
            self._schedule(agent_id, instance.reconnect_attempts, instance.display_name)
            return

        logger.info(f"Reconnecting agent {agent_id} after unexpected drop (code {event.reason})")
        instance.reconnect_attempts = 0
        self._schedule(agent_id, 1, instance.display_name)

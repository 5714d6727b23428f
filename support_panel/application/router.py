"""
Message Router - Inbound Filtering and Client Assignment
=========================================================

Decides what happens to every message an agent's session receives:

1. Self-sent, broadcast, status and channel traffic is dropped. Groups are
   dropped unless group handling is enabled
2. The message text is extracted by kind; empty messages are dropped
3. The first agent that receives a message from a contact owns that
   contact. Messages from the same contact arriving on another agent's
   session are dropped; contacts are never transferred automatically
4. Accepted messages are logged and cancel any pending follow-up

ACK events update the delivery status of outbound messages.
"""

import logging
from typing import Dict, Optional

from ..domain.addresses import AddressKind, classify_address, contact_id_from_address
from ..domain.events import AckEvent, InboundMessage, MessageKind, RoutedMessage
from ..domain.models import ClientAssignment, MessageStatus
from ..infrastructure.config import RoutingSettings
from ..infrastructure.followup import FollowUpService
from ..infrastructure.persistence import ConversationLogger, PersistenceGateway

logger = logging.getLogger(__name__)

ACK_STATUS: Dict[int, MessageStatus] = {
    2: MessageStatus.SENT,
    3: MessageStatus.DELIVERED,
    4: MessageStatus.READ,
}

MEDIA_PLACEHOLDERS = {
    MessageKind.IMAGE: "[image]",
    MessageKind.VIDEO: "[video]",
    MessageKind.DOCUMENT: "[document]",
    MessageKind.AUDIO: "[audio]",
    MessageKind.STICKER: "[sticker]",
}

CAPTIONED_KINDS = (MessageKind.IMAGE, MessageKind.VIDEO, MessageKind.DOCUMENT)


def extract_text(message: InboundMessage) -> str:
    """Text shown in the panel for a message of any kind."""
    if message.kind == MessageKind.TEXT:
        return message.text or ""
    if message.kind in CAPTIONED_KINDS:
        return message.caption or MEDIA_PLACEHOLDERS[message.kind]
    return MEDIA_PLACEHOLDERS.get(message.kind, "")


def ack_to_status(ack: int) -> Optional[MessageStatus]:
    return ACK_STATUS.get(ack)


class MessageRouter:
    """
    Routes messages from every agent session.

    Usage:
        router = MessageRouter(database, conversation_log, follow_ups)
        routed = await router.handle_message(7, inbound)
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        conversation_log: ConversationLogger,
        follow_ups: Optional[FollowUpService] = None,
        settings: Optional[RoutingSettings] = None,
    ):
        self.gateway = gateway
        self.conversation_log = conversation_log
        self.follow_ups = follow_ups
        self.settings = settings or RoutingSettings()

    def _accepts(self, kind: AddressKind) -> bool:
        if kind == AddressKind.INDIVIDUAL:
            return True
        return kind == AddressKind.GROUP and self.settings.allow_groups

    async def handle_message(self, agent_id: int, message: InboundMessage) -> Optional[RoutedMessage]:
        """Route one inbound message. Returns the routed message, or None if dropped."""
        try:
            return self._route(agent_id, message)
        except Exception as e:
            logger.exception(f"Error processing message for agent {agent_id}: {e}")
            return None

    def _route(self, agent_id: int, message: InboundMessage) -> Optional[RoutedMessage]:
        if message.from_me:
            return None

        address_kind = classify_address(message.remote_address)
        if not self._accepts(address_kind):
            logger.debug(f"Message ignored [{address_kind.value}]: {message.remote_address}")
            return None

        is_group = address_kind == AddressKind.GROUP
        contact_id = contact_id_from_address(message.remote_address)
        display_name = message.push_name or message.profile_name or contact_id

        text = extract_text(message)
        if not text.strip():
            logger.debug(f"Message ignored, no text content: {message.message_id}")
            return None

        assignment = self.gateway.get_assignment(contact_id)
        if assignment is not None and assignment.agent_id != agent_id:
            logger.debug(
                f"Message ignored: contact {contact_id} is assigned to agent "
                f"{assignment.agent_id}, not {agent_id}"
            )
            return None

        if assignment is None:
            self.gateway.create_assignment(ClientAssignment(
                contact_id=contact_id,
                agent_id=agent_id,
                is_group=is_group,
                group_name=message.group_name if is_group else None,
                last_message_at=message.timestamp,
            ))
            logger.info(f"Contact {contact_id} assigned to agent {agent_id}")
        else:
            self.gateway.touch_assignment(contact_id, message.timestamp)

        self.conversation_log.log(
            "client", text, contact_id, display_name, is_group, agent_id, message.message_id
        )
        self.conversation_log.log(
            "system",
            f"Message received from {display_name} ({contact_id}), waiting for a reply",
            agent_id=agent_id,
        )

        if self.follow_ups is not None and self.follow_ups.has_active_follow_up(contact_id):
            self.follow_ups.cancel_follow_up(contact_id, "Contact replied")

        return RoutedMessage(
            contact_id=contact_id,
            text=text,
            agent_id=agent_id,
            timestamp=message.timestamp,
            display_name=display_name,
            is_group=is_group,
            message_id=message.message_id,
        )

    async def handle_ack(self, agent_id: int, event: AckEvent) -> Optional[MessageStatus]:
        """Update the delivery status of an outbound message. Unknown codes are ignored."""
        status = ack_to_status(event.ack)
        if status is None or not event.message_id:
            return None

        try:
            self.conversation_log.update_message_status(event.message_id, status)
        except Exception as e:
            logger.error(f"Error updating message status (agent {agent_id}): {e}")
            return None

        logger.debug(f"Status updated (agent {agent_id}): {event.message_id} -> {status.value}")
        return status

"""
Conversation Log - Message History and Delivery Status
=======================================================

Every routed inbound message and every agent reply is written here.
System lines (no contact) only go to the python logger.

FALLBACK BEHAVIOR:
- If an insert fails, the entry is queued in memory (oldest dropped past
  MAX_PENDING_LOGS)
- The queue is flushed on the next successful insert
"""

import logging
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

from .database import PersistenceGateway
from ...domain.models import MessageStatus

logger = logging.getLogger(__name__)

MAX_PENDING_LOGS = 1000


class ConversationLogger:
    """
    Writes (role, text, contact_id, display_name, is_group, agent_id) tuples.

    Roles used by the panel: "client", "support", "system", "error".
    """

    def __init__(self, gateway: PersistenceGateway, max_pending: int = MAX_PENDING_LOGS):
        self._gateway = gateway
        self._pending: deque = deque(maxlen=max_pending)

    def log(
        self,
        role: str,
        text: str,
        contact_id: Optional[str] = None,
        display_name: Optional[str] = None,
        is_group: bool = False,
        agent_id: Optional[int] = None,
        message_id: Optional[str] = None,
    ) -> Optional[int]:
        """Record one line. Returns the inserted row id, or None."""
        where = f" ({'group' if is_group else 'contact'}: {contact_id})" if contact_id else ""
        logger.info(f"[{role.upper()}] agent={agent_id} {text[:80]}{where}")

        if not contact_id:
            return None

        entry = {
            "timestamp": datetime.now(),
            "role": role,
            "message": text,
            "contact_id": contact_id,
            "display_name": display_name,
            "is_group": is_group,
            "agent_id": agent_id,
            "message_id": message_id,
            # An id means the message went out through a session
            "status": MessageStatus.SENT.value if message_id and role != "client" else None,
        }

        try:
            row_id = self._gateway.insert("conversation_logs", entry)
        except Exception as e:
            logger.error(f"Failed to save conversation log, queued for retry: {e}")
            self._pending.append(entry)
            return None

        self._flush_pending()
        return row_id

    def _flush_pending(self) -> None:
        while self._pending:
            entry = self._pending[0]
            try:
                self._gateway.insert("conversation_logs", entry)
            except Exception as e:
                logger.debug(f"Log queue flush stopped: {e}")
                return
            self._pending.popleft()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def update_message_status(self, message_id: str, status: MessageStatus) -> int:
        """Set the delivery status of an outbound message by its id."""
        return self._gateway.update(
            "conversation_logs",
            {"status": status},
            "message_id = ?",
            (message_id,),
        )

    def get_logs_for_contact(self, contact_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        rows = self._gateway.find_all(
            "conversation_logs",
            "contact_id = ?",
            (contact_id,),
            order_by="id DESC",
        )
        return list(reversed(rows[:limit]))

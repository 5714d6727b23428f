"""
Follow-Up Service - Pending Follow-Up Bookkeeping
==================================================

Tracks which contacts have a follow-up pending. Sending the follow-up
messages is done by a separate batch job; the router only needs to know
whether one is active and to cancel it when the contact writes back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from ..persistence.database import PersistenceGateway, parse_timestamp

logger = logging.getLogger(__name__)

FOLLOW_UP_INTERVAL = timedelta(minutes=10)


@dataclass
class FollowUp:
    contact_id: str
    chat_id: str
    attempts: int = 0
    next_follow_up: Optional[datetime] = None
    started_at: Optional[datetime] = None


class FollowUpService:
    """In-memory follow-up table mirrored to the follow_ups store table."""

    def __init__(self, gateway: PersistenceGateway, interval: timedelta = FOLLOW_UP_INTERVAL):
        self._gateway = gateway
        self._interval = interval
        self._follow_ups: Dict[str, FollowUp] = {}

    def load(self) -> int:
        """Rebuild the in-memory table from the store. Returns count loaded."""
        for row in self._gateway.find_all("follow_ups"):
            self._follow_ups[row["contact_id"]] = FollowUp(
                contact_id=row["contact_id"],
                chat_id=row["chat_id"],
                attempts=row.get("attempts") or 0,
                next_follow_up=parse_timestamp(row.get("next_follow_up")),
                started_at=parse_timestamp(row.get("started_at")),
            )
        return len(self._follow_ups)

    def start_follow_up(self, contact_id: str, chat_id: str) -> FollowUp:
        now = datetime.now()
        follow_up = FollowUp(
            contact_id=contact_id,
            chat_id=chat_id,
            next_follow_up=now + self._interval,
            started_at=now,
        )
        self._follow_ups[contact_id] = follow_up

        try:
            self._gateway.delete("follow_ups", "contact_id = ?", (contact_id,))
            self._gateway.insert("follow_ups", {
                "contact_id": contact_id,
                "chat_id": chat_id,
                "attempts": 0,
                "next_follow_up": follow_up.next_follow_up,
                "started_at": now,
            })
        except Exception as e:
            logger.error(f"Failed to save follow-up for {contact_id}: {e}")

        logger.info(f"Follow-up started for {contact_id}, next in {self._interval}")
        return follow_up

    def has_active_follow_up(self, contact_id: str) -> bool:
        return contact_id in self._follow_ups

    def get(self, contact_id: str) -> Optional[FollowUp]:
        return self._follow_ups.get(contact_id)

    def cancel_follow_up(self, contact_id: str, reason: str = "Contact replied") -> bool:
        """Drop the follow-up for a contact. Returns False if none was active."""
        if self._follow_ups.pop(contact_id, None) is None:
            return False

        try:
            self._gateway.delete("follow_ups", "contact_id = ?", (contact_id,))
        except Exception as e:
            logger.error(f"Failed to delete follow-up for {contact_id}: {e}")

        logger.info(f"Follow-up cancelled for {contact_id}: {reason}")
        return True

"""
WhatsApp address classification by suffix convention.
"""

from enum import Enum
from typing import Optional

INDIVIDUAL_SUFFIXES = ("@s.whatsapp.net", "@c.us")
GROUP_SUFFIX = "@g.us"
STATUS_ADDRESS = "status@broadcast"
BROADCAST_SUFFIX = "@broadcast"
CHANNEL_SUFFIX = "@newsletter"

DEFAULT_INDIVIDUAL_SUFFIX = "@s.whatsapp.net"


class AddressKind(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"
    BROADCAST = "broadcast"
    STATUS = "status"
    CHANNEL = "channel"
    UNKNOWN = "unknown"


def classify_address(address: Optional[str]) -> AddressKind:
    """Classify a remote address (JID) by its suffix."""
    if not address:
        return AddressKind.UNKNOWN
    if address == STATUS_ADDRESS:
        return AddressKind.STATUS
    if address.endswith(INDIVIDUAL_SUFFIXES):
        return AddressKind.INDIVIDUAL
    if address.endswith(GROUP_SUFFIX):
        return AddressKind.GROUP
    if address.endswith(BROADCAST_SUFFIX):
        return AddressKind.BROADCAST
    if address.endswith(CHANNEL_SUFFIX):
        return AddressKind.CHANNEL
    return AddressKind.UNKNOWN


def contact_id_from_address(address: str) -> str:
    """Strip the domain part: '5551@s.whatsapp.net' -> '5551'."""
    return address.split("@", 1)[0]


def to_chat_address(contact_id: str, is_group: bool = False) -> str:
    """Bare contact ids get the individual (or group) suffix; full addresses pass through."""
    if "@" in contact_id:
        return contact_id
    return f"{contact_id}{GROUP_SUFFIX if is_group else DEFAULT_INDIVIDUAL_SUFFIX}"

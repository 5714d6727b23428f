from .session_client import SessionClient, SessionClientFactory
from .whatsapp_client import (
    SeleniumSessionClient,
    SeleniumSessionClientFactory,
    WhatsAppClientError,
    WhatsAppBlockedError,
    clear_credential_store,
)

__all__ = [
    "SessionClient",
    "SessionClientFactory",
    "SeleniumSessionClient",
    "SeleniumSessionClientFactory",
    "WhatsAppClientError",
    "WhatsAppBlockedError",
    "clear_credential_store",
]

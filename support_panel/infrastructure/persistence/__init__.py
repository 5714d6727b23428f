from .database import (
    Database,
    PersistenceGateway,
    PersistenceError,
    init_database,
    parse_timestamp,
)
from .conversation_log import ConversationLogger

__all__ = [
    "Database",
    "PersistenceGateway",
    "PersistenceError",
    "init_database",
    "parse_timestamp",
    "ConversationLogger",
]

"""
Session errors raised by the application layer.

The web layer maps them to HTTP status codes; everything else that can go
wrong on a session (close, logout, persistence) is logged and swallowed.
"""


class SessionError(Exception):
    """Base exception for session lifecycle errors."""

    def __init__(self, agent_id: int, message: str):
        self.agent_id = agent_id
        super().__init__(message)


class SessionCreationError(SessionError):
    """The session client could not be created or connected."""
    pass


class InstanceNotAvailableError(SessionError):
    """No instance (or no client) exists for the agent."""

    def __init__(self, agent_id: int):
        super().__init__(agent_id, f"Instance not available for agent {agent_id}")


class InstanceNotConnectedError(SessionError):
    """The instance exists but its session is not connected."""

    def __init__(self, agent_id: int):
        super().__init__(agent_id, f"Instance for agent {agent_id} is not connected")


class CredentialStoreError(SessionError):
    """The agent's saved session could not be wiped."""
    pass

"""Python client for the tourney API session."""

from tourney.client.api_client import SecureClient, SessionExpiredError
from tourney.client.idle import (
    IdleMonitor,
    IdleState,
    InMemoryActivityStorage,
    clear_session_data,
    has_active_session,
    session_remaining_time,
)
from tourney.client.session import ClientSession

__all__ = [
    "SecureClient",
    "SessionExpiredError",
    "IdleMonitor",
    "IdleState",
    "InMemoryActivityStorage",
    "clear_session_data",
    "has_active_session",
    "session_remaining_time",
    "ClientSession",
]

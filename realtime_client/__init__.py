"""Client library for the realtime gateway."""
from .client import CredentialProvider, RealtimeClient, StaticCredential
from .reconnection import (
    Action,
    ActionType,
    ReconnectController,
    ReconnectPolicy,
    ReconnectState,
    Signal,
)

__all__ = [
    "Action",
    "ActionType",
    "CredentialProvider",
    "RealtimeClient",
    "ReconnectController",
    "ReconnectPolicy",
    "ReconnectState",
    "Signal",
    "StaticCredential",
]

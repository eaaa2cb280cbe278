"""
Connection lifecycle — one logical connection, its states, and how each
disconnect is classified (terminal vs. retryable).
"""

from devicelink.connection.backoff import ReconnectPolicy
from devicelink.connection.machine import ConnectionStateMachine
from devicelink.connection.state import (
    ConnectionState,
    DisconnectKind,
    DisconnectReason,
    StatusCode,
    classify_close,
    classify_disconnect,
    classify_error,
)

__all__ = [
    "ConnectionState",
    "ConnectionStateMachine",
    "DisconnectKind",
    "DisconnectReason",
    "ReconnectPolicy",
    "StatusCode",
    "classify_close",
    "classify_disconnect",
    "classify_error",
]

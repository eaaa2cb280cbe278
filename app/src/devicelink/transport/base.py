"""
Base Transport Interface - Abstract base class for the protocol connection.

The transport is a black box around the remote service's wire protocol and
cryptography. The state machine talks to it only through this interface:
connect with whatever credentials are persisted, consume its ordered event
stream, send while open, and close gracefully.

A transport instance covers exactly one connection attempt. Reconnecting
means building a fresh instance from the factory.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator

from devicelink.credentials.models import Credentials
from devicelink.transport.channel import EventChannel
from devicelink.transport.events import TransportEvent

logger = logging.getLogger(__name__)


class Transport(ABC):
    """
    Base class for all transports.

    Subclasses feed protocol callbacks into `self._channel` via `_emit()`;
    the default events() drains that channel in order.
    """

    # Transport name - used in logs and status output
    name: str = "base"

    def __init__(self, browser: tuple[str, str, str] | None = None):
        self.browser = browser
        self._channel = EventChannel()

    @abstractmethod
    async def connect(self, credentials: Credentials) -> None:
        """
        Open the connection.

        Args:
            credentials: The persisted session material. Empty or
                unregistered credentials mean the remote should start pairing
                and emit ChallengeIssued events.
        """

    @abstractmethod
    async def send(self, payload: bytes) -> None:
        """
        Send a frame on the open connection.

        Raises:
            devicelink.core.errors.TransportError: if the connection is not usable
        """

    @abstractmethod
    async def close(self) -> None:
        """
        Graceful close: tell the remote we are leaving, then end the event
        stream. Must not destroy credentials.
        """

    async def get_status(self) -> dict:
        """Transport status for diagnostics."""
        return {"transport": self.name, "pending_events": self._channel.pending()}

    def events(self) -> AsyncIterator[TransportEvent]:
        """Ordered stream of connection events. Ends after close()."""
        return self._channel.__aiter__()

    # ─── Helper Methods ───────────────────────────────────────────

    def _emit(self, event: TransportEvent) -> None:
        """Internal: queue an event for the consumer."""
        if not self._channel.put(event):
            logger.debug("%s: event after close ignored: %r", self.name, event)

    def _end_stream(self) -> None:
        self._channel.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(name={self.name})>"

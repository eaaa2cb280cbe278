"""
Memory Transport — an in-process transport driven by a script.

Replays a fixed list of events on connect, and accepts more via emit().
Used to embed devicelink behind a protocol library that already runs in the
same process, and to exercise the lifecycle without a network.
"""

from __future__ import annotations

import logging
from typing import Iterable

from devicelink.core.errors import TransportError
from devicelink.credentials.models import Credentials
from devicelink.transport.base import Transport
from devicelink.transport.events import TransportEvent

logger = logging.getLogger(__name__)


class MemoryTransport(Transport):
    name = "memory"

    def __init__(
        self,
        script: Iterable[TransportEvent] = (),
        *,
        browser: tuple[str, str, str] | None = None,
        fail_connect: BaseException | None = None,
    ):
        super().__init__(browser=browser)
        self._script = list(script)
        self._fail_connect = fail_connect
        self.connected = False
        self.closed_gracefully = False
        self.connected_with: Credentials | None = None
        self.sent: list[bytes] = []

    async def connect(self, credentials: Credentials) -> None:
        if self._fail_connect is not None:
            raise self._fail_connect
        self.connected_with = credentials
        self.connected = True
        logger.debug(
            "Memory transport connected (registered=%s, scripted_events=%d)",
            credentials.registered,
            len(self._script),
        )
        for event in self._script:
            self._emit(event)

    def emit(self, event: TransportEvent) -> None:
        """Push an event as if the remote had sent it."""
        self._emit(event)

    async def send(self, payload: bytes) -> None:
        if not self.connected:
            raise TransportError("Memory transport is not connected")
        self.sent.append(payload)

    async def close(self) -> None:
        if self.connected:
            self.closed_gracefully = True
        self.connected = False
        self._end_stream()

    async def get_status(self) -> dict:
        status = await super().get_status()
        status.update({"connected": self.connected, "sent": len(self.sent)})
        return status

"""
Event Channel — ordered, single-consumer async queue for transport events.

Transport libraries report through callbacks fired from their own receive
loops. Pushing those callbacks into one channel lets the state machine
handle them strictly in arrival order, one at a time, without nesting
callback registrations.

Design:
- One consumer, one asyncio.Queue, unbounded (events are never dropped:
  losing a credential update would corrupt the session)
- Non-blocking: put() never blocks the producer
- close() ends iteration after everything already queued is delivered

Usage:
    channel = EventChannel()

    # Producer side (transport callback)
    channel.put(Opened())

    # Consumer side
    async for event in channel:
        handle(event)

    # Done
    channel.close()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)

# Sentinel to signal end of stream
_STREAM_END = object()


class EventChannel:
    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: Any) -> bool:
        """Enqueue an event. Returns False if the channel is already closed."""
        if self._closed:
            logger.debug("Event channel closed, dropping %s", type(event).__name__)
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        """Signal end-of-stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_STREAM_END)

    def pending(self) -> int:
        """Number of undelivered events (excluding the end marker)."""
        size = self._queue.qsize()
        return size - 1 if self._closed and size else size

    async def get(self) -> Any:
        """Next event, or raises StopAsyncIteration once the stream ended."""
        item = await self._queue.get()
        if item is _STREAM_END:
            # Leave the marker in place so every later get() ends too.
            self._queue.put_nowait(_STREAM_END)
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        return await self.get()

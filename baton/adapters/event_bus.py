"""Per-connection outbound queue.

The bridge publishes frames from request tasks; each WebSocket
connection drains its own bus in a writer task, so one slow client
backs up only its own queue.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from baton.adapters.transport import TransportFrame

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging the room hub to one connection's writer."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[TransportFrame] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def publish(self, frame: TransportFrame) -> bool:
        """Queue a frame without blocking. False if closed or full."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "EventBus queue full, dropping %s (queue size: %d)",
                frame.event, self._queue.qsize(),
            )
            return False
        return True

    async def emit(self, frame: TransportFrame, timeout: float = 30.0) -> bool:
        """Queue a frame, waiting up to *timeout* for room."""
        if self._closed:
            return False
        try:
            await asyncio.wait_for(self._queue.put(frame), timeout=timeout)
        except asyncio.TimeoutError:
            self.dropped += 1
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                timeout, frame.event, self._queue.qsize(),
            )
            return False
        return True

    async def consume(self) -> AsyncIterator[TransportFrame]:
        """Yield frames as they arrive. Stops on close()."""
        while not self._closed:
            try:
                frame = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield frame

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

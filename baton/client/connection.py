"""WebSocket client for the bridge.

``BridgeConnection`` keeps one socket open to ``{backend_url}/ws`` and
reconnects on a fixed interval when it drops. Joined rooms are
remembered and replayed after every reconnect, so subscriptions
survive transport failures. Nothing in flight is resent.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from baton.adapters.transport import Handler, HandlerRegistry, Transport, TransportFrame
from baton.engine.errors import TransportError

logger = logging.getLogger(__name__)


def ws_url(backend_url: str) -> str:
    url = backend_url.rstrip("/")
    if url.startswith("https://"):
        url = "wss://" + url[len("https://"):]
    elif url.startswith("http://"):
        url = "ws://" + url[len("http://"):]
    return url if url.endswith("/ws") else url + "/ws"


class BridgeConnection(Transport):
    """Reconnecting WebSocket transport owned by its caller."""

    def __init__(
        self,
        backend_url: str,
        *,
        reconnect_interval: float = 0.5,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = ws_url(backend_url)
        self._interval = reconnect_interval
        self._session = session
        self._owns_session = session is None
        self._handlers = HandlerRegistry()
        self._rooms: set[str] = set()
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._ready = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._closing = False
        self.reconnects = 0

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def rooms(self) -> set[str]:
        return set(self._rooms)

    async def connect(self, timeout: float | None = 10.0) -> None:
        """Start the connection loop and wait for the first socket."""
        if self._task is None or self._task.done():
            self._closing = False
            if self._session is None:
                self._session = aiohttp.ClientSession()
            self._task = asyncio.create_task(self._run())
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Could not connect to {self._url}") from exc

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _run(self) -> None:
        attempt = 0
        while not self._closing:
            try:
                async with self._session.ws_connect(self._url, heartbeat=30.0) as ws:
                    self._ws = ws
                    if attempt:
                        self.reconnects += 1
                        logger.info("Reconnected to %s (attempt %d)", self._url, attempt)
                    attempt = 0
                    await self._replay_rooms()
                    self._ready.set()
                    await self._read(ws)
            except (aiohttp.ClientError, OSError) as exc:
                logger.debug("Connection to %s failed: %s", self._url, exc)
            finally:
                self._ws = None
                self._ready.clear()
            if self._closing:
                break
            attempt += 1
            logger.warning("Bridge connection lost; retrying in %.1fs", self._interval)
            await asyncio.sleep(self._interval)

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = TransportFrame.from_json(msg.data)
                except TransportError as exc:
                    logger.warning("Ignoring frame from bridge: %s", exc)
                    continue
                await self._handlers.dispatch(frame)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Bridge socket error: %s", ws.exception())
                break

    async def _replay_rooms(self) -> None:
        for room in sorted(self._rooms):
            await self._send(TransportFrame("join", {"room": room}))

    async def _send(self, frame: TransportFrame) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError(f"Cannot emit {frame.event}: not connected")
        try:
            await ws.send_str(frame.to_json())
        except ConnectionResetError as exc:
            raise TransportError(f"Cannot emit {frame.event}: {exc}") from exc

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        await self._send(TransportFrame(event, data))

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.on(event, handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        self._handlers.off(event, handler)

    async def join(self, room: str) -> None:
        self._rooms.add(room)
        if self.connected:
            await self._send(TransportFrame("join", {"room": room}))

    async def leave(self, room: str) -> None:
        self._rooms.discard(room)
        if self.connected:
            await self._send(TransportFrame("leave", {"room": room}))

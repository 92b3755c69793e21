"""Room-scoped fan-out owned by the bridge server.

Every connected client (WebSocket or in-process) is a subscriber with
its own ``EventBus``. Outbound events go to all members of a room, or
to everybody when no room is given. Inbound frames are routed to the
handler registered for their event name; ``join`` and ``leave`` are
handled here because they only touch room membership.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from baton.adapters.event_bus import EventBus
from baton.adapters.transport import Handler, HandlerRegistry, Transport, TransportFrame
from baton.engine.errors import BridgeError, TransportError
from baton.engine.models import make_id

logger = logging.getLogger(__name__)

InboundHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass
class _Subscriber:
    bus: EventBus
    rooms: set[str] = field(default_factory=set)


class RoomHub:
    """Connection registry plus room membership."""

    def __init__(self) -> None:
        self._subscribers: dict[str, _Subscriber] = {}
        self._rooms: dict[str, set[str]] = {}
        self._routes: dict[str, InboundHandler] = {}

    # ── Connections ──

    def connect(self, bus: EventBus | None = None) -> str:
        conn_id = make_id()
        self._subscribers[conn_id] = _Subscriber(bus=bus or EventBus())
        logger.info("Client %s connected (clients=%d)", conn_id[:8], len(self._subscribers))
        return conn_id

    def disconnect(self, conn_id: str) -> None:
        sub = self._subscribers.pop(conn_id, None)
        if sub is None:
            return
        for room in sub.rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(conn_id)
                if not members:
                    del self._rooms[room]
        sub.bus.close()
        logger.info("Client %s disconnected (clients=%d)", conn_id[:8], len(self._subscribers))

    def bus(self, conn_id: str) -> EventBus | None:
        sub = self._subscribers.get(conn_id)
        return sub.bus if sub else None

    @property
    def connection_count(self) -> int:
        return len(self._subscribers)

    # ── Rooms ──

    def join(self, conn_id: str, room: str) -> None:
        sub = self._subscribers.get(conn_id)
        if sub is None:
            raise TransportError(f"Unknown connection {conn_id}")
        sub.rooms.add(room)
        self._rooms.setdefault(room, set()).add(conn_id)
        logger.debug("Client %s joined %s", conn_id[:8], room)

    def leave(self, conn_id: str, room: str) -> None:
        sub = self._subscribers.get(conn_id)
        if sub is not None:
            sub.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn_id)
            if not members:
                del self._rooms[room]

    def rooms_of(self, conn_id: str) -> set[str]:
        sub = self._subscribers.get(conn_id)
        return set(sub.rooms) if sub else set()

    def members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, set()))

    # ── Outbound ──

    async def publish(self, event: str, data: dict[str, Any], room: str | None = None) -> int:
        """Fan an event out. Matches the engine's emit callback signature."""
        frame = TransportFrame(event=event, data=data)
        targets = self._rooms.get(room, set()) if room else set(self._subscribers)
        delivered = 0
        for conn_id in list(targets):
            sub = self._subscribers.get(conn_id)
            if sub is not None and sub.bus.publish(frame):
                delivered += 1
        if room and not delivered:
            logger.debug("No subscribers in %s for %s", room, event)
        return delivered

    def send_to(self, conn_id: str, event: str, data: dict[str, Any]) -> bool:
        sub = self._subscribers.get(conn_id)
        if sub is None:
            return False
        return sub.bus.publish(TransportFrame(event=event, data=data))

    # ── Inbound ──

    def route(self, event: str, handler: InboundHandler) -> None:
        self._routes[event] = handler

    async def receive(self, conn_id: str, frame: TransportFrame) -> None:
        data = frame.data
        if frame.event in ("join", "leave"):
            room = data.get("room")
            if not room and data.get("conversationId"):
                room = f"conversation-{data['conversationId']}"
            if not room and data.get("projectId"):
                room = f"project-{data['projectId']}"
            if not room:
                self.send_to(conn_id, "error", {"error": f"{frame.event} requires a room"})
                return
            if frame.event == "join":
                self.join(conn_id, room)
            else:
                self.leave(conn_id, room)
            return

        handler = self._routes.get(frame.event)
        if handler is None:
            logger.warning("No route for inbound event %s", frame.event)
            self.send_to(conn_id, "error", {"error": f"Unknown event {frame.event}"})
            return
        try:
            await handler(conn_id, data)
        except BridgeError as exc:
            logger.info("Inbound %s rejected: %s", frame.event, exc)
            self.send_to(conn_id, "error", {
                "error": str(exc),
                "requestId": data.get("requestId"),
                "conversationId": data.get("conversationId"),
            })


class LocalConnection(Transport):
    """In-process client attached straight to a ``RoomHub``."""

    def __init__(self, hub: RoomHub) -> None:
        self._hub = hub
        self._handlers = HandlerRegistry()
        self._conn_id: str | None = None
        self._pump: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._conn_id is not None

    async def connect(self) -> None:
        if self._conn_id is not None:
            return
        bus = EventBus()
        self._conn_id = self._hub.connect(bus)
        self._pump = asyncio.create_task(self._drain(bus))

    async def _drain(self, bus: EventBus) -> None:
        async for frame in bus.consume():
            await self._handlers.dispatch(frame)

    async def disconnect(self) -> None:
        if self._conn_id is None:
            return
        self._hub.disconnect(self._conn_id)
        self._conn_id = None
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None

    async def emit(self, event: str, data: dict[str, Any]) -> None:
        if self._conn_id is None:
            raise TransportError(f"Cannot emit {event}: not connected")
        await self._hub.receive(self._conn_id, TransportFrame(event=event, data=data))

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.on(event, handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        self._handlers.off(event, handler)

    async def join(self, room: str) -> None:
        if self._conn_id is None:
            raise TransportError(f"Cannot join {room}: not connected")
        self._hub.join(self._conn_id, room)

    async def leave(self, room: str) -> None:
        if self._conn_id is not None:
            self._hub.leave(self._conn_id, room)

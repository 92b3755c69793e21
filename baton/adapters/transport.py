"""Pub/sub transport between the bridge and its clients.

Both ends speak the same frame: ``{"event": name, "data": {...}}``.
``Transport`` is the surface the receiving side programs against;
the in-process ``RoomHub`` and the WebSocket ``BridgeConnection``
both provide it.
"""
from __future__ import annotations

import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from baton.engine.errors import TransportError

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], "Awaitable[None] | None"]


def conversation_room(conversation_id: str) -> str:
    return f"conversation-{conversation_id}"


def project_room(project_id: str) -> str:
    return f"project-{project_id}"


@dataclass
class TransportFrame:
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, raw: str) -> TransportFrame:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TransportError(f"Malformed frame: {exc}") from exc
        if not isinstance(parsed, dict) or not isinstance(parsed.get("event"), str):
            raise TransportError("Frame must be an object with an 'event' string")
        data = parsed.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise TransportError(f"Frame data for {parsed['event']} must be an object")
        return cls(event=parsed["event"], data=data)


class HandlerRegistry:
    """Event name -> handlers, called in registration order."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers(self, event: str) -> list[Handler]:
        return list(self._handlers.get(event, []))

    async def dispatch(self, frame: TransportFrame) -> int:
        """Call every handler for the frame's event. Returns how many ran."""
        handlers = self.handlers(frame.event)
        for handler in handlers:
            try:
                result = handler(frame.data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", frame.event)
        return len(handlers)


class Transport(ABC):
    """Typed pub/sub channel with room scoping."""

    @abstractmethod
    async def emit(self, event: str, data: dict[str, Any]) -> None:
        """Send one event. Raises ``TransportError`` when not connected."""

    @abstractmethod
    def on(self, event: str, handler: Handler) -> None:
        ...

    @abstractmethod
    def off(self, event: str, handler: Handler | None = None) -> None:
        ...

    @abstractmethod
    async def join(self, room: str) -> None:
        ...

    @abstractmethod
    async def leave(self, room: str) -> None:
        ...

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

"""Adapters package - transport glue between the bridge and its clients."""
from __future__ import annotations

__all__ = [
    "EventBus",
    "HandlerRegistry",
    "Transport",
    "TransportFrame",
]

from baton.adapters.event_bus import EventBus
from baton.adapters.transport import HandlerRegistry, Transport, TransportFrame

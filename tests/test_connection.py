"""Client WebSocket connection helpers."""

from __future__ import annotations

import socket

import pytest

from baton.client.connection import BridgeConnection, ws_url
from baton.engine.errors import TransportError


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_ws_url():
    assert ws_url("http://localhost:3001") == "ws://localhost:3001/ws"
    assert ws_url("https://bridge.example.com/") == "wss://bridge.example.com/ws"
    assert ws_url("ws://127.0.0.1:8080/ws") == "ws://127.0.0.1:8080/ws"


@pytest.mark.asyncio
async def test_connect_times_out_without_a_server():
    connection = BridgeConnection(f"http://127.0.0.1:{_free_port()}", reconnect_interval=0.05)
    try:
        with pytest.raises(TransportError):
            await connection.connect(timeout=0.3)
        assert not connection.connected
        with pytest.raises(TransportError):
            await connection.emit("send-message", {})
    finally:
        await connection.close()


@pytest.mark.asyncio
async def test_rooms_are_remembered_while_disconnected():
    connection = BridgeConnection("http://127.0.0.1:1")

    await connection.join("conversation-c1")
    await connection.join("project-p1")
    await connection.leave("project-p1")

    assert connection.rooms == {"conversation-c1"}

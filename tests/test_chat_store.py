"""Client chat store: optimistic send, stream handling and guards."""

from __future__ import annotations

import re

import pytest
from claude_agent_sdk.types import (
    AssistantMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from baton.adapters.transport import HandlerRegistry, Transport, TransportFrame
from baton.client.chat_store import (
    BRIDGE_MISSING_MESSAGE,
    ChatStore,
    make_request_id,
)
from baton.engine.errors import TransportError
from baton.engine.models import PermissionMode
from baton.engine.runtime import message_to_dict
from baton.server.hub import LocalConnection, RoomHub
from baton.shared.models.message import MessageType


class RecordingTransport(Transport):
    """Transport that records outbound events and dispatches inbound ones."""

    def __init__(self, connected: bool = True) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.rooms: set[str] = set()
        self.registry = HandlerRegistry()
        self._connected = connected

    @property
    def connected(self) -> bool:
        return self._connected

    async def emit(self, event, data):
        if not self._connected:
            raise TransportError(f"Cannot emit {event}: not connected")
        self.sent.append((event, data))

    def on(self, event, handler):
        self.registry.on(event, handler)

    def off(self, event, handler=None):
        self.registry.off(event, handler)

    async def join(self, room):
        self.rooms.add(room)

    async def leave(self, room):
        self.rooms.discard(room)

    async def deliver(self, event, data):
        await self.registry.dispatch(TransportFrame(event, data))


def _chunk(text: str, *, request_id: str, complete: bool = False, message_id: str = "msg_1") -> dict:
    return {
        "type": "claude_json",
        "requestId": request_id,
        "conversationId": "conv-1",
        "isComplete": complete,
        "data": {
            "type": "assistant",
            "message": {"id": message_id, "content": [{"type": "text", "text": text}]},
        },
    }


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def chat(transport):
    store = ChatStore(transport)
    store.attach()
    return store


def test_request_id_shape():
    assert re.fullmatch(r"req_\d+_[a-z0-9]{9}", make_request_id())


@pytest.mark.asyncio
async def test_send_adds_optimistic_message_and_emits(chat, transport):
    await chat.open_conversation("conv-1")
    chat.set_permission_mode("acceptEdits")

    request_id = await chat.send_message("Fix the bug", project_name="shop")

    assert transport.rooms == {"conversation-conv-1"}
    (event, payload), = transport.sent
    assert event == "send-message"
    assert payload["requestId"] == request_id
    assert payload["permissionMode"] == "acceptEdits"
    assert payload["projectName"] == "shop"
    assert payload["sessionId"] is None
    assert chat.is_streaming
    assert chat.current_request_id == request_id
    (message,) = chat.messages
    assert message.type == MessageType.USER
    assert message.optimistic
    assert chat.last_message.permission_mode == PermissionMode.ACCEPT_EDITS


@pytest.mark.asyncio
async def test_send_while_disconnected_sets_error():
    chat = ChatStore(RecordingTransport(connected=False))
    chat.select_conversation("conv-1")

    with pytest.raises(TransportError):
        await chat.send_message("hello")

    assert chat.error == "Not connected to chat service"
    assert not chat.is_streaming
    assert chat.current_request_id is None
    assert len(chat.messages) == 1


@pytest.mark.asyncio
async def test_stream_chunks_grow_one_message(chat, transport):
    chat.select_conversation("conv-1")
    request_id = await chat.send_message("Say hello")

    await transport.deliver("stream-response", _chunk("Hel", request_id=request_id))
    await transport.deliver("stream-response", _chunk("Hello", request_id=request_id))
    await transport.deliver("stream-response", {
        "type": "done", "requestId": request_id, "conversationId": "conv-1", "isComplete": True,
    })

    assert [m.content for m in chat.messages] == ["Say hello", "Hello"]
    assert not chat.is_streaming

    await transport.deliver("message-complete", {"requestId": request_id, "conversationId": "conv-1"})
    assert chat.current_request_id is None


@pytest.mark.asyncio
async def test_other_conversation_and_stale_request_are_ignored(chat, transport):
    chat.select_conversation("conv-1")
    request_id = await chat.send_message("Second question")

    await transport.deliver("stream-response", {**_chunk("old", request_id="req_old"), "conversationId": "conv-1"})
    await transport.deliver("stream-response", {**_chunk("elsewhere", request_id=request_id), "conversationId": "conv-2"})

    assert [m.content for m in chat.messages] == ["Second question"]
    assert chat.is_streaming


@pytest.mark.asyncio
async def test_session_id_only_set_once(chat, transport):
    await transport.deliver("session-id-available", {"conversationId": "conv-1", "sessionId": "sess-1"})
    await transport.deliver("session-id-available", {"conversationId": "conv-1", "sessionId": "sess-2"})

    assert chat.selected_conversation_id == "conv-1"
    assert chat.session_state["conv-1"].session_id == "sess-1"
    assert chat.session_state["conv-1"].source == "claude-new"
    assert chat.is_session_ready("conv-1")

    await chat.send_message("next")
    assert transport.sent[-1][1]["sessionId"] == "sess-1"


@pytest.mark.asyncio
async def test_bridge_missing_error_and_retry(chat, transport):
    chat.select_conversation("conv-1")
    await chat.send_message("Run it", attachments=[{"path": "a.py"}])

    await transport.deliver("error", {"conversationId": "conv-1", "error": "No bridge service connected"})

    assert chat.bridge_service_error
    assert chat.error == BRIDGE_MISSING_MESSAGE
    assert not chat.is_streaming

    retried = await chat.retry_last_message()

    assert not chat.bridge_service_error
    assert chat.error is None
    payload = transport.sent[-1][1]
    assert payload["requestId"] == retried
    assert payload["content"] == "Run it"
    assert payload["attachments"] == [{"path": "a.py"}]


@pytest.mark.asyncio
async def test_abort_and_aborted(chat, transport):
    assert await chat.abort() is False

    chat.select_conversation("conv-1")
    request_id = await chat.send_message("Long task")
    assert await chat.abort() is True
    assert transport.sent[-1] == ("abort-message", {"requestId": request_id, "conversationId": "conv-1"})

    await transport.deliver("aborted", {"conversationId": "conv-1", "requestId": request_id})
    assert not chat.is_streaming
    assert chat.current_request_id is None


@pytest.mark.asyncio
async def test_prompts_tracked_until_resolved(chat, transport):
    chat.select_conversation("conv-1")

    await transport.deliver("interactive-prompt", {"promptId": "p1", "conversationId": "conv-1", "title": "Write"})
    await transport.deliver("permission-pending", {"promptId": "p1", "conversationId": "conv-1", "message": "waiting"})
    assert chat.pending_prompts["p1"]["title"] == "Write"
    assert chat.pending_prompts["p1"]["message"] == "waiting"

    await chat.respond_to_prompt("p1", "4", feedback="not now")
    assert transport.sent[-1] == ("permission-respond", {"promptId": "p1", "optionId": "4", "feedback": "not now"})

    await transport.deliver("prompt-resolved", {"promptId": "p1"})
    assert chat.pending_prompts == {}


@pytest.mark.asyncio
async def test_new_chat_resets_and_notifies(chat, transport):
    notified = []
    unsubscribe = chat.subscribe(lambda store: notified.append(store.selected_conversation_id))
    await chat.open_conversation("conv-1", rows=[
        {"id": "m1", "role": "user", "content": "Hi", "createdAt": 1},
        {"id": "m1", "role": "user", "content": "Hi", "createdAt": 1},
        {"id": "m2", "role": "assistant", "content": "Hello", "createdAt": 2},
    ])
    assert [m.id for m in chat.messages] == ["m1", "m2"]
    assert not chat.is_new_chat()

    await chat.start_new_chat()

    assert transport.sent[-1] == ("new-chat", {"conversationId": "conv-1"})
    assert chat.messages == []
    assert chat.is_new_chat()
    assert notified[-1] is None
    unsubscribe()
    chat.select_conversation("conv-2")
    assert notified[-1] is None


@pytest.mark.asyncio
async def test_detach_stops_handling(chat, transport):
    chat.detach()
    await transport.deliver("session-id-available", {"conversationId": "conv-1", "sessionId": "s"})
    assert chat.session_state == {}


@pytest.mark.asyncio
async def test_store_over_local_connection(wait_until):
    hub = RoomHub()
    client = LocalConnection(hub)
    received = []

    async def send_message(conn_id, data):
        hub.join(conn_id, f"conversation-{data['conversationId']}")
        received.append(data)
        await hub.publish("stream-response", _chunk(
            "Hi!", request_id=data["requestId"], message_id="msg_9",
        ), f"conversation-{data['conversationId']}")

    hub.route("send-message", send_message)
    await client.connect()
    chat = ChatStore(client)
    chat.attach()

    await chat.open_conversation("conv-1")
    await chat.send_message("Hello")
    await wait_until(lambda: len(chat.messages) == 2)

    assert received[0]["content"] == "Hello"
    assert chat.messages[-1].content == "Hi!"
    await client.disconnect()


def _wire(event, request_id: str, complete: bool = False) -> dict:
    return {
        "type": "claude_json",
        "requestId": request_id,
        "conversationId": "conv-1",
        "isComplete": complete,
        "data": message_to_dict(event),
    }


@pytest.mark.asyncio
async def test_tool_turn_from_sdk_messages_keeps_user_text(chat, transport):
    chat.select_conversation("conv-1")
    request_id = await chat.send_message("Please write the file")

    tool_call = AssistantMessage(
        content=[ToolUseBlock(id="toolu_1", name="Write", input={"file_path": "a.txt"})],
        model="claude-sonnet",
        message_id="msg_real_1",
    )
    tool_result = UserMessage(
        content=[ToolResultBlock(tool_use_id="toolu_1", content="written")],
    )
    reply = AssistantMessage(
        content=[TextBlock(text="Done, the file is written.")],
        model="claude-sonnet",
        message_id="msg_real_2",
    )
    for event in (tool_call, tool_result, reply):
        await transport.deliver("stream-response", _wire(event, request_id))

    timeline = [(m.type, m.content) for m in chat.messages]
    assert timeline == [
        (MessageType.USER, "Please write the file"),
        (MessageType.TOOL, ""),
        (MessageType.USER, ""),
        (MessageType.ASSISTANT, "Done, the file is written."),
    ]
    assert chat.messages[0].optimistic
    assert chat.messages[1].id == "msg_real_1"
    assert chat.messages[1].metadata["toolName"] == "Write"
    assert chat.messages[2].metadata["toolUseId"] == "toolu_1"

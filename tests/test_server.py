from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from pathlib import Path

from aiohttp import WSMsgType
from aiohttp.test_utils import AioHTTPTestCase

from baton.client.chat_store import ChatStore
from baton.client.connection import BridgeConnection
from baton.engine.config import BridgeConfig
from baton.engine.errors import InvalidRequestError, RequestConflictError
from baton.engine.models import Prompt, PromptOption, PromptType
from baton.engine.runtime import AssistantRuntime
from baton.server.app import BridgeServer
from baton.shared.models.message import MessageType


class FakeRuntime:
    """Streams a short scripted turn; blocks when ``hold`` is set."""

    def __init__(self) -> None:
        self.hold = asyncio.Event()
        self.hold.set()
        self.prompts: list[str] = []
        self._builder = AssistantRuntime(default_cwd=".")

    def build_options(self, **kwargs):
        return self._builder.build_options(**kwargs)

    async def stream(self, prompt, options):
        self.prompts.append(prompt)
        yield {"type": "system", "subtype": "init", "session_id": "sess-1"}
        await self.hold.wait()
        yield {
            "type": "assistant",
            "message": {"id": "msg_1", "content": [{"type": "text", "text": "Hello from the bridge"}]},
        }
        yield {"type": "result", "subtype": "success", "session_id": "sess-1"}


class TestBridgeServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir)
        self.config = config = BridgeConfig(
            working_dir=str(root / "workspace"),
            db_path=str(root / "baton.db"),
            stats_path=str(root / "stats.json"),
            log_dir=str(root / "logs"),
            user_response_timeout_seconds=5,
            prompt_expiry_seconds=60,
        )
        self.runtime = FakeRuntime()
        self.bridge = BridgeServer(config, runtime=self.runtime)
        return self.bridge.app

    async def asyncTearDown(self):
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _store_prompt(self, conversation_id: str = "conv-1") -> Prompt:
        prompt = Prompt(
            type=PromptType.PERMISSION,
            title="Permission Request",
            message="Can I edit main.py?",
            options=[
                PromptOption(id="1", label="Yes", value="yes"),
                PromptOption(id="2", label="No", value="no", is_default=True),
            ],
            conversation_id=conversation_id,
        )
        self.bridge.store.create_prompt(prompt)
        return prompt

    async def _receive_until(self, ws, event: str, limit: int = 50) -> list[dict]:
        frames = []
        for _ in range(limit):
            msg = await asyncio.wait_for(ws.receive(), timeout=5)
            self.assertEqual(msg.type, WSMsgType.TEXT)
            frames.append(json.loads(msg.data))
            if frames[-1]["event"] == event:
                return frames
        self.fail(f"{event} not received")

    async def test_health(self):
        resp = await self.client.get("/health")
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["active_requests"], 0)

    async def test_abort_unknown_request_is_404(self):
        resp = await self.client.post("/requests/missing/abort")
        self.assertEqual(resp.status, 404)

    async def test_respond_validation_and_conflict(self):
        prompt = self._store_prompt()

        resp = await self.client.post(f"/prompts/{prompt.id}/respond", data="not json")
        self.assertEqual(resp.status, 400)
        resp = await self.client.post(f"/prompts/{prompt.id}/respond", json={})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post(f"/prompts/{prompt.id}/respond", json={"optionId": "9"})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post("/prompts/nope/respond", json={"optionId": "1"})
        self.assertEqual(resp.status, 400)

        resp = await self.client.post(f"/prompts/{prompt.id}/respond", json={"optionId": "1"})
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["status"], "resolved")

        resp = await self.client.post(f"/prompts/{prompt.id}/respond", json={"optionId": "2"})
        self.assertEqual(resp.status, 409)

    async def test_pending_prompts_listing(self):
        prompt = self._store_prompt("conv-1")
        self._store_prompt("conv-2")

        resp = await self.client.get("/conversations/conv-1/prompts")
        body = await resp.json()

        self.assertEqual([p["id"] for p in body["prompts"]], [prompt.id])
        self.assertEqual(body["prompts"][0]["options"][1]["isDefault"], True)

    async def test_websocket_send_message_streams_turn(self):
        ws = await self.client.ws_connect("/ws")
        await ws.send_str(json.dumps({"event": "send-message", "data": {
            "conversationId": "conv-1", "content": "Hi", "requestId": "req-1",
        }}))

        frames = await self._receive_until(ws, "message-complete")
        events = [f["event"] for f in frames]

        self.assertIn("session-id-available", events)
        self.assertEqual(frames[-1]["data"]["content"], "Hello from the bridge")
        self.assertEqual(self.runtime.prompts, ["Hi"])
        await ws.close()

    async def test_websocket_abort(self):
        self.runtime.hold.clear()
        ws = await self.client.ws_connect("/ws")
        await ws.send_str(json.dumps({"event": "send-message", "data": {
            "conversationId": "conv-1", "content": "Long task", "requestId": "req-2",
        }}))
        await self._receive_until(ws, "session-id-available")

        await ws.send_str(json.dumps({"event": "abort-message", "data": {"requestId": "req-2"}}))
        frames = await self._receive_until(ws, "aborted")

        self.assertEqual(frames[-1]["data"]["requestId"], "req-2")
        self.assertFalse(self.bridge.controller.is_active("req-2"))
        await ws.close()

    async def test_websocket_rejects_bad_frames(self):
        ws = await self.client.ws_connect("/ws")
        await ws.send_str("{broken")
        await ws.send_str(json.dumps({"event": "send-message", "data": {"conversationId": "conv-1"}}))

        first = json.loads((await asyncio.wait_for(ws.receive(), timeout=5)).data)
        second = json.loads((await asyncio.wait_for(ws.receive(), timeout=5)).data)

        self.assertEqual(first["event"], "error")
        self.assertIn("Malformed frame", first["data"]["error"])
        self.assertEqual(second["event"], "error")
        self.assertIn("content", second["data"]["error"])
        await ws.close()

    async def test_new_chat_resets_conversation(self):
        self.bridge.store.update_session_id("conv-1", "sess-1")
        ws = await self.client.ws_connect("/ws")
        await ws.send_str(json.dumps({"event": "new-chat", "data": {"conversationId": "conv-1"}}))
        await ws.send_str(json.dumps({"event": "join", "data": {"conversationId": "conv-1"}}))

        for _ in range(100):
            if self.bridge.store.get_conversation("conv-1")["claude_session_id"] is None:
                break
            await asyncio.sleep(0.01)

        self.assertIsNone(self.bridge.store.get_conversation("conv-1")["claude_session_id"])
        await ws.close()

    async def test_stats_include_prompt_counts(self):
        self._store_prompt()
        resp = await self.client.get("/stats")
        body = await resp.json()
        self.assertEqual(body["prompts"], {"pending": 1})

    async def test_chat_store_over_websocket(self):
        connection = BridgeConnection(str(self.client.make_url("/")), session=self.client.session)
        await connection.connect(timeout=5)
        chat = ChatStore(connection)
        chat.attach()
        try:
            await chat.open_conversation("conv-9")
            request_id = await chat.send_message("Hi there")

            for _ in range(200):
                if chat.current_request_id is None and len(chat.messages) >= 2:
                    break
                await asyncio.sleep(0.01)

            self.assertIsNone(chat.current_request_id)
            self.assertFalse(chat.is_streaming)
            self.assertEqual(chat.messages[0].metadata["requestId"], request_id)
            self.assertEqual(chat.messages[0].content, "Hi there")
            replies = [m.content for m in chat.messages if m.type == MessageType.ASSISTANT]
            self.assertEqual(replies, ["Hello from the bridge"])
            self.assertTrue(chat.is_session_ready("conv-9"))
        finally:
            await connection.close()

    async def test_submit_enforces_cap_before_turns_start(self):
        self.config.max_concurrent_requests = 1
        self.runtime.hold.clear()

        await self.bridge.submit(None, {"conversationId": "conv-1", "content": "one", "requestId": "r0"})
        with self.assertRaises(InvalidRequestError):
            await self.bridge.submit(None, {"conversationId": "conv-1", "content": "two", "requestId": "r1"})
        with self.assertRaises(RequestConflictError):
            await self.bridge.submit(None, {"conversationId": "conv-1", "content": "again", "requestId": "r0"})

        self.assertEqual(self.bridge.controller.active_requests(), ["r0"])
        self.runtime.hold.set()
        for _ in range(200):
            if not self.bridge.controller.active_requests():
                break
            await asyncio.sleep(0.01)
        self.assertEqual(self.bridge.controller.active_requests(), [])
        self.assertEqual(self.runtime.prompts, ["one"])

    async def test_websocket_duplicate_request_gets_error(self):
        self.runtime.hold.clear()
        ws = await self.client.ws_connect("/ws")
        frame = json.dumps({"event": "send-message", "data": {
            "conversationId": "conv-1", "content": "Hi", "requestId": "req-dup",
        }})
        await ws.send_str(frame)
        await ws.send_str(frame)

        frames = await self._receive_until(ws, "error")

        self.assertEqual(frames[-1]["data"]["requestId"], "req-dup")
        self.assertIn("already running", frames[-1]["data"]["error"])
        self.runtime.hold.set()
        await self._receive_until(ws, "message-complete")
        await ws.close()

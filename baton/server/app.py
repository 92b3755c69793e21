"""HTTP + WebSocket front end of the bridge.

Routes:
    GET  /ws                          WebSocket, JSON {"event", "data"} frames
    GET  /health                      liveness and counts
    GET  /stats                       bridge statistics
    GET  /conversations/{id}/prompts  pending prompts, newest first
    POST /prompts/{id}/respond        answer a prompt {"optionId", ...}
    POST /requests/{id}/abort         abort a running turn

The server owns one ``RoomHub``; the decision engine and the session
controller publish through it, and every socket gets its own queue.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any

from aiohttp import WSMsgType, web

from baton.adapters.event_bus import EventBus
from baton.adapters.transport import TransportFrame, conversation_room, project_room
from baton.engine.config import BridgeConfig
from baton.engine.context_manager import SessionContextManager
from baton.engine.decision_engine import DecisionEngine
from baton.engine.errors import (
    InvalidPromptError,
    InvalidRequestError,
    RequestNotFoundError,
    TransportError,
)
from baton.engine.permission_gate import PermissionGate
from baton.engine.runtime import AssistantRuntime
from baton.engine.stats import BridgeStats
from baton.engine.streaming_session import ChatRequest, StreamingSessionController, TurnOutcome
from baton.server.hub import RoomHub
from baton.shared.services.command_policy_store import CommandPolicyStore
from baton.shared.services.store import SqliteStore

logger = logging.getLogger(__name__)


class BridgeServer:
    """Wires the engine components together behind aiohttp."""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        store: SqliteStore | None = None,
        runtime=None,
        stats: BridgeStats | None = None,
        hub: RoomHub | None = None,
    ) -> None:
        self._config = config
        self._started_at = time.time()
        self.hub = hub or RoomHub()
        self.stats = stats or BridgeStats(config.stats_path)
        self.store = store or SqliteStore(config.db_path)
        self.runtime = runtime or AssistantRuntime(
            default_cwd=config.working_dir, max_turns=config.max_turns,
        )
        self.engine = DecisionEngine(
            self.store,
            emit=self.hub.publish,
            expiry_seconds=config.prompt_expiry_seconds,
            user_timeout_seconds=config.user_response_timeout_seconds,
            sweep_interval_seconds=config.sweep_interval_seconds,
            stats=self.stats,
        )
        self.policy_store = CommandPolicyStore(config.working_dir)
        self._load_command_policy()
        self.gate = PermissionGate(
            self.engine, self.store, policy_store=self.policy_store, stats=self.stats,
        )
        self.context = SessionContextManager(
            self.store, config, runtime=self.runtime, stats=self.stats,
        )
        self.controller = StreamingSessionController(
            self.runtime, self.context, self.gate, self.engine,
            emit=self.hub.publish, config=config, stats=self.stats,
        )
        self._turn_tasks: set[asyncio.Task] = set()
        self._sockets: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None

        self.hub.route("send-message", self._on_send_message)
        self.hub.route("abort-message", self._on_abort_message)
        self.hub.route("permission-respond", self._on_permission_respond)
        self.hub.route("new-chat", self._on_new_chat)

        self.app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        self.app.on_startup.append(self._on_startup)
        self.app.on_shutdown.append(self._on_shutdown)

    def _load_command_policy(self) -> None:
        rules = self.policy_store.load_compiled()
        allowlist = self.engine.allowlist
        if allowlist is not None and (rules.allow or rules.deny):
            allowlist.add_command_patterns(rules.allow, rules.deny)
            logger.info(
                "Loaded workspace command policy: %d allow, %d deny",
                len(rules.allow), len(rules.deny),
            )

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-baton-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self.app.router
        r.add_get("/ws", self._handle_ws)
        r.add_get("/health", self._handle_health)
        r.add_get("/stats", self._handle_stats)
        r.add_get("/conversations/{id}/prompts", self._handle_pending_prompts)
        r.add_post("/prompts/{id}/respond", self._handle_respond)
        r.add_post("/requests/{id}/abort", self._handle_abort)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self.stats.load()
        self.engine.start_sweeper()

    async def _on_shutdown(self, app: web.Application) -> None:
        logger.info("Shutting down: %d active turns", len(self.controller.active_requests()))
        await self.controller.abort_all()
        if self._turn_tasks:
            await asyncio.gather(*self._turn_tasks, return_exceptions=True)
        self.engine.cancel_all()
        await self.engine.stop_sweeper()
        for ws in list(self._sockets):
            await ws.close(code=1001, message=b"Server shutdown")
        self.stats.save()

    async def start(self) -> int:
        """Bind and serve. Returns the port actually listened on."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        port = self._config.port
        server = getattr(site, "_server", None)
        sockets = getattr(server, "sockets", None) or []
        if sockets:
            port = sockets[0].getsockname()[1]
        logger.info("Bridge listening on %s:%d", self._config.host, port)
        return port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ── Turns ──

    def _spawn_turn(self, request: ChatRequest) -> None:
        task = asyncio.create_task(self.controller.run_turn(request))
        self._turn_tasks.add(task)
        task.add_done_callback(lambda t: self._turn_done(request, t))

    def _turn_done(self, request: ChatRequest, task: asyncio.Task) -> None:
        self._turn_tasks.discard(task)
        if task.cancelled():
            self.controller.discard_reservation(request.request_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Turn task failed: %s", exc, exc_info=exc)
            return
        outcome: TurnOutcome = task.result()
        logger.info(
            "Turn %s finished: %s (%d chars)",
            outcome.request_id, outcome.state, len(outcome.content),
        )
        self.stats.save()

    async def submit(self, conn_id: str | None, data: dict[str, Any]) -> ChatRequest:
        """Validate a send request and start its turn."""
        request = ChatRequest.from_payload(data)
        self.controller.reserve(request)
        if conn_id is not None:
            self.hub.join(conn_id, conversation_room(request.conversation_id))
            if data.get("projectId"):
                self.hub.join(conn_id, project_room(str(data["projectId"])))
        logger.info(
            "send-message request=%s conversation=%s (%d chars)",
            request.request_id, request.conversation_id, len(request.message),
        )
        self._spawn_turn(request)
        return request

    # ── Inbound transport events ──

    async def _on_send_message(self, conn_id: str, data: dict[str, Any]) -> None:
        await self.submit(conn_id, data)

    async def _on_abort_message(self, conn_id: str, data: dict[str, Any]) -> None:
        request_id = data.get("requestId")
        if not request_id:
            raise InvalidRequestError("requestId is required")
        self.controller.abort(str(request_id))

    async def _on_permission_respond(self, conn_id: str, data: dict[str, Any]) -> None:
        prompt_id = data.get("promptId")
        option_id = data.get("optionId") or data.get("selectedOption")
        if not prompt_id or not option_id:
            raise InvalidRequestError("promptId and optionId are required")
        applied = await self.engine.respond(
            str(prompt_id), str(option_id),
            updated_input=data.get("updatedInput"),
            feedback=data.get("feedback"),
        )
        if not applied:
            self.hub.send_to(conn_id, "error", {
                "error": f"Prompt {prompt_id} is already resolved",
                "promptId": prompt_id,
            })

    async def _on_new_chat(self, conn_id: str, data: dict[str, Any]) -> None:
        conversation_id = data.get("conversationId")
        if not conversation_id:
            raise InvalidRequestError("conversationId is required")
        session = self.context.new_chat(str(conversation_id))
        self.gate.reset_conversation(str(conversation_id))
        logger.info("New chat for %s (epoch %d)", conversation_id, session.epoch)

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        bus = EventBus()
        conn_id = self.hub.connect(bus)
        self._sockets.add(ws)
        writer = asyncio.create_task(self._ws_writer(ws, bus))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = TransportFrame.from_json(msg.data)
                    except TransportError as exc:
                        self.hub.send_to(conn_id, "error", {"error": str(exc)})
                        continue
                    await self.hub.receive(conn_id, frame)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket %s closed with error: %s", conn_id[:8], ws.exception())
        finally:
            self.hub.disconnect(conn_id)
            self._sockets.discard(ws)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
        return ws

    async def _ws_writer(self, ws: web.WebSocketResponse, bus: EventBus) -> None:
        async for frame in bus.consume():
            if ws.closed:
                break
            try:
                await ws.send_str(frame.to_json())
            except ConnectionResetError:
                break

    # ── HTTP handlers ──

    @staticmethod
    def _error(status: int, message: str) -> web.Response:
        return web.json_response({"error": message}, status=status)

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_requests": len(self.controller.active_requests()),
            "clients": self.hub.connection_count,
            "pending_prompts": self.engine.delegation.pending_count() if self.engine.delegation else 0,
        })

    async def _handle_stats(self, request: web.Request) -> web.Response:
        snapshot = self.stats.snapshot()
        snapshot["prompts"] = self.store.prompt_status_counts()
        return web.json_response(snapshot)

    async def _handle_pending_prompts(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        prompts = self.engine.get_pending_prompts(conversation_id)
        return web.json_response({"prompts": [p.to_dict() for p in prompts]})

    async def _handle_respond(self, request: web.Request) -> web.Response:
        prompt_id = request.match_info["id"]
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return self._error(400, "Request body must be JSON")
        if not isinstance(body, dict):
            return self._error(400, "Request body must be a JSON object")
        option_id = body.get("optionId") or body.get("selectedOption")
        if not option_id:
            return self._error(400, "optionId is required")
        try:
            applied = await self.engine.respond(
                prompt_id, str(option_id),
                updated_input=body.get("updatedInput"),
                feedback=body.get("feedback"),
            )
        except InvalidPromptError as exc:
            return self._error(400, str(exc))
        if not applied:
            return self._error(409, f"Prompt {prompt_id} is already resolved")
        return web.json_response({"status": "resolved", "promptId": prompt_id})

    async def _handle_abort(self, request: web.Request) -> web.Response:
        request_id = request.match_info["id"]
        try:
            first = self.controller.abort(request_id)
        except RequestNotFoundError as exc:
            return self._error(404, str(exc))
        return web.json_response({"status": "aborting" if first else "already_aborting"})

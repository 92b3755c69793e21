"""Streaming session controller: one assistant turn, end to end.

    starting -> streaming -> {completing | erroring | aborting} -> done

``run_turn`` loads the conversation's session, compacts it if due,
builds runtime options with a permission callback bound to this turn,
and forwards every runtime event to the client as it arrives. Each
turn registers one ``CancellationHandle`` under its request id; the
handle is removed exactly once when the turn ends. Aborting cancels
the turn's task and rejects any permission wait the turn is parked on.
"""
from __future__ import annotations

import asyncio
import logging
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import BridgeConfig, EmitCallback, fire_event
from .context_manager import SessionContextManager
from .decision_engine import DecisionEngine
from .errors import (
    InvalidRequestError,
    RequestConflictError,
    RequestNotFoundError,
    RuntimeStreamError,
)
from .lifecycle import StreamState, validate_transition
from .models import make_id
from .permission_gate import GateContext, PermissionGate
from .prompt_detector import detect_prompt
from .runtime import summarize
from .stats import BridgeStats

logger = logging.getLogger(__name__)

_SESSION_EXISTS_RE = re.compile(r"session.*already (?:exists|in use)", re.IGNORECASE)


class EventKind(str, Enum):
    SESSION_ANNOUNCE = "session_announce"
    ASSISTANT_TEXT = "assistant_text"
    ASSISTANT_TOOL_USE = "assistant_tool_use"
    USER_TOOL_RESULT = "user_tool_result"
    RESULT = "result"
    OTHER = "other"


def _content_blocks(event: dict[str, Any]) -> list[Any]:
    message = event.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, list):
        return content
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return []


def classify_event(event: dict[str, Any]) -> EventKind:
    kind = event.get("type")
    blocks = _content_blocks(event)
    if kind == "system":
        return EventKind.SESSION_ANNOUNCE if event_session_id(event) else EventKind.OTHER
    if kind == "assistant":
        if any(isinstance(b, dict) and b.get("type") == "tool_use" for b in blocks):
            return EventKind.ASSISTANT_TOOL_USE
        return EventKind.ASSISTANT_TEXT
    if kind == "user":
        if any(isinstance(b, dict) and b.get("type") == "tool_result" for b in blocks):
            return EventKind.USER_TOOL_RESULT
        return EventKind.OTHER
    if kind == "result":
        return EventKind.RESULT
    return EventKind.OTHER


def event_session_id(event: dict[str, Any]) -> str | None:
    sid = event.get("session_id") or event.get("sessionId")
    if not sid and isinstance(event.get("message"), dict):
        sid = event["message"].get("session_id") or event["message"].get("sessionId")
    return sid or None


def assistant_text(event: dict[str, Any]) -> str:
    parts = [
        b.get("text", "") for b in _content_blocks(event)
        if isinstance(b, dict) and b.get("type") == "text"
    ]
    return "".join(parts)


@dataclass
class ChatRequest:
    """An inbound ``send-message``."""
    conversation_id: str
    message: str
    request_id: str = field(default_factory=make_id)
    session_id: str | None = None
    allowed_tools: list[str] | None = None
    working_directory: str | None = None
    permission_mode: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    project_name: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ChatRequest:
        conversation_id = data.get("conversationId")
        content = data.get("content") or data.get("message")
        if not conversation_id:
            raise InvalidRequestError("conversationId is required")
        if not isinstance(content, str) or not content.strip():
            raise InvalidRequestError("content must be a non-empty string")
        return cls(
            conversation_id=str(conversation_id),
            message=content,
            request_id=str(data.get("requestId") or make_id()),
            session_id=data.get("sessionId") or None,
            allowed_tools=data.get("allowedTools") or None,
            working_directory=data.get("workingDirectory") or None,
            permission_mode=data.get("permissionMode") or None,
            attachments=list(data.get("attachments") or []),
            project_name=data.get("projectName") or None,
        )

    def runtime_prompt(self) -> str:
        text = self.message
        if self.project_name:
            text = f"Project: {self.project_name}\n\n{text}"
        names = [
            str(a.get("path") or a.get("name"))
            for a in self.attachments
            if isinstance(a, dict) and (a.get("path") or a.get("name"))
        ]
        if names:
            text += "\n\nAttached files:\n" + "\n".join(f"- {n}" for n in names)
        return text


class CancellationHandle:
    """Abort switch for one running turn. Cancelling twice is a no-op."""

    def __init__(self, request_id: str, conversation_id: str) -> None:
        self.request_id = request_id
        self.conversation_id = conversation_id
        self.task: asyncio.Task | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()
        return True


@dataclass
class TurnOutcome:
    request_id: str
    conversation_id: str
    state: str  # "completed", "errored" or "aborted"
    content: str = ""
    session_id: str | None = None
    error: RuntimeStreamError | None = None
    states: list[StreamState] = field(default_factory=list)


@dataclass
class _Turn:
    request: ChatRequest
    state: StreamState = StreamState.STARTING
    content: str = ""
    session_id: str | None = None
    result: dict[str, Any] | None = None
    history: list[StreamState] = field(default_factory=lambda: [StreamState.STARTING])

    def advance(self, target: StreamState) -> None:
        validate_transition(self.state, target)
        self.state = target
        self.history.append(target)


class StreamingSessionController:
    """Drives turns and owns the request id -> cancellation registry."""

    def __init__(
        self,
        runtime,
        context: SessionContextManager,
        gate: PermissionGate,
        engine: DecisionEngine,
        *,
        emit: EmitCallback | None = None,
        config: BridgeConfig | None = None,
        stats: BridgeStats | None = None,
    ) -> None:
        self._runtime = runtime
        self._context = context
        self._gate = gate
        self._engine = engine
        self._emit = emit
        self._config = config or BridgeConfig()
        self._stats = stats or BridgeStats()
        self._active: dict[str, CancellationHandle] = {}
        self._prompt_tasks: set[asyncio.Task] = set()

    def is_active(self, request_id: str) -> bool:
        return request_id in self._active

    def active_requests(self) -> list[str]:
        return list(self._active)

    def abort(self, request_id: str) -> bool:
        """Cancel a running turn. False if it was already cancelled."""
        handle = self._active.get(request_id)
        if handle is None:
            raise RequestNotFoundError(request_id)
        first = handle.cancel()
        self._gate.release(request_id)
        if first:
            logger.info("Abort requested for %s", request_id)
        return first

    async def abort_all(self) -> None:
        for request_id in list(self._active):
            try:
                self.abort(request_id)
            except RequestNotFoundError:
                continue
        for task in list(self._prompt_tasks):
            task.cancel()

    def reserve(self, request: ChatRequest) -> CancellationHandle:
        """Claim a slot for *request* before its task is scheduled.

        Raises ``RequestConflictError`` for a request id that is already
        reserved or running and ``InvalidRequestError`` when the
        concurrency cap is reached.
        """
        if request.request_id in self._active:
            raise RequestConflictError(request.request_id)
        limit = self._config.max_concurrent_requests
        if limit and len(self._active) >= limit:
            raise InvalidRequestError(
                f"too many concurrent requests ({len(self._active)}/{limit})"
            )
        handle = CancellationHandle(request.request_id, request.conversation_id)
        self._active[request.request_id] = handle
        return handle

    def discard_reservation(self, request_id: str) -> bool:
        """Drop a reservation whose turn never started."""
        handle = self._active.get(request_id)
        if handle is None or handle.task is not None:
            return False
        del self._active[request_id]
        return True

    def _adopt(self, request: ChatRequest) -> CancellationHandle:
        handle = self._active.get(request.request_id)
        if handle is None or handle.task is not None:
            handle = self.reserve(request)
        handle.task = asyncio.current_task()
        return handle

    def _unregister(self, handle: CancellationHandle) -> None:
        if self._active.get(handle.request_id) is handle:
            del self._active[handle.request_id]
        else:
            logger.error("Cancellation handle for %s already removed", handle.request_id)

    async def run_turn(self, request: ChatRequest) -> TurnOutcome:
        handle = self._adopt(request)
        self._stats.increment("requests")
        try:
            return await self._run(request, handle)
        finally:
            self._unregister(handle)
            self._gate.release(request.request_id)

    async def _send(self, event_name: str, request: ChatRequest, payload: dict[str, Any]) -> None:
        body = {
            "requestId": request.request_id,
            "conversationId": request.conversation_id,
            **payload,
        }
        await fire_event(self._emit, event_name, body, f"conversation-{request.conversation_id}")

    async def _run(self, request: ChatRequest, handle: CancellationHandle) -> TurnOutcome:
        turn = _Turn(request=request)
        cid = request.conversation_id
        try:
            if handle.cancelled:
                raise asyncio.CancelledError
            session = self._context.get_or_create_session(cid, request.permission_mode)
            self._gate.begin_turn(cid, request.request_id)
            if self._context.should_compact(session):
                await self._context.compact(session)

            mode, resume_id = self._context.resolve_continuity(session, request.session_id)
            can_use_tool = self._gate.bind(GateContext(
                conversation_id=cid,
                request_id=request.request_id,
                session_id=resume_id,
                permission_mode=session.permission_mode,
            ))
            options = self._runtime.build_options(
                mode=mode,
                session_id=resume_id,
                cwd=request.working_directory,
                allowed_tools=request.allowed_tools or self._config.allowed_tools,
                permission_mode=session.permission_mode,
                can_use_tool=can_use_tool,
            )
            logger.info(
                "Turn %s for %s: mode=%s session=%s",
                request.request_id, cid, mode.value, resume_id,
            )
            turn.session_id = resume_id

            turn.advance(StreamState.STREAMING)
            async with aclosing(self._runtime.stream(request.runtime_prompt(), options)) as events:
                async for event in events:
                    kind = await self._on_event(turn, event)
                    if kind == EventKind.RESULT:
                        break

            turn.advance(StreamState.COMPLETING)
            await self._complete(turn)
            turn.advance(StreamState.DONE)
            return self._outcome(turn, "completed")

        except asyncio.CancelledError:
            if not handle.cancelled:
                raise
            current = asyncio.current_task()
            if current is not None and hasattr(current, "uncancel"):
                current.uncancel()
            if turn.state not in (StreamState.STARTING, StreamState.STREAMING):
                # The runtime already finished; only bookkeeping was cut short.
                if turn.state != StreamState.DONE:
                    turn.advance(StreamState.DONE)
                return self._outcome(turn, "completed")
            turn.advance(StreamState.ABORTING)
            self._stats.increment("aborts")
            logger.info("Turn %s aborted", request.request_id)
            await self._send("stream-response", request, {
                "type": "aborted", "sessionId": turn.session_id, "isComplete": True,
            })
            await self._send("aborted", request, {"sessionId": turn.session_id})
            turn.advance(StreamState.DONE)
            return self._outcome(turn, "aborted")

        except Exception as exc:
            logger.exception("Turn %s failed", request.request_id)
            error = RuntimeStreamError(str(exc) or type(exc).__name__, request.request_id)
            if turn.state in (StreamState.STARTING, StreamState.STREAMING):
                turn.advance(StreamState.ERRORING)
            self._stats.increment("errors")
            await self._send("stream-response", request, {
                "type": "error", "error": str(error), "sessionId": turn.session_id,
                "isComplete": True,
            })
            await self._send("error", request, {
                "error": str(error),
                "message": str(error),
                "sessionExists": bool(_SESSION_EXISTS_RE.search(str(error))),
            })
            if turn.state != StreamState.DONE:
                turn.advance(StreamState.DONE)
            outcome = self._outcome(turn, "errored")
            outcome.error = error
            return outcome

    async def _on_event(self, turn: _Turn, event: dict[str, Any]) -> EventKind:
        request = turn.request
        kind = classify_event(event)

        sid = event_session_id(event)
        if sid:
            if turn.session_id is None:
                turn.session_id = sid
                await self._send("session-id-available", request, {"sessionId": sid})
            elif sid != turn.session_id:
                logger.debug(
                    "Turn %s ignoring later session id %s (keeping %s)",
                    request.request_id, sid, turn.session_id,
                )

        if kind == EventKind.ASSISTANT_TEXT or kind == EventKind.ASSISTANT_TOOL_USE:
            text = assistant_text(event)
            if text:
                # Assistant events carry the full text so far.
                turn.content = text
        elif kind == EventKind.RESULT:
            turn.result = event
            if not turn.content and isinstance(event.get("result"), str):
                turn.content = event["result"]

        logger.debug(
            "Turn %s event %s: %s", request.request_id, kind.value, summarize(turn.content),
        )
        await self._send("stream-response", request, {
            "type": "claude_json",
            "data": event,
            "sessionId": turn.session_id,
            "content": turn.content,
            "isComplete": False,
        })
        return kind

    async def _complete(self, turn: _Turn) -> None:
        request = turn.request
        cid = request.conversation_id
        result = turn.result or {}
        await self._send("stream-response", request, {
            "type": "done",
            "sessionId": turn.session_id,
            "content": turn.content,
            "isComplete": True,
        })
        await self._send("message-complete", request, {
            "sessionId": turn.session_id,
            "content": turn.content,
            "usage": result.get("usage"),
            "cost": result.get("total_cost_usd"),
            "duration": result.get("duration_ms"),
        })

        if turn.session_id:
            self._context.store_session_id(cid, turn.session_id)
        self._context.record_token_usage(cid, self._context.estimate_tokens(turn.content))
        self._stats.increment("turns_completed")

        prompt = detect_prompt(turn.content, conversation_id=cid, session_id=turn.session_id)
        if prompt is not None:
            logger.info("Detected %s prompt in turn %s", prompt.type.value, request.request_id)
            task = asyncio.create_task(self._engine.handle_prompt(prompt))
            self._prompt_tasks.add(task)
            task.add_done_callback(self._prompt_task_done)

    def _prompt_task_done(self, task: asyncio.Task) -> None:
        self._prompt_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Detected prompt handling failed: %s", exc)

    def _outcome(self, turn: _Turn, state: str) -> TurnOutcome:
        return TurnOutcome(
            request_id=turn.request.request_id,
            conversation_id=turn.request.conversation_id,
            state=state,
            content=turn.content,
            session_id=turn.session_id,
            states=list(turn.history),
        )

"""Receiving-side chat state.

``ChatStore`` holds the ordered display timeline for the selected
conversation and reacts to bridge events arriving over a ``Transport``.
Every inbound event is checked against the selected conversation and,
while a turn is running, against the request id that started it, so a
stale turn cannot write into a newer one.
"""
from __future__ import annotations

import logging
import random
import string
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from baton.adapters.transport import Transport, conversation_room
from baton.engine.errors import TransportError
from baton.engine.models import PermissionMode, make_id, parse_permission_mode
from baton.shared.models.message import MessageType, ProcessedMessage, now_ms
from baton.shared.services.message_processor import (
    deduplicate_messages,
    merge_streaming_message,
    process_message,
    process_messages,
)

logger = logging.getLogger(__name__)

BRIDGE_MISSING_MARKER = "No bridge service connected"
BRIDGE_MISSING_MESSAGE = "Bridge service required for assistant integration"


def make_request_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"req_{now_ms()}_{suffix}"


@dataclass
class SessionState:
    session_id: str | None = None
    initialized: bool = False
    pending: bool = False
    source: str | None = None  # "claude-new", "url-resume" or "manual"


@dataclass
class LastMessage:
    content: str
    conversation_id: str
    attachments: list[dict[str, Any]] = field(default_factory=list)
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    project_name: str | None = None


class ChatStore:
    """Display timeline plus send/abort/retry for one client."""

    EVENTS = (
        "stream-response",
        "message-complete",
        "session-id-available",
        "error",
        "aborted",
        "interactive-prompt",
        "permission-pending",
        "prompt-resolved",
    )

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._listeners: list[Callable[[ChatStore], None]] = []
        self._attached = False
        self.selected_conversation_id: str | None = None
        self.session_state: dict[str, SessionState] = {}
        self.permission_mode = PermissionMode.DEFAULT
        self._reset_timeline()

    def _reset_timeline(self) -> None:
        self.messages: list[ProcessedMessage] = []
        self.is_streaming = False
        self.active_status_message: ProcessedMessage | None = None
        self.current_request_id: str | None = None
        self.error: str | None = None
        self.bridge_service_error = False
        self.last_message: LastMessage | None = None
        self.pending_prompts: dict[str, dict[str, Any]] = {}

    # ── Wiring ──

    def attach(self) -> None:
        if self._attached:
            return
        for event in self.EVENTS:
            self._transport.on(event, self._handler(event))
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        for event in self.EVENTS:
            self._transport.off(event, self._handler(event))
        self._attached = False

    def _handler(self, event: str):
        return {
            "stream-response": self.handle_stream_response,
            "message-complete": self.handle_message_complete,
            "session-id-available": self.handle_session_available,
            "error": self.handle_error,
            "aborted": self.handle_aborted,
            "interactive-prompt": self.handle_interactive_prompt,
            "permission-pending": self.handle_interactive_prompt,
            "prompt-resolved": self.handle_prompt_resolved,
        }[event]

    def subscribe(self, listener: Callable[[ChatStore], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Chat store listener failed")

    # ── Selection and history ──

    def select_conversation(self, conversation_id: str | None) -> None:
        if conversation_id != self.selected_conversation_id:
            self.messages = []
            self.pending_prompts = {}
        self.selected_conversation_id = conversation_id
        self._notify()

    async def open_conversation(
        self,
        conversation_id: str,
        rows: list[dict[str, Any]] | None = None,
    ) -> None:
        """Select a conversation, subscribe to its room and load its history."""
        self.select_conversation(conversation_id)
        await self._transport.join(conversation_room(conversation_id))
        if rows is not None:
            self.load_messages(rows)

    def load_messages(self, rows: list[dict[str, Any]]) -> None:
        """Replace the timeline with persisted rows."""
        self.messages = deduplicate_messages(process_messages(rows))
        self._notify()

    def set_permission_mode(self, mode: str | PermissionMode) -> None:
        self.permission_mode = parse_permission_mode(mode)

    def is_session_ready(self, conversation_id: str) -> bool:
        state = self.session_state.get(conversation_id)
        return bool(state and state.initialized and state.session_id)

    def is_new_chat(self) -> bool:
        if not self.selected_conversation_id:
            return True
        return not self.messages and not self.is_streaming

    def add_or_update_message(self, message: ProcessedMessage) -> None:
        if message.is_transient and self.is_streaming:
            self.messages = merge_streaming_message(self.messages, message)
            self.active_status_message = message
        else:
            self.messages = merge_streaming_message(self.messages, message)
            self.active_status_message = None
        self._notify()

    # ── Outbound ──

    async def send_message(
        self,
        content: str,
        *,
        conversation_id: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
        permission_mode: str | PermissionMode | None = None,
        project_name: str | None = None,
        request_id: str | None = None,
    ) -> str:
        """Show an optimistic user message and send it. Returns the request id."""
        cid = conversation_id or self.selected_conversation_id or make_id()
        if cid != self.selected_conversation_id:
            self.select_conversation(cid)
        mode = parse_permission_mode(permission_mode or self.permission_mode)
        request_id = request_id or make_request_id()
        session = self.session_state.get(cid)

        self.last_message = LastMessage(
            content=content,
            conversation_id=cid,
            attachments=list(attachments or []),
            permission_mode=mode,
            project_name=project_name,
        )
        sent_at = now_ms()
        self.add_or_update_message(ProcessedMessage(
            id=f"user_{sent_at}",
            type=MessageType.USER,
            content=content,
            timestamp=sent_at,
            metadata={
                "conversationId": cid,
                "requestId": request_id,
                "optimistic": True,
                "isComplete": True,
            },
        ))
        payload = {
            "conversationId": cid,
            "content": content,
            "attachments": list(attachments or []),
            "requestId": request_id,
            "sessionId": session.session_id if session else None,
            "permissionMode": mode.value,
        }
        if project_name:
            payload["projectName"] = project_name
        try:
            await self._transport.emit("send-message", payload)
        except TransportError:
            self.is_streaming = False
            self.error = "Not connected to chat service"
            self._notify()
            raise
        self.current_request_id = request_id
        self.is_streaming = True
        self.error = None
        self._notify()
        return request_id

    async def abort(self) -> bool:
        if not self.current_request_id or not self._transport.connected:
            return False
        await self._transport.emit("abort-message", {
            "requestId": self.current_request_id,
            "conversationId": self.selected_conversation_id,
        })
        return True

    async def retry_last_message(self) -> str | None:
        last = self.last_message
        if last is None:
            return None
        if self.bridge_service_error:
            self.bridge_service_error = False
        return await self.send_message(
            last.content,
            conversation_id=last.conversation_id,
            attachments=last.attachments,
            permission_mode=last.permission_mode,
            project_name=last.project_name,
        )

    async def respond_to_prompt(
        self,
        prompt_id: str,
        option_id: str,
        *,
        updated_input: dict[str, Any] | None = None,
        feedback: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {"promptId": prompt_id, "optionId": option_id}
        if updated_input is not None:
            payload["updatedInput"] = updated_input
        if feedback:
            payload["feedback"] = feedback
        await self._transport.emit("permission-respond", payload)

    async def start_new_chat(self) -> None:
        """Drop the timeline and the conversation's session state."""
        cid = self.selected_conversation_id
        if cid is not None:
            self.session_state.pop(cid, None)
            if self._transport.connected:
                await self._transport.emit("new-chat", {"conversationId": cid})
        self.selected_conversation_id = None
        self._reset_timeline()
        self._notify()

    # ── Inbound ──

    def _targets_selected(self, data: dict[str, Any]) -> bool:
        target = data.get("conversationId") or data.get("projectId")
        return target is not None and target == self.selected_conversation_id

    def _is_stale(self, data: dict[str, Any]) -> bool:
        request_id = data.get("requestId")
        return bool(
            request_id and self.current_request_id
            and request_id != self.current_request_id
        )

    def handle_stream_response(self, data: dict[str, Any]) -> None:
        if not self._targets_selected(data):
            logger.debug("Ignoring stream-response for %s", data.get("conversationId"))
            return
        if self._is_stale(data):
            logger.debug("Ignoring stream-response from stale request %s", data.get("requestId"))
            return
        message = process_message(data)
        if message is not None:
            self.add_or_update_message(message)
        # Completion signals carry no displayable content, only this flag.
        self.is_streaming = not data.get("isComplete", False)
        if not self.is_streaming:
            self.active_status_message = None
        self._notify()

    def handle_message_complete(self, data: dict[str, Any]) -> None:
        if not self._targets_selected(data):
            return
        if self._is_stale(data):
            return
        self.is_streaming = False
        self.active_status_message = None
        self.current_request_id = None
        self._notify()

    def handle_session_available(self, data: dict[str, Any]) -> None:
        cid = data.get("conversationId") or data.get("projectId")
        session_id = data.get("sessionId")
        if not cid or not session_id:
            return
        if self.selected_conversation_id is None:
            self.selected_conversation_id = cid
        elif cid != self.selected_conversation_id:
            return

        current = self.session_state.get(cid)
        if current is None or not (current.session_id and current.initialized):
            self.session_state[cid] = SessionState(
                session_id=session_id, initialized=True, pending=False, source="claude-new",
            )
        elif not current.initialized:
            current.initialized = True
            current.pending = False
        if self.error and not self.bridge_service_error:
            self.error = None
        self._notify()

    def handle_error(self, data: dict[str, Any]) -> None:
        if data.get("conversationId") and not self._targets_selected(data):
            return
        self.is_streaming = False
        self.active_status_message = None
        message = str(data.get("error") or data.get("message") or "Unknown error occurred")
        if BRIDGE_MISSING_MARKER in message:
            self.bridge_service_error = True
            self.error = BRIDGE_MISSING_MESSAGE
        else:
            self.bridge_service_error = False
            self.error = message
        self._notify()

    def handle_aborted(self, data: dict[str, Any]) -> None:
        if data.get("conversationId") and not self._targets_selected(data):
            return
        self.is_streaming = False
        self.active_status_message = None
        self.current_request_id = None
        self._notify()

    def handle_interactive_prompt(self, data: dict[str, Any]) -> None:
        prompt_id = data.get("promptId") or data.get("id")
        if not prompt_id:
            return
        if data.get("conversationId") and not self._targets_selected(data):
            return
        entry = dict(self.pending_prompts.get(prompt_id, {}))
        entry.update(data)
        self.pending_prompts[prompt_id] = entry
        self._notify()

    def handle_prompt_resolved(self, data: dict[str, Any]) -> None:
        prompt_id = data.get("promptId")
        if prompt_id and self.pending_prompts.pop(prompt_id, None) is not None:
            self._notify()

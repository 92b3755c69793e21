"""Seam over the Claude Agent SDK.

``AssistantRuntime.stream`` runs one ``claude_agent_sdk.query`` in
streaming-prompt mode (required for ``can_use_tool``) and yields every
SDK message converted to the plain dict shape the web client consumes.
Tests substitute any object with the same ``stream`` coroutine.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from .models import ContinuityMode, PermissionMode

logger = logging.getLogger(__name__)

CanUseTool = Callable[[str, dict, Any], Awaitable[Any]]


def _block_to_dict(block: Any) -> dict[str, Any]:
    if isinstance(block, dict):
        return block
    if hasattr(block, "text"):
        return {"type": "text", "text": block.text}
    if hasattr(block, "thinking"):
        return {"type": "thinking", "thinking": block.thinking}
    if hasattr(block, "name") and hasattr(block, "input"):
        return {
            "type": "tool_use",
            "id": getattr(block, "id", None),
            "name": block.name,
            "input": block.input,
        }
    if hasattr(block, "tool_use_id"):
        content = block.content
        if isinstance(content, list):
            content = [_block_to_dict(c) for c in content]
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": content,
            "is_error": bool(getattr(block, "is_error", False)),
        }
    return {"type": type(block).__name__}


def _content_to_wire(content: Any) -> Any:
    if isinstance(content, list):
        return [_block_to_dict(b) for b in content]
    return content


def _tool_result_id(content: Any) -> str | None:
    if isinstance(content, list):
        for block in content:
            if block.get("type") == "tool_result" and block.get("tool_use_id"):
                return f"result_{block['tool_use_id']}"
    return None


def message_to_dict(message: Any) -> dict[str, Any]:
    """Convert one SDK message object into a wire dict."""
    if isinstance(message, dict):
        return message

    kind = type(message).__name__
    if kind == "SystemMessage":
        data = dict(getattr(message, "data", {}) or {})
        data["type"] = "system"
        data.setdefault("subtype", getattr(message, "subtype", None))
        return data
    if kind == "AssistantMessage":
        return {
            "type": "assistant",
            "message": {
                "id": getattr(message, "message_id", None),
                "role": "assistant",
                "model": getattr(message, "model", None),
                "content": _content_to_wire(message.content),
                "usage": getattr(message, "usage", None),
            },
            "session_id": getattr(message, "session_id", None),
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }
    if kind == "UserMessage":
        content = _content_to_wire(message.content)
        return {
            "type": "user",
            "message": {
                "id": getattr(message, "uuid", None) or _tool_result_id(content),
                "role": "user",
                "content": content,
            },
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }
    if kind == "ResultMessage":
        return {
            "type": "result",
            "subtype": message.subtype,
            "is_error": message.is_error,
            "duration_ms": message.duration_ms,
            "num_turns": message.num_turns,
            "session_id": message.session_id,
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "usage": getattr(message, "usage", None),
            "result": getattr(message, "result", None),
        }
    if kind == "StreamEvent":
        return {
            "type": "stream_event",
            "event": getattr(message, "event", None),
            "session_id": getattr(message, "session_id", None),
        }
    logger.debug("message_to_dict: unknown SDK message %s", kind)
    return {"type": "unknown", "kind": kind}


def summarize(content: str, limit: int = 100) -> str:
    """Short single-line form of *content* for logs."""
    flat = " ".join(content.split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


class AssistantRuntime:
    """Runs turns against the Claude Agent SDK."""

    def __init__(self, *, default_cwd: str = ".", max_turns: int = 20) -> None:
        self._default_cwd = default_cwd
        self._max_turns = max_turns

    def build_options(
        self,
        *,
        mode: ContinuityMode,
        session_id: str | None = None,
        cwd: str | None = None,
        allowed_tools: list[str] | None = None,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
        can_use_tool: CanUseTool | None = None,
        max_turns: int | None = None,
    ) -> dict[str, Any]:
        """Keyword arguments for ``ClaudeAgentOptions``."""
        options: dict[str, Any] = {
            "cwd": cwd or self._default_cwd,
            "permission_mode": permission_mode.value,
            "max_turns": max_turns or self._max_turns,
        }
        if mode == ContinuityMode.RESUME and session_id:
            options["resume"] = session_id
        elif mode == ContinuityMode.CONTINUE:
            options["continue_conversation"] = True
        if allowed_tools:
            options["allowed_tools"] = list(allowed_tools)
        if can_use_tool is not None:
            options["can_use_tool"] = can_use_tool
        return options

    async def stream(
        self,
        prompt: str,
        options: dict[str, Any],
    ) -> AsyncIterator[dict[str, Any]]:
        from claude_agent_sdk import ClaudeAgentOptions, query

        async def _prompt_stream():
            yield {
                "type": "user",
                "message": {"role": "user", "content": prompt},
            }

        logger.info(
            "Runtime query: mode=%s cwd=%s prompt=%s",
            "resume" if options.get("resume") else
            "continue" if options.get("continue_conversation") else "new",
            options.get("cwd"), summarize(prompt),
        )
        async for message in query(
            prompt=_prompt_stream(),
            options=ClaudeAgentOptions(**options),
        ):
            yield message_to_dict(message)

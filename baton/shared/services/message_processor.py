"""Message processing pipeline.

Turns every raw message the client can see (live runtime events wrapped
as ``claude_json``, transport signals, persisted rows) into one
``ProcessedMessage`` shape, then reconciles the timeline:

- ``deduplicate_messages`` keeps one survivor per ``(id, type)``
- ``merge_streaming_message`` folds one incoming message into a list,
  matching on ``id`` alone

Survivor rule for the same identity: a non-optimistic message beats an
optimistic one; otherwise the newer timestamp wins, and on a tie the
longer content wins.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Callable

from baton.shared.models.message import (
    MessageType,
    ProcessedMessage,
    RawAbortSignal,
    RawAssistantEvent,
    RawDoneSignal,
    RawErrorSignal,
    RawLegacyRow,
    RawMessage,
    RawResultEvent,
    RawSystemEvent,
    RawUserEvent,
    now_ms,
)

logger = logging.getLogger(__name__)

_RUNTIME_EVENTS = {
    "assistant": RawAssistantEvent,
    "user": RawUserEvent,
    "system": RawSystemEvent,
    "result": RawResultEvent,
}


def _timestamp(raw: dict[str, Any]) -> int:
    value = raw.get("timestamp")
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return now_ms()


def decode_raw(raw: dict[str, Any]) -> RawMessage | None:
    """Classify an untyped wire dict. None for shapes with no meaning here."""
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind == "claude_json":
        data = raw.get("data")
        if not isinstance(data, dict):
            return None
        event_cls = _RUNTIME_EVENTS.get(data.get("type"))
        if event_cls is None:
            return None
        message = data.get("message") if isinstance(data.get("message"), dict) else {}
        message_id = (
            message.get("id")
            or data.get("uuid")
            or raw.get("requestId")
            or f"msg_{now_ms()}"
        )
        return event_cls(
            data=data,
            message_id=str(message_id),
            timestamp=_timestamp(raw),
            request_id=raw.get("requestId"),
            conversation_id=raw.get("conversationId"),
        )
    if kind == "error":
        return RawErrorSignal(
            error=str(raw.get("error") or "Unknown error occurred"),
            timestamp=_timestamp(raw),
            request_id=raw.get("requestId"),
        )
    if kind == "done":
        return RawDoneSignal(request_id=raw.get("requestId"))
    if kind == "aborted":
        return RawAbortSignal(
            reason=str(raw.get("reason") or "Request was aborted"),
            timestamp=_timestamp(raw),
            request_id=raw.get("requestId"),
        )
    if raw.get("role") or raw.get("message"):
        return RawLegacyRow(row=raw)
    return None


def _blocks(data: dict[str, Any]) -> list[dict[str, Any]]:
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    return []


def _text(blocks: list[dict[str, Any]]) -> str:
    return "".join(str(b.get("text") or "") for b in blocks if b.get("type") == "text")


def _usage(raw_usage: Any) -> dict[str, int] | None:
    if not isinstance(raw_usage, dict):
        return None
    inp = int(raw_usage.get("input_tokens") or raw_usage.get("input") or 0)
    out = int(raw_usage.get("output_tokens") or raw_usage.get("output") or 0)
    return {"input": inp, "output": out, "total": inp + out}


def _event_metadata(event: RawAssistantEvent | RawUserEvent | RawSystemEvent | RawResultEvent) -> dict[str, Any]:
    data = event.data
    message = data.get("message") if isinstance(data.get("message"), dict) else {}
    metadata: dict[str, Any] = {
        "sessionId": data.get("session_id"),
        "requestId": event.request_id,
        "conversationId": event.conversation_id,
        "isComplete": True,
    }
    usage = _usage(message.get("usage") or data.get("usage"))
    if usage is not None:
        metadata["usage"] = usage
    if data.get("total_cost_usd") is not None:
        metadata["cost"] = data["total_cost_usd"]
    if data.get("duration_ms") is not None:
        metadata["duration"] = data["duration_ms"]
    return metadata


def _assistant(event: RawAssistantEvent) -> ProcessedMessage:
    blocks = _blocks(event.data)
    metadata = _event_metadata(event)
    tool_uses = [b for b in blocks if b.get("type") == "tool_use"]
    if tool_uses:
        metadata["toolName"] = tool_uses[0].get("name")
        metadata["toolInput"] = tool_uses[0].get("input")
        return ProcessedMessage(event.message_id, MessageType.TOOL, _text(blocks), event.timestamp, metadata)
    message = event.data.get("message") if isinstance(event.data.get("message"), dict) else {}
    if message.get("model"):
        metadata["model"] = message["model"]
    return ProcessedMessage(event.message_id, MessageType.ASSISTANT, _text(blocks), event.timestamp, metadata)


def _user(event: RawUserEvent) -> ProcessedMessage:
    blocks = _blocks(event.data)
    metadata = _event_metadata(event)
    results = [b for b in blocks if b.get("type") == "tool_result"]
    if results:
        metadata["toolUseId"] = results[0].get("tool_use_id")
        metadata["isError"] = bool(results[0].get("is_error", False))
    return ProcessedMessage(event.message_id, MessageType.USER, _text(blocks), event.timestamp, metadata)


def _system(event: RawSystemEvent) -> ProcessedMessage:
    metadata = _event_metadata(event)
    metadata["subtype"] = event.data.get("subtype")
    return ProcessedMessage(
        event.message_id, MessageType.SYSTEM, _text(_blocks(event.data)), event.timestamp, metadata,
    )


def _result(event: RawResultEvent) -> ProcessedMessage:
    metadata = _event_metadata(event)
    metadata["isError"] = bool(event.data.get("is_error", False))
    return ProcessedMessage(
        event.message_id, MessageType.RESULT, str(event.data.get("result") or ""),
        event.timestamp, metadata,
    )


def _error(signal: RawErrorSignal) -> ProcessedMessage:
    return ProcessedMessage(
        id=signal.request_id or f"error_{signal.timestamp}",
        type=MessageType.ERROR,
        content=signal.error,
        timestamp=signal.timestamp,
        metadata={"requestId": signal.request_id, "isComplete": True},
    )


def _done(signal: RawDoneSignal) -> None:
    return None


def _abort(signal: RawAbortSignal) -> ProcessedMessage:
    return ProcessedMessage(
        id=signal.request_id or f"abort_{signal.timestamp}",
        type=MessageType.ABORT,
        content=signal.reason,
        timestamp=signal.timestamp,
        metadata={"requestId": signal.request_id, "isComplete": True},
    )


def _legacy_type(row: dict[str, Any]) -> MessageType:
    role = row.get("role")
    if role in ("user", "assistant", "system"):
        return MessageType(role)
    if row.get("name") and row.get("input"):
        return MessageType.TOOL
    if row.get("error"):
        return MessageType.ERROR
    return MessageType.SYSTEM


def _legacy_timestamp(value: Any) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value:
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            logger.debug("Unparseable createdAt %r", value)
    return now_ms()


def _legacy(raw: RawLegacyRow) -> ProcessedMessage:
    row = raw.row
    ts = _legacy_timestamp(row.get("createdAt"))
    content = row.get("content")
    if not isinstance(content, str):
        content = row.get("message") if isinstance(row.get("message"), str) else ""
    return ProcessedMessage(
        id=str(row.get("id") or f"legacy_{ts}"),
        type=_legacy_type(row),
        content=content,
        timestamp=ts,
        metadata={
            "conversationId": row.get("conversationId"),
            "sessionId": row.get("sessionId"),
            "claudeMessageId": row.get("claudeMessageId"),
            "model": row.get("model"),
            "usage": _usage(row.get("usage")),
            "attachments": row.get("attachments"),
            "status": row.get("status"),
            "isComplete": True,
            "legacy": True,
            "optimistic": False,
        },
    )


_HANDLERS: dict[type, Callable[[Any], ProcessedMessage | None]] = {
    RawAssistantEvent: _assistant,
    RawUserEvent: _user,
    RawSystemEvent: _system,
    RawResultEvent: _result,
    RawErrorSignal: _error,
    RawDoneSignal: _done,
    RawAbortSignal: _abort,
    RawLegacyRow: _legacy,
}


def process_message(raw: dict[str, Any] | RawMessage) -> ProcessedMessage | None:
    """Normalize one raw message. Completion signals yield None."""
    decoded = raw if type(raw) in _HANDLERS else decode_raw(raw)  # type: ignore[arg-type]
    if decoded is None:
        logger.debug("process_message: unhandled shape %r", raw.get("type") if isinstance(raw, dict) else raw)
        return None
    return _HANDLERS[type(decoded)](decoded)


def process_messages(raws: Iterable[dict[str, Any] | RawMessage]) -> list[ProcessedMessage]:
    processed = (process_message(r) for r in raws)
    return [m for m in processed if m is not None]


def beats(candidate: ProcessedMessage, incumbent: ProcessedMessage) -> bool:
    """True if *candidate* should replace *incumbent* with the same identity."""
    if candidate.optimistic != incumbent.optimistic:
        return not candidate.optimistic
    if candidate.timestamp != incumbent.timestamp:
        return candidate.timestamp > incumbent.timestamp
    return len(candidate.content) > len(incumbent.content)


def deduplicate_messages(messages: Iterable[ProcessedMessage]) -> list[ProcessedMessage]:
    """One survivor per ``(id, type)``, sorted by timestamp."""
    seen: dict[str, ProcessedMessage] = {}
    for message in messages:
        existing = seen.get(message.key)
        if existing is None or beats(message, existing):
            seen[message.key] = message
    return sorted(seen.values(), key=lambda m: m.timestamp)


def _should_update(existing: ProcessedMessage, incoming: ProcessedMessage) -> bool:
    if existing.optimistic != incoming.optimistic:
        return existing.optimistic
    if len(incoming.content) > len(existing.content):
        return True
    return (
        incoming.timestamp >= existing.timestamp
        and len(incoming.content) >= len(existing.content)
    )


def merge_streaming_message(
    messages: list[ProcessedMessage],
    incoming: ProcessedMessage,
) -> list[ProcessedMessage]:
    """Return a new list with *incoming* folded in.

    An entry with the same ``id``, whatever its type, is replaced in
    place when the incoming copy is at least as new and as long,
    strictly longer, or confirms an optimistic placeholder; otherwise
    the update is stale and dropped. New ids are inserted before the
    first entry with a later timestamp.
    """
    merged = list(messages)
    for index, existing in enumerate(merged):
        if existing.id != incoming.id:
            continue
        if _should_update(existing, incoming):
            merged[index] = incoming
        else:
            logger.debug("Dropping stale update for %s", incoming.id)
        return merged

    for index, existing in enumerate(merged):
        if existing.timestamp > incoming.timestamp:
            merged.insert(index, incoming)
            return merged
    merged.append(incoming)
    return merged

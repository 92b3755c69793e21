"""Processed chat messages and the raw shapes they are built from."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"
    RESULT = "result"
    ERROR = "error"
    ABORT = "abort"


@dataclass(frozen=True)
class ProcessedMessage:
    """One entry of the display timeline. Replaced, never mutated."""
    id: str
    type: MessageType
    content: str
    timestamp: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.id}_{self.type.value}"

    @property
    def optimistic(self) -> bool:
        return bool(self.metadata.get("optimistic", False))

    @property
    def is_transient(self) -> bool:
        return bool(self.metadata.get("isTransient", False))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessedMessage:
        return cls(
            id=str(data["id"]),
            type=MessageType(data["type"]),
            content=str(data.get("content") or ""),
            timestamp=int(data.get("timestamp") or now_ms()),
            metadata=dict(data.get("metadata") or {}),
        )


# ── Raw inputs, decoded once at the boundary ──

@dataclass(frozen=True)
class _RuntimeEvent:
    data: dict[str, Any]
    message_id: str
    timestamp: int
    request_id: str | None = None
    conversation_id: str | None = None


@dataclass(frozen=True)
class RawAssistantEvent(_RuntimeEvent):
    pass


@dataclass(frozen=True)
class RawUserEvent(_RuntimeEvent):
    pass


@dataclass(frozen=True)
class RawSystemEvent(_RuntimeEvent):
    pass


@dataclass(frozen=True)
class RawResultEvent(_RuntimeEvent):
    pass


@dataclass(frozen=True)
class RawErrorSignal:
    error: str
    timestamp: int
    request_id: str | None = None


@dataclass(frozen=True)
class RawDoneSignal:
    request_id: str | None = None


@dataclass(frozen=True)
class RawAbortSignal:
    reason: str
    timestamp: int
    request_id: str | None = None


@dataclass(frozen=True)
class RawLegacyRow:
    row: dict[str, Any]


RawMessage = Union[
    RawAssistantEvent,
    RawUserEvent,
    RawSystemEvent,
    RawResultEvent,
    RawErrorSignal,
    RawDoneSignal,
    RawAbortSignal,
    RawLegacyRow,
]

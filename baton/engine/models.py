"""Core data models for the bridge engine.

Enums and dataclasses for prompts, decisions and per-conversation
session state. Single source of truth to avoid circular imports.
Wire dicts use the camelCase keys the web client expects.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import InvalidPromptError


class PromptType(str, Enum):
    TOOL_USAGE = "tool_usage"
    PERMISSION = "permission"
    MULTIPLE_CHOICE = "multiple_choice"
    FILE_SELECTION = "file_selection"
    PLAN_REVIEW = "plan_review"


class PromptStatus(str, Enum):
    """Prompt lifecycle. PENDING transitions to exactly one terminal status."""
    PENDING = "pending"
    ANSWERED = "answered"
    AUTO_HANDLED = "auto_handled"
    TIMEOUT = "timeout"


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes."""
    DEFAULT = "default"
    PLAN = "plan"
    ACCEPT_EDITS = "acceptEdits"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ContinuityMode(str, Enum):
    """How a turn attaches to the runtime's reasoning context."""
    NEW = "new"
    RESUME = "resume"
    CONTINUE = "continue"


# Decision actions shared by strategies and the engine.
ACTION_TIMEOUT = "timeout"
ACTION_TIMEOUT_DEFAULT = "timeout_default"
ACTION_USER_SELECTED = "user_selected"


def make_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_permission_mode(value: str | None) -> PermissionMode:
    """Parse a permission mode string to enum, defaulting on unknowns."""
    mapping = {
        "default": PermissionMode.DEFAULT,
        "plan": PermissionMode.PLAN,
        "acceptEdits": PermissionMode.ACCEPT_EDITS,
        "accept_edits": PermissionMode.ACCEPT_EDITS,
    }
    return mapping.get(value or "", PermissionMode.DEFAULT)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class PromptOption:
    id: str
    label: str
    value: str
    is_default: bool = False
    is_recommended: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "value": self.value,
        }
        if self.is_default:
            data["isDefault"] = True
        if self.is_recommended:
            data["isRecommended"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PromptOption:
        return cls(
            id=str(data["id"]),
            label=str(data.get("label", "")),
            value=str(data.get("value", "")),
            is_default=bool(data.get("isDefault", False)),
            is_recommended=bool(data.get("isRecommended", False)),
        )


@dataclass
class Prompt:
    """A structured request for a human (or strategy) decision.

    Created by the Decision Engine, either from text the Prompt
    Detector recognised or from the Permission Gate before a tool call.
    Never deleted; status moves from PENDING to one terminal value.
    """
    type: PromptType
    title: str
    message: str
    options: list[PromptOption]
    context: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=make_id)
    conversation_id: str | None = None
    session_id: str | None = None
    request_id: str | None = None
    status: PromptStatus = PromptStatus.PENDING
    selected_option: str | None = None
    auto_handler: str | None = None
    timeout_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    responded_at: datetime | None = None

    def validate(self) -> None:
        if not self.options:
            raise InvalidPromptError("prompt has no options", self.id)
        ids = [o.id for o in self.options]
        if len(set(ids)) != len(ids):
            raise InvalidPromptError("duplicate option ids", self.id)
        if self.selected_option is not None and self.option(self.selected_option) is None:
            raise InvalidPromptError(
                f"selected option {self.selected_option!r} is not an option",
                self.id,
            )

    def option(self, option_id: str) -> PromptOption | None:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None

    def option_by_value(self, *values: str) -> PromptOption | None:
        for value in values:
            for opt in self.options:
                if opt.value == value:
                    return opt
        return None

    def default_option(self) -> PromptOption:
        """Timeout fallback: recommended, then default, then first."""
        for opt in self.options:
            if opt.is_recommended:
                return opt
        for opt in self.options:
            if opt.is_default:
                return opt
        return self.options[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "sessionId": self.session_id,
            "requestId": self.request_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "options": [o.to_dict() for o in self.options],
            "context": self.context,
            "status": self.status.value,
            "selectedOption": self.selected_option,
            "autoHandler": self.auto_handler,
            "timeoutAt": _iso(self.timeout_at),
            "createdAt": _iso(self.created_at),
            "respondedAt": _iso(self.responded_at),
        }


@dataclass
class Decision:
    """Strategy output for one prompt."""
    action: str
    selected_option: str | None
    confidence: float
    handler: str
    reason: str = ""
    automatic: bool = True
    response: str = ""
    # Timed out waiting for a human; the prompt stays open.
    pending: bool = False
    # Extra payload a human supplied with the choice (edited plan, feedback).
    updated_input: dict[str, Any] | None = None
    feedback: str | None = None


@dataclass
class Resolution:
    """What the Decision Engine hands back to its caller."""
    prompt_id: str
    action: str
    selected_option: str | None
    response: str
    automatic: bool
    handler: str
    pending: bool = False
    updated_input: dict[str, Any] | None = None
    feedback: str | None = None

    @classmethod
    def from_decision(cls, prompt: Prompt, decision: Decision) -> Resolution:
        return cls(
            prompt_id=prompt.id,
            action=decision.action,
            selected_option=decision.selected_option,
            response=decision.response,
            automatic=decision.automatic,
            handler=decision.handler,
            pending=decision.pending,
            updated_input=decision.updated_input,
            feedback=decision.feedback,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "promptId": self.prompt_id,
            "action": self.action,
            "selectedOption": self.selected_option,
            "response": self.response,
            "automatic": self.automatic,
            "handler": self.handler,
            "pending": self.pending,
        }


@dataclass
class ConversationSession:
    """Per-conversation continuity state owned by the context manager."""
    conversation_id: str
    claude_session_id: str | None = None
    context_tokens: int = 0
    last_compacted: datetime | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    # Bumped on compaction or new chat; a new epoch may carry a new id.
    epoch: int = 0
    # True once a conversation row exists in the store.
    persisted: bool = False

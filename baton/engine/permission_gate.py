"""Permission gate invoked by the assistant runtime before every tool call.

``PermissionGate.bind(ctx)`` returns a coroutine with the
claude_agent_sdk ``can_use_tool`` signature. From the runtime's side it
is one awaited call; inside, it may park the turn's task on a future
until a human answers, while the event loop keeps serving other
conversations.

Check order for a tool call:

    static safe tool          -> allow, no prompt
    denied earlier this turn  -> deny, no prompt
    "allow all" for the chat  -> allow
    persisted grant           -> allow
    otherwise                 -> prompt with four options via the engine

Permission flags are keyed by conversation id and survive compaction.
They are dropped on new chat.
"""
from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from baton.shared.services.command_policy_store import CommandPolicyStore
from baton.shared.services.store import SqliteStore

from .decision_engine import DecisionEngine
from .errors import PermissionCancelledError
from .models import (
    PermissionMode,
    Prompt,
    PromptOption,
    PromptType,
    Resolution,
    RiskLevel,
)
from .stats import BridgeStats
from .strategies import TERMINAL_TOOLS

logger = logging.getLogger(__name__)

SAFE_TOOLS = frozenset({
    "Read", "LS", "Glob", "Grep", "WebFetch", "WebSearch",
    "TodoRead", "TodoWrite",
})

TOOL_RISK: dict[str, RiskLevel] = {
    "Read": RiskLevel.LOW,
    "LS": RiskLevel.LOW,
    "Glob": RiskLevel.LOW,
    "Grep": RiskLevel.LOW,
    "WebSearch": RiskLevel.LOW,
    "TodoRead": RiskLevel.LOW,
    "WebFetch": RiskLevel.MEDIUM,
    "TodoWrite": RiskLevel.MEDIUM,
    "ExitPlanMode": RiskLevel.MEDIUM,
    "Write": RiskLevel.HIGH,
    "Edit": RiskLevel.HIGH,
    "MultiEdit": RiskLevel.HIGH,
    "NotebookEdit": RiskLevel.HIGH,
    "Bash": RiskLevel.HIGH,
}

DANGEROUS_COMMAND_RE = re.compile(
    r"\b(?:rm|sudo|chmod|chown|dd|mkfs|format|del)\b", re.IGNORECASE,
)

PLAN_TOOL = "ExitPlanMode"
_PARAM_PREVIEW = 500


def extract_command(tool_input: dict[str, Any]) -> str:
    command = (
        tool_input.get("command")
        or tool_input.get("cmd")
        or tool_input.get("script")
        or ""
    )
    return command.strip() if isinstance(command, str) else ""


def analyze_tool_risk(tool_name: str, tool_input: dict[str, Any] | None = None) -> RiskLevel:
    """Fixed-table risk with MCP and dangerous-command overrides."""
    if tool_name in TERMINAL_TOOLS:
        command = extract_command(tool_input or {})
        if command and DANGEROUS_COMMAND_RE.search(command):
            return RiskLevel.CRITICAL
        return TOOL_RISK["Bash"]
    if tool_name.startswith("mcp_") or "__" in tool_name:
        return RiskLevel.HIGH
    return TOOL_RISK.get(tool_name, RiskLevel.MEDIUM)


def build_tool_prompt(
    tool_name: str,
    tool_input: dict[str, Any],
    risk: RiskLevel,
    usage_count: int = 0,
) -> Prompt:
    params = repr(tool_input)
    if len(params) > _PARAM_PREVIEW:
        params = params[:_PARAM_PREVIEW] + "..."
    command = extract_command(tool_input) if tool_name in TERMINAL_TOOLS else ""
    message = f"Claude wants to use the {tool_name} tool"
    if command:
        message += f": {command}"
    context: dict[str, Any] = {
        "toolName": tool_name,
        "toolInput": tool_input,
        "riskLevel": risk.value,
        "parameters": params,
        "usageCount": usage_count,
    }
    if command:
        context["command"] = command
    return Prompt(
        type=PromptType.TOOL_USAGE,
        title=f"Permission required: {tool_name}",
        message=message,
        options=[
            PromptOption(id="1", label="Allow Once", value="allow_once"),
            PromptOption(id="2", label="Allow All Tools (This Session)", value="allow_all"),
            PromptOption(id="3", label="Always Allow This Tool", value="allow_always"),
            PromptOption(
                id="4", label="Deny", value="deny", is_default=True,
                is_recommended=risk == RiskLevel.CRITICAL,
            ),
        ],
        context=context,
    )


def build_plan_prompt(plan: str) -> Prompt:
    return Prompt(
        type=PromptType.PLAN_REVIEW,
        title="Review Plan",
        message=plan,
        options=[
            PromptOption(id="1", label="Accept", value="auto_accept"),
            PromptOption(id="2", label="Review Each Step", value="review_accept"),
            PromptOption(id="3", label="Edit Plan", value="edit_plan"),
            PromptOption(id="4", label="Reject", value="reject", is_default=True),
        ],
        context={"toolName": PLAN_TOOL, "plan": plan},
    )


@dataclass
class GateContext:
    """Who is asking: the conversation and turn a tool call belongs to."""
    conversation_id: str
    request_id: str | None = None
    session_id: str | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT


@dataclass
class GateResult:
    behavior: str  # "allow" or "deny"
    updated_input: dict[str, Any] | None = None
    message: str = ""
    prompt_id: str | None = None
    interrupt: bool = False

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"

    def to_sdk(self):
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        if self.allowed:
            return PermissionResultAllow(updated_input=self.updated_input)
        return PermissionResultDeny(message=self.message, interrupt=self.interrupt)


@dataclass
class _ConversationPermissions:
    allow_all: bool = False
    denied: set[str] = field(default_factory=set)
    turn_id: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


class PermissionGate:
    """Per-bridge permission checkpoint shared by all conversations."""

    def __init__(
        self,
        engine: DecisionEngine,
        store: SqliteStore,
        *,
        policy_store: CommandPolicyStore | None = None,
        safe_tools: frozenset[str] | set[str] = SAFE_TOOLS,
        stats: BridgeStats | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._policy_store = policy_store
        self._safe_tools = frozenset(safe_tools)
        self._stats = stats or BridgeStats()
        self._conversations: dict[str, _ConversationPermissions] = {}

    def _state(self, conversation_id: str) -> _ConversationPermissions:
        state = self._conversations.get(conversation_id)
        if state is None:
            state = _ConversationPermissions()
            self._conversations[conversation_id] = state
        return state

    def begin_turn(self, conversation_id: str, request_id: str | None) -> None:
        """Forget per-turn denials when a new turn starts."""
        state = self._state(conversation_id)
        if state.turn_id != request_id:
            state.denied.clear()
            state.turn_id = request_id

    def reset_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)

    def allows_all(self, conversation_id: str) -> bool:
        state = self._conversations.get(conversation_id)
        return bool(state and state.allow_all)

    def release(self, request_id: str) -> int:
        """Reject every permission wait belonging to an aborted request."""
        return self._engine.cancel_request(request_id)

    def bind(self, ctx: GateContext):
        """Return a ``can_use_tool`` callback scoped to one turn."""
        async def can_use_tool(tool_name: str, tool_input: dict, context: object = None):
            result = await self.check(tool_name, tool_input or {}, ctx)
            return result.to_sdk()
        return can_use_tool

    @staticmethod
    def _deny_key(tool_name: str, tool_input: dict[str, Any]) -> str:
        if tool_name in TERMINAL_TOOLS:
            return f"{tool_name}:{extract_command(tool_input)}"
        return tool_name

    def _allow(self, reason: str, updated_input: dict[str, Any] | None = None,
               prompt_id: str | None = None) -> GateResult:
        self._stats.increment("permissions_allowed")
        return GateResult("allow", updated_input=updated_input, message=reason, prompt_id=prompt_id)

    def _deny(self, message: str, *, prompt_id: str | None = None,
              interrupt: bool = False) -> GateResult:
        self._stats.increment("permissions_denied")
        return GateResult("deny", message=message, prompt_id=prompt_id, interrupt=interrupt)

    async def check(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        ctx: GateContext,
    ) -> GateResult:
        risk = analyze_tool_risk(tool_name, tool_input)
        state = self._state(ctx.conversation_id)
        state.usage[tool_name] = state.usage.get(tool_name, 0) + 1
        logger.info(
            "PERM_CHECK conversation=%s request=%s tool=%s risk=%s",
            ctx.conversation_id, ctx.request_id, tool_name, risk.value,
        )

        if tool_name == PLAN_TOOL:
            return await self._review_plan(tool_input, ctx)

        if tool_name in self._safe_tools:
            return self._allow(f"{tool_name} is a safe tool")

        key = self._deny_key(tool_name, tool_input)
        if key in state.denied:
            logger.info("PERM_CHECK %s denied earlier this turn", key)
            return self._deny(f"{tool_name} was denied earlier in this turn")

        if state.allow_all:
            return self._allow("All tools allowed for this session")

        try:
            grants = self._store.list_permission_grants(ctx.conversation_id)
        except sqlite3.Error:
            logger.warning("Could not read grants for %s", ctx.conversation_id, exc_info=True)
            grants = []
        if tool_name in grants:
            return self._allow(f"{tool_name} was permanently allowed")

        prompt = build_tool_prompt(tool_name, tool_input, risk, state.usage[tool_name])
        resolution = await self._resolve(prompt, ctx)
        if resolution is None:
            return self._deny(
                f"Permission for {tool_name} was not granted",
                prompt_id=prompt.id,
                interrupt=True,
            )
        return self._apply(prompt, resolution, tool_name, tool_input, ctx)

    async def _resolve(self, prompt: Prompt, ctx: GateContext) -> Resolution | None:
        try:
            resolution = await self._engine.handle_prompt(
                prompt, ctx.conversation_id, ctx.session_id, ctx.request_id,
            )
            if resolution is not None and resolution.pending:
                logger.info("Prompt %s still open; waiting for a late answer", prompt.id)
                resolution = await self._engine.await_late_resolution(prompt)
        except PermissionCancelledError:
            logger.info("Permission wait for prompt %s cancelled", prompt.id)
            return None
        return resolution

    def _apply(
        self,
        prompt: Prompt,
        resolution: Resolution,
        tool_name: str,
        tool_input: dict[str, Any],
        ctx: GateContext,
    ) -> GateResult:
        option = prompt.option(resolution.selected_option or "")
        value = option.value if option else "deny"
        state = self._state(ctx.conversation_id)

        if value == "allow_once":
            return self._allow("Allowed once", prompt_id=prompt.id)
        if value == "allow_all":
            state.allow_all = True
            logger.info("All tools allowed for conversation %s", ctx.conversation_id)
            return self._allow("All tools allowed for this session", prompt_id=prompt.id)
        if value == "allow_always":
            self._persist_grant(tool_name, tool_input, ctx, resolution)
            return self._allow(f"{tool_name} always allowed", prompt_id=prompt.id)

        if not resolution.automatic:
            state.denied.add(self._deny_key(tool_name, tool_input))
        message = resolution.feedback or resolution.response or f"{tool_name} denied"
        return self._deny(message, prompt_id=prompt.id)

    def _persist_grant(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        ctx: GateContext,
        resolution: Resolution,
    ) -> None:
        granted_by = "user" if not resolution.automatic else resolution.handler
        try:
            if tool_name in TERMINAL_TOOLS and self._policy_store is not None:
                pattern = CommandPolicyStore.build_command_pattern(extract_command(tool_input))
                if pattern:
                    self._policy_store.add_allow_pattern(pattern)
                    allowlist = self._engine.allowlist
                    if allowlist is not None:
                        allowlist.add_command_patterns(
                            allow=[re.compile(pattern, re.IGNORECASE)],
                        )
                return
            self._store.grant_permission(
                ctx.conversation_id, tool_name, granted_by=granted_by,
                metadata={"promptId": resolution.prompt_id},
            )
        except (sqlite3.Error, OSError):
            logger.warning(
                "Could not persist grant for %s in %s",
                tool_name, ctx.conversation_id, exc_info=True,
            )

    async def _review_plan(self, tool_input: dict[str, Any], ctx: GateContext) -> GateResult:
        plan = str(tool_input.get("plan") or "").strip()
        if not plan:
            return self._deny("Plan is empty; there is nothing to review.")
        prompt = build_plan_prompt(plan)
        resolution = await self._resolve(prompt, ctx)
        if resolution is None:
            return self._deny("Plan review was not completed", prompt_id=prompt.id, interrupt=True)

        option = prompt.option(resolution.selected_option or "")
        value = option.value if option else "reject"
        if value in ("auto_accept", "review_accept"):
            return self._allow("Plan accepted", prompt_id=prompt.id)
        if value == "edit_plan":
            edited = (resolution.updated_input or {}).get("plan") or plan
            return self._allow(
                "Plan edited", updated_input={**tool_input, "plan": edited},
                prompt_id=prompt.id,
            )
        return self._deny(resolution.feedback or "Plan rejected", prompt_id=prompt.id)

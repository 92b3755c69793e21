"""Decision strategies for interactive prompts.

Each strategy is a partial function over prompts: ``can_handle`` says
whether it applies, ``decide`` either commits a ``Decision`` or returns
None so the next strategy in the engine's ordered list gets a turn.

Default order is allowlist, denylist, then user delegation. Shell
commands are checked against the command denylist first inside the
allowlist strategy, so a command matching both lists is never
auto-approved.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from .config import EmitCallback, fire_event
from .errors import PermissionCancelledError
from .models import (
    ACTION_TIMEOUT,
    ACTION_TIMEOUT_DEFAULT,
    ACTION_USER_SELECTED,
    Decision,
    Prompt,
    PromptOption,
    PromptType,
)

logger = logging.getLogger(__name__)

# Tool names treated as shell execution.
TERMINAL_TOOLS = frozenset({"Bash", "bash", "run_bash", "shell"})

# Known-safe tools: (action, confidence).
TOOL_ALLOWLIST: dict[str, tuple[str, float]] = {
    "exa - web_search_exa": ("yes_dont_ask", 0.95),
    "mcp__exa__web_search_exa": ("yes_dont_ask", 0.95),
    "web_search_exa": ("yes_dont_ask", 0.95),
    "Read": ("yes_dont_ask", 0.9),
    "Glob": ("yes_dont_ask", 0.9),
    "LS": ("yes_dont_ask", 0.9),
    "Grep": ("yes_dont_ask", 0.9),
    "WebSearch": ("yes_dont_ask", 0.9),
}

COMMAND_ALLOWLIST: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r"^\s*(?:npm|pnpm|yarn)\s+(?:install|run|start|build|test|lint)\b",
        r"^\s*git\s+(?:status|add|commit|push|pull|diff|log)\b",
        r"^\s*(?:ls|cat|grep|find|head|tail|pwd|wc)\b",
        r"^\s*(?:node|python3?|go\s+run)\b",
        r"^\s*(?:mkdir|touch)\b",
        r"^\s*curl\b.*\blocalhost\b",
    )
)

COMMAND_DENYLIST: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r"rm\s+-rf.*/(?!node_modules|dist|build|\.git)",
        r"\bsudo\b",
        r"chmod.*777",
        r"\bkill\b.*-9",
        r"\bdd\b.*\bif=",
        r"\b(?:format|fdisk|mkfs)\b",
    )
)

DANGEROUS_PHRASES: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r"delete.*production",
        r"drop.*table",
        r"truncate.*table",
        r"rm\s+-rf.*/(?!node_modules|dist|build)",
        r"sudo.*\brm\b",
        r"format.*disk",
    )
)

RESPONSES = {
    "yes": "Proceeding with the action.",
    "yes_dont_ask": "Proceeding with the action and remembering this choice.",
    "no": "Action declined.",
    "no_explain": "Action declined for safety reasons.",
}

# Option values each action can select, in preference order. Covers
# both detected yes/no prompts and the permission gate's options.
_ACTION_VALUES: dict[str, tuple[str, ...]] = {
    "yes": ("yes", "allow_once", "auto_accept"),
    "yes_dont_ask": ("yes_dont_ask", "allow_always"),
    "no": ("no", "deny", "reject"),
    "no_explain": ("no_explain", "deny", "no", "reject"),
}
_DENY_ACTIONS = frozenset({"no", "no_explain"})


def map_action_to_option(action: str, options: list[PromptOption]) -> str | None:
    """Pick the option id an automatic action selects."""
    if not options:
        return None
    for value in _ACTION_VALUES.get(action, ()):
        for opt in options:
            if opt.value == value:
                return opt.id
    if action == "yes_dont_ask":
        for opt in options:
            if opt.is_recommended:
                return opt.id
    if action in _DENY_ACTIONS:
        for opt in options:
            label = opt.label.lower()
            if label.startswith("no") or "deny" in label or "reject" in label:
                return opt.id
        # Never fall back to an approving first option for a denial.
        return options[-1].id
    return options[0].id


def _command_of(prompt: Prompt) -> str:
    return str(prompt.context.get("command") or "").strip()


class DecisionStrategy:
    """Base class: a named, ordered partial decision function."""

    name = "strategy"

    def can_handle(self, prompt: Prompt) -> bool:
        raise NotImplementedError

    async def decide(self, prompt: Prompt) -> Decision | None:
        raise NotImplementedError


class AllowlistStrategy(DecisionStrategy):
    """Auto-approves known-safe tools and read-only shell commands."""

    name = "allowlist"

    def __init__(
        self,
        tool_table: dict[str, tuple[str, float]] | None = None,
        extra_allow: list[re.Pattern[str]] | None = None,
        extra_deny: list[re.Pattern[str]] | None = None,
    ) -> None:
        self._tools = dict(TOOL_ALLOWLIST if tool_table is None else tool_table)
        self._allow = list(COMMAND_ALLOWLIST) + list(extra_allow or [])
        self._deny = list(COMMAND_DENYLIST) + list(extra_deny or [])

    def add_command_patterns(
        self,
        allow: list[re.Pattern[str]] | None = None,
        deny: list[re.Pattern[str]] | None = None,
    ) -> None:
        self._allow.extend(allow or [])
        self._deny.extend(deny or [])

    def can_handle(self, prompt: Prompt) -> bool:
        return prompt.type in (PromptType.TOOL_USAGE, PromptType.PERMISSION)

    def command_is_denied(self, command: str) -> bool:
        return any(p.search(command) for p in self._deny)

    def command_is_allowed(self, command: str) -> bool:
        return any(p.search(command) for p in self._allow)

    async def decide(self, prompt: Prompt) -> Decision | None:
        tool_name = str(prompt.context.get("toolName") or "").strip()

        if tool_name in TERMINAL_TOOLS:
            command = _command_of(prompt)
            if not command:
                return None
            if self.command_is_denied(command):
                return Decision(
                    action="no_explain",
                    selected_option=map_action_to_option("no_explain", prompt.options),
                    confidence=0.95,
                    handler="denylist",
                    reason=f'Command "{command}" is potentially dangerous',
                    response="This command could be dangerous and has been blocked automatically.",
                )
            if self.command_is_allowed(command):
                return Decision(
                    action="yes",
                    selected_option=map_action_to_option("yes", prompt.options),
                    confidence=0.8,
                    handler=self.name,
                    reason=f'Command "{command}" is safe and pre-approved',
                    response="Command approved automatically.",
                )
            return None

        if prompt.type == PromptType.TOOL_USAGE and tool_name in self._tools:
            action, confidence = self._tools[tool_name]
            return Decision(
                action=action,
                selected_option=map_action_to_option(action, prompt.options),
                confidence=confidence,
                handler=self.name,
                reason=f"Tool {tool_name} is pre-approved",
                response=RESPONSES[action],
            )
        return None


class DenylistStrategy(DecisionStrategy):
    """Blocks prompts whose text describes a destructive operation."""

    name = "denylist"

    def __init__(self, patterns: list[re.Pattern[str]] | None = None) -> None:
        self._patterns = list(DANGEROUS_PHRASES) + list(patterns or [])

    def can_handle(self, prompt: Prompt) -> bool:
        return True

    async def decide(self, prompt: Prompt) -> Decision | None:
        haystack = " ".join(
            part for part in (
                prompt.message,
                str(prompt.context.get("fullMessage") or ""),
                _command_of(prompt),
            ) if part
        )
        for pattern in self._patterns:
            if pattern.search(haystack):
                return Decision(
                    action="no_explain",
                    selected_option=map_action_to_option("no_explain", prompt.options),
                    confidence=0.99,
                    handler=self.name,
                    reason=f"Matched dangerous pattern {pattern.pattern!r}",
                    response=RESPONSES["no_explain"],
                )
        return None


@dataclass
class _PendingResponse:
    future: asyncio.Future
    request_id: str | None


class UserDelegationStrategy(DecisionStrategy):
    """Asks the connected human and waits for the answer.

    Pending waits live in a registry keyed by prompt id, inserted when
    the wait starts and removed exactly once when it ends. A wait that
    times out yields a ``timeout`` decision with ``pending=True``: the
    prompt stays open for a late answer rather than becoming a denial.
    """

    name = "user_delegation"

    def __init__(
        self,
        emit: EmitCallback | None = None,
        timeout_seconds: float = 300.0,
    ) -> None:
        self._emit = emit
        self._timeout = timeout_seconds
        self._pending: dict[str, _PendingResponse] = {}

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def can_handle(self, prompt: Prompt) -> bool:
        return True

    def has_pending(self, prompt_id: str) -> bool:
        return prompt_id in self._pending

    def pending_count(self) -> int:
        return len(self._pending)

    async def decide(self, prompt: Prompt) -> Decision | None:
        logger.info(
            "Delegating prompt to user: prompt=%s conversation=%s",
            prompt.id, prompt.conversation_id,
        )
        payload = prompt.to_dict()
        payload["promptId"] = prompt.id
        payload["timeout"] = int(self._timeout * 1000)
        room = f"conversation-{prompt.conversation_id}" if prompt.conversation_id else None
        # Register before announcing so an instant answer is not lost.
        entry = self._register(prompt)
        await fire_event(self._emit, "interactive-prompt", payload, room)
        return await self._await(prompt, entry, self._timeout)

    async def wait(self, prompt: Prompt, timeout: float | None = None) -> Decision:
        """Wait for an answer to an already-announced prompt."""
        entry = self._register(prompt)
        return await self._await(prompt, entry, timeout)

    def _register(self, prompt: Prompt) -> _PendingResponse:
        existing = self._pending.get(prompt.id)
        if existing is not None and not existing.future.done():
            return existing
        entry = _PendingResponse(
            future=asyncio.get_running_loop().create_future(),
            request_id=prompt.request_id,
        )
        self._pending[prompt.id] = entry
        return entry

    async def _await(
        self,
        prompt: Prompt,
        entry: _PendingResponse,
        timeout: float | None,
    ) -> Decision:
        try:
            if timeout is None:
                return await entry.future
            return await asyncio.wait_for(entry.future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "No user response for prompt %s after %.0fs; leaving it open",
                prompt.id, timeout,
            )
            return Decision(
                action=ACTION_TIMEOUT,
                selected_option=None,
                confidence=0.0,
                handler=self.name,
                reason=f"No response within {timeout:.0f}s",
                automatic=False,
                response="Still waiting for a decision.",
                pending=True,
            )
        finally:
            if self._pending.get(prompt.id) is entry:
                del self._pending[prompt.id]

    def respond(
        self,
        prompt_id: str,
        option_id: str,
        *,
        updated_input: dict[str, Any] | None = None,
        feedback: str | None = None,
    ) -> bool:
        """Resolve the waiter for *prompt_id*. False when nobody is waiting."""
        entry = self._pending.get(prompt_id)
        if entry is None or entry.future.done():
            logger.debug("respond: no waiter for prompt %s", prompt_id)
            return False
        entry.future.set_result(Decision(
            action=ACTION_USER_SELECTED,
            selected_option=option_id,
            confidence=1.0,
            handler=self.name,
            reason="User made the decision",
            automatic=False,
            response="User selection received.",
            updated_input=updated_input,
            feedback=feedback,
        ))
        return True

    def expire(self, prompt_id: str, option_id: str) -> bool:
        """Release a waiter because the sweep already timed the prompt out."""
        entry = self._pending.get(prompt_id)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(Decision(
            action=ACTION_TIMEOUT_DEFAULT,
            selected_option=option_id,
            confidence=0.5,
            handler="timeout",
            reason="Prompt expired before anyone answered",
            automatic=True,
            response="Default option selected after timeout.",
        ))
        return True

    def cancel_request(self, request_id: str) -> int:
        """Reject every wait tied to *request_id*. Returns how many."""
        cancelled = 0
        for prompt_id, entry in list(self._pending.items()):
            if entry.request_id != request_id or entry.future.done():
                continue
            entry.future.set_exception(PermissionCancelledError(request_id, prompt_id))
            cancelled += 1
        if cancelled:
            logger.info(
                "Cancelled %d pending permission wait(s) for request %s",
                cancelled, request_id,
            )
        return cancelled

    def cancel_all(self) -> int:
        cancelled = 0
        for prompt_id, entry in list(self._pending.items()):
            if not entry.future.done():
                entry.future.set_exception(
                    PermissionCancelledError(entry.request_id, prompt_id),
                )
                cancelled += 1
        return cancelled

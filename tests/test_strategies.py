"""Decision strategies: allowlist, denylist, user delegation."""

from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock

import pytest

from baton.engine.errors import PermissionCancelledError
from baton.engine.models import Prompt, PromptOption, PromptType
from baton.engine.strategies import (
    AllowlistStrategy,
    DenylistStrategy,
    UserDelegationStrategy,
    map_action_to_option,
)


def _yes_no_prompt(tool_name: str, command: str = "", message: str = "") -> Prompt:
    return Prompt(
        type=PromptType.TOOL_USAGE,
        title="Tool Usage Confirmation",
        message=message or f"Claude wants to use {tool_name}",
        options=[
            PromptOption(id="1", label="Yes", value="yes", is_default=True),
            PromptOption(id="2", label="Yes, and don't ask again", value="yes_dont_ask", is_recommended=True),
            PromptOption(id="3", label="No, and tell Claude what to do differently", value="no_explain"),
        ],
        context={"toolName": tool_name, "command": command},
        conversation_id="conv-1",
    )


@pytest.mark.asyncio
async def test_allowlist_approves_safe_tool_with_dont_ask():
    decision = await AllowlistStrategy().decide(_yes_no_prompt("Read"))

    assert decision is not None
    assert decision.action == "yes_dont_ask"
    assert decision.selected_option == "2"
    assert decision.automatic


@pytest.mark.asyncio
async def test_allowlist_does_not_cover_write():
    assert await AllowlistStrategy().decide(_yes_no_prompt("Write")) is None


@pytest.mark.asyncio
async def test_allowlist_approves_read_only_command():
    decision = await AllowlistStrategy().decide(_yes_no_prompt("Bash", "git status"))

    assert decision.action == "yes"
    assert decision.selected_option == "1"


@pytest.mark.asyncio
async def test_denylist_wins_over_allowlist_for_same_command():
    command = "git status && sudo rm -rf /var/lib"
    strategy = AllowlistStrategy()
    assert strategy.command_is_allowed(command)
    assert strategy.command_is_denied(command)

    decision = await strategy.decide(_yes_no_prompt("Bash", command))

    assert decision.action == "no_explain"
    assert decision.handler == "denylist"
    assert decision.selected_option == "3"


@pytest.mark.asyncio
async def test_unknown_command_and_empty_command_fall_through():
    strategy = AllowlistStrategy()
    assert await strategy.decide(_yes_no_prompt("Bash", "make deploy")) is None
    assert await strategy.decide(_yes_no_prompt("Bash", "")) is None


@pytest.mark.asyncio
async def test_extra_command_patterns_are_merged():
    strategy = AllowlistStrategy()
    strategy.add_command_patterns(allow=[re.compile(r"^make\s+deploy$")])

    decision = await strategy.decide(_yes_no_prompt("Bash", "make deploy"))

    assert decision.action == "yes"


@pytest.mark.asyncio
async def test_denylist_blocks_dangerous_phrases():
    prompt = _yes_no_prompt("Write", message="I will drop the users table now")
    decision = await DenylistStrategy().decide(prompt)

    assert decision.action == "no_explain"
    assert decision.confidence == 0.99
    assert decision.selected_option == "3"


@pytest.mark.asyncio
async def test_denylist_ignores_harmless_text():
    assert await DenylistStrategy().decide(_yes_no_prompt("Write")) is None


def test_deny_action_never_maps_to_approving_option():
    options = [
        PromptOption(id="a", label="Proceed", value="go"),
        PromptOption(id="b", label="Stop here", value="stop"),
    ]
    assert map_action_to_option("no_explain", options) == "b"
    assert map_action_to_option("yes", options) == "a"


@pytest.mark.asyncio
async def test_delegation_timeout_is_pending_not_denial():
    emit = AsyncMock()
    strategy = UserDelegationStrategy(emit=emit, timeout_seconds=0.01)
    prompt = _yes_no_prompt("Write")

    decision = await strategy.decide(prompt)

    assert decision.action == "timeout"
    assert decision.pending is True
    assert decision.selected_option is None
    assert not strategy.has_pending(prompt.id)
    event, payload, room = emit.await_args.args
    assert event == "interactive-prompt"
    assert payload["promptId"] == prompt.id
    assert room == "conversation-conv-1"


@pytest.mark.asyncio
async def test_delegation_resolves_on_response(wait_until):
    strategy = UserDelegationStrategy(timeout_seconds=5)
    prompt = _yes_no_prompt("Write")
    task = asyncio.create_task(strategy.decide(prompt))
    await wait_until(lambda: strategy.has_pending(prompt.id))

    assert strategy.respond(prompt.id, "1", feedback="ok") is True
    decision = await task

    assert decision.action == "user_selected"
    assert decision.selected_option == "1"
    assert decision.automatic is False
    assert decision.feedback == "ok"
    assert strategy.pending_count() == 0
    assert strategy.respond(prompt.id, "1") is False


@pytest.mark.asyncio
async def test_cancel_request_rejects_matching_waits(wait_until):
    strategy = UserDelegationStrategy(timeout_seconds=5)
    mine = _yes_no_prompt("Write")
    mine.request_id = "req-1"
    other = _yes_no_prompt("Edit")
    other.request_id = "req-2"
    mine_task = asyncio.create_task(strategy.decide(mine))
    other_task = asyncio.create_task(strategy.decide(other))
    await wait_until(lambda: strategy.pending_count() == 2)

    assert strategy.cancel_request("req-1") == 1
    with pytest.raises(PermissionCancelledError):
        await mine_task
    assert strategy.has_pending(other.id)

    strategy.respond(other.id, "3")
    assert (await other_task).selected_option == "3"

"""Decision engine: storage, strategy chain, timeouts and the sweep."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from baton.engine.decision_engine import DecisionEngine
from baton.engine.errors import InvalidPromptError, PermissionCancelledError, PromptStoreError
from baton.engine.models import Prompt, PromptOption, PromptStatus, PromptType, utcnow
from baton.engine.strategies import (
    AllowlistStrategy,
    DenylistStrategy,
    UserDelegationStrategy,
)


def _prompt(**overrides) -> Prompt:
    fields = dict(
        type=PromptType.MULTIPLE_CHOICE,
        title="Pick one",
        message="Which approach?",
        options=[
            PromptOption(id="1", label="First", value="first"),
            PromptOption(id="2", label="Second", value="second", is_default=True),
            PromptOption(id="3", label="Third", value="third", is_recommended=True),
        ],
        conversation_id="conv-1",
    )
    fields.update(overrides)
    return Prompt(**fields)


def _engine(store, *, timeout: float = 5.0, emit=None) -> DecisionEngine:
    emit = emit or AsyncMock()
    return DecisionEngine(
        store,
        [
            AllowlistStrategy(),
            DenylistStrategy(),
            UserDelegationStrategy(emit=emit, timeout_seconds=timeout),
        ],
        emit=emit,
        expiry_seconds=60,
    )


@pytest.mark.asyncio
async def test_prompt_is_stored_pending_before_deciding(store):
    engine = _engine(store, timeout=0.01)
    prompt = _prompt()

    resolution = await engine.handle_prompt(prompt, request_id="req-1")

    stored = store.get_prompt(prompt.id)
    assert stored is not None
    assert stored.request_id == "req-1"
    assert stored.timeout_at is not None
    assert resolution.pending is True


@pytest.mark.asyncio
async def test_timeout_leaves_prompt_pending_until_sweep(store):
    emit = AsyncMock()
    engine = _engine(store, timeout=0.01, emit=emit)
    prompt = _prompt()

    resolution = await engine.handle_prompt(prompt)

    assert resolution.action == "timeout"
    assert resolution.pending is True
    assert store.get_prompt(prompt.id).status == PromptStatus.PENDING
    events = [call.args[0] for call in emit.await_args_list]
    assert "permission-pending" in events
    assert "prompt-resolved" not in events


@pytest.mark.asyncio
async def test_sweep_prefers_recommended_over_default(store):
    engine = _engine(store, timeout=0.01)
    prompt = _prompt()
    await engine.handle_prompt(prompt)

    # Not expired yet.
    assert await engine.handle_timeouts() == []

    updated = await engine.handle_timeouts(utcnow() + timedelta(minutes=5))

    assert [p.id for p in updated] == [prompt.id]
    stored = store.get_prompt(prompt.id)
    assert stored.status == PromptStatus.TIMEOUT
    assert stored.selected_option == "3"
    assert stored.auto_handler == "timeout"


@pytest.mark.asyncio
async def test_terminal_status_is_written_once(store):
    engine = _engine(store, timeout=0.01)
    prompt = _prompt()
    await engine.handle_prompt(prompt)
    await engine.handle_timeouts(utcnow() + timedelta(minutes=5))

    assert await engine.respond(prompt.id, "1") is False
    assert await engine.handle_timeouts(utcnow() + timedelta(minutes=10)) == []
    stored = store.get_prompt(prompt.id)
    assert stored.status == PromptStatus.TIMEOUT
    assert stored.selected_option == "3"


@pytest.mark.asyncio
async def test_human_answer_resolves_waiting_prompt(store, wait_until):
    engine = _engine(store)
    prompt = _prompt()
    task = asyncio.create_task(engine.handle_prompt(prompt))
    await wait_until(lambda: engine.delegation.has_pending(prompt.id))

    assert await engine.respond(prompt.id, "2") is True
    resolution = await task

    assert resolution.action == "user_selected"
    assert resolution.selected_option == "2"
    assert resolution.automatic is False
    stored = store.get_prompt(prompt.id)
    assert stored.status == PromptStatus.ANSWERED
    assert stored.selected_option == "2"


@pytest.mark.asyncio
async def test_late_answer_after_per_call_timeout(store):
    engine = _engine(store, timeout=0.01)
    prompt = _prompt()
    await engine.handle_prompt(prompt)

    assert await engine.respond(prompt.id, "1") is True
    stored = store.get_prompt(prompt.id)
    assert stored.status == PromptStatus.ANSWERED
    assert stored.selected_option == "1"


@pytest.mark.asyncio
async def test_sweep_releases_late_waiter(store, wait_until):
    engine = _engine(store, timeout=0.01)
    prompt = _prompt()
    first = await engine.handle_prompt(prompt)
    assert first.pending

    waiter = asyncio.create_task(engine.await_late_resolution(prompt))
    await wait_until(lambda: engine.delegation.has_pending(prompt.id))
    await engine.handle_timeouts(utcnow() + timedelta(minutes=5))
    resolution = await waiter

    assert resolution.action == "timeout_default"
    assert resolution.selected_option == "3"
    assert store.get_prompt(prompt.id).status == PromptStatus.TIMEOUT


@pytest.mark.asyncio
async def test_automatic_decision_marks_auto_handled(store):
    engine = _engine(store)
    prompt = Prompt(
        type=PromptType.TOOL_USAGE,
        title="Tool Usage Confirmation",
        message="Claude wants to use Grep",
        options=[
            PromptOption(id="1", label="Yes", value="yes", is_default=True),
            PromptOption(id="2", label="Yes, and don't ask again", value="yes_dont_ask"),
            PromptOption(id="3", label="No", value="no"),
        ],
        context={"toolName": "Grep"},
    )

    resolution = await engine.handle_prompt(prompt)

    assert resolution.automatic
    assert resolution.selected_option == "2"
    assert store.get_prompt(prompt.id).status == PromptStatus.AUTO_HANDLED


@pytest.mark.asyncio
async def test_store_failure_aborts_the_decision():
    store = MagicMock()
    store.create_prompt.side_effect = sqlite3.OperationalError("disk I/O error")
    engine = _engine(store)

    with pytest.raises(PromptStoreError):
        await engine.handle_prompt(_prompt())


@pytest.mark.asyncio
async def test_empty_prompt_is_rejected(store):
    engine = _engine(store)
    with pytest.raises(InvalidPromptError):
        await engine.handle_prompt(_prompt(options=[]))


@pytest.mark.asyncio
async def test_respond_to_unknown_prompt_or_option(store):
    engine = _engine(store, timeout=0.01)
    prompt = _prompt()
    await engine.handle_prompt(prompt)

    with pytest.raises(InvalidPromptError):
        await engine.respond("missing", "1")
    with pytest.raises(InvalidPromptError):
        await engine.respond(prompt.id, "9")


@pytest.mark.asyncio
async def test_cancel_request_rejects_wait(store, wait_until):
    engine = _engine(store)
    prompt = _prompt()
    task = asyncio.create_task(engine.handle_prompt(prompt, request_id="req-9"))
    await wait_until(lambda: engine.delegation.has_pending(prompt.id))

    assert engine.cancel_request("req-9") == 1
    with pytest.raises(PermissionCancelledError):
        await task
    assert store.get_prompt(prompt.id).status == PromptStatus.PENDING


@pytest.mark.asyncio
async def test_pending_listing_is_per_conversation(store):
    engine = _engine(store, timeout=0.01)
    await engine.handle_prompt(_prompt(conversation_id="a"))
    await engine.handle_prompt(_prompt(conversation_id="a"))
    await engine.handle_prompt(_prompt(conversation_id="b"))

    assert len(engine.get_pending_prompts("a")) == 2
    assert len(engine.get_pending_prompts("b")) == 1


def test_register_strategy_goes_before_delegation(store):
    engine = _engine(store)
    extra = DenylistStrategy()
    engine.register_strategy(extra)

    names = [type(s).__name__ for s in engine.strategies]
    assert names[-1] == "UserDelegationStrategy"
    assert engine.strategies[-2] is extra

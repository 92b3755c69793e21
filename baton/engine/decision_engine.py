"""Decision engine: runs prompts through the strategy chain.

Every prompt is stored as ``pending`` before any strategy runs; a
failed write aborts the attempt with ``PromptStoreError``. The first
strategy that commits decides. A ``timeout`` decision leaves the
prompt pending and returns a pending ``Resolution``; anything else
moves the prompt to its one terminal status.

A background sweep marks prompts still pending past ``timeout_at`` as
``timeout`` with a default option, and releases any waiter still
parked on them.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from baton.shared.services.store import SqliteStore

from .config import EmitCallback, fire_event
from .errors import InvalidPromptError, PromptStoreError
from .models import (
    ACTION_TIMEOUT,
    ACTION_TIMEOUT_DEFAULT,
    ACTION_USER_SELECTED,
    Decision,
    Prompt,
    PromptStatus,
    Resolution,
    utcnow,
)
from .stats import BridgeStats
from .strategies import (
    AllowlistStrategy,
    DecisionStrategy,
    DenylistStrategy,
    UserDelegationStrategy,
)

logger = logging.getLogger(__name__)


def _room(prompt: Prompt) -> str | None:
    if prompt.conversation_id:
        return f"conversation-{prompt.conversation_id}"
    return None


class DecisionEngine:
    """Orchestrates strategies against stored prompt records."""

    def __init__(
        self,
        store: SqliteStore,
        strategies: list[DecisionStrategy] | None = None,
        *,
        emit: EmitCallback | None = None,
        expiry_seconds: float = 900.0,
        user_timeout_seconds: float = 300.0,
        sweep_interval_seconds: float = 30.0,
        stats: BridgeStats | None = None,
    ) -> None:
        self._store = store
        self._emit = emit
        self._expiry = expiry_seconds
        self._sweep_interval = sweep_interval_seconds
        self._stats = stats or BridgeStats()
        if strategies is None:
            strategies = [
                AllowlistStrategy(),
                DenylistStrategy(),
                UserDelegationStrategy(emit=emit, timeout_seconds=user_timeout_seconds),
            ]
        self._strategies: list[DecisionStrategy] = list(strategies)
        self._sweep_task: asyncio.Task | None = None

    @property
    def strategies(self) -> list[DecisionStrategy]:
        return list(self._strategies)

    @property
    def delegation(self) -> UserDelegationStrategy | None:
        for strategy in self._strategies:
            if isinstance(strategy, UserDelegationStrategy):
                return strategy
        return None

    @property
    def allowlist(self) -> AllowlistStrategy | None:
        for strategy in self._strategies:
            if isinstance(strategy, AllowlistStrategy):
                return strategy
        return None

    def register_strategy(self, strategy: DecisionStrategy, index: int | None = None) -> None:
        """Insert a strategy; appended before the delegation fallback by default."""
        if index is None:
            index = len(self._strategies)
            for i, existing in enumerate(self._strategies):
                if isinstance(existing, UserDelegationStrategy):
                    index = i
                    break
        self._strategies.insert(index, strategy)

    # ── Prompt handling ──

    def _store_prompt(self, prompt: Prompt) -> None:
        prompt.status = PromptStatus.PENDING
        prompt.created_at = utcnow()
        prompt.timeout_at = prompt.created_at + timedelta(seconds=self._expiry)
        try:
            self._store.create_prompt(prompt)
        except sqlite3.Error as exc:
            raise PromptStoreError(prompt.id, str(exc)) from exc
        self._stats.increment("prompts_created")
        logger.info(
            "Stored prompt %s type=%s conversation=%s timeout_at=%s",
            prompt.id, prompt.type.value, prompt.conversation_id,
            prompt.timeout_at.isoformat(),
        )

    async def handle_prompt(
        self,
        prompt: Prompt,
        conversation_id: str | None = None,
        session_id: str | None = None,
        request_id: str | None = None,
    ) -> Resolution | None:
        """Decide *prompt*. None means no strategy committed."""
        prompt.validate()
        if conversation_id is not None:
            prompt.conversation_id = conversation_id
        if session_id is not None:
            prompt.session_id = session_id
        if request_id is not None:
            prompt.request_id = request_id
        self._store_prompt(prompt)

        for strategy in self._strategies:
            if not strategy.can_handle(prompt):
                continue
            decision = await strategy.decide(prompt)
            if decision is None:
                continue
            logger.info(
                "Prompt %s decided by %s: action=%s option=%s confidence=%.2f",
                prompt.id, decision.handler, decision.action,
                decision.selected_option, decision.confidence,
            )
            return await self._execute(prompt, decision)

        logger.warning("No strategy committed for prompt %s", prompt.id)
        return None

    async def _execute(self, prompt: Prompt, decision: Decision) -> Resolution:
        if decision.action == ACTION_TIMEOUT:
            self._stats.increment("prompts_left_pending")
            await fire_event(self._emit, "permission-pending", {
                "promptId": prompt.id,
                "conversationId": prompt.conversation_id,
                "requestId": prompt.request_id,
                "message": decision.response,
            }, _room(prompt))
            return Resolution.from_decision(prompt, decision)

        if decision.selected_option is None or prompt.option(decision.selected_option) is None:
            raise InvalidPromptError(
                f"decision selected unknown option {decision.selected_option!r}",
                prompt.id,
            )

        status = PromptStatus.AUTO_HANDLED if decision.automatic else PromptStatus.ANSWERED
        applied = self._store.update_prompt_status(
            prompt.id, status, decision.selected_option, decision.handler,
        )
        if not applied:
            stored = self._store.get_prompt(prompt.id)
            logger.info(
                "Prompt %s already %s; keeping stored outcome",
                prompt.id, stored.status.value if stored else "missing",
            )
            if stored is not None:
                return self._resolution_from_record(stored)
            return Resolution.from_decision(prompt, decision)

        prompt.status = status
        prompt.selected_option = decision.selected_option
        prompt.auto_handler = decision.handler
        self._stats.increment(
            "prompts_auto_handled" if decision.automatic else "prompts_answered",
        )
        resolution = Resolution.from_decision(prompt, decision)
        await fire_event(self._emit, "prompt-resolved", {
            **resolution.to_dict(),
            "conversationId": prompt.conversation_id,
        }, _room(prompt))
        return resolution

    @staticmethod
    def _resolution_from_record(prompt: Prompt) -> Resolution:
        if prompt.status == PromptStatus.TIMEOUT:
            action, response = ACTION_TIMEOUT_DEFAULT, "Default option selected after timeout."
        else:
            action, response = ACTION_USER_SELECTED, "Decision already recorded."
        return Resolution(
            prompt_id=prompt.id,
            action=action,
            selected_option=prompt.selected_option,
            response=response,
            automatic=prompt.status != PromptStatus.ANSWERED,
            handler=prompt.auto_handler or "store",
        )

    async def await_late_resolution(self, prompt: Prompt) -> Resolution:
        """Keep waiting, without a timer, on a prompt left pending."""
        stored = self._store.get_prompt(prompt.id)
        if stored is not None and stored.status != PromptStatus.PENDING:
            return self._resolution_from_record(stored)
        delegation = self.delegation
        if delegation is None:
            raise InvalidPromptError("no user delegation strategy registered", prompt.id)
        decision = await delegation.wait(prompt, timeout=None)
        return await self._execute(prompt, decision)

    async def respond(
        self,
        prompt_id: str,
        option_id: str,
        *,
        updated_input: dict[str, Any] | None = None,
        feedback: str | None = None,
    ) -> bool:
        """Record a human answer. False if the prompt was already resolved."""
        prompt = self._store.get_prompt(prompt_id)
        if prompt is None:
            raise InvalidPromptError("unknown prompt", prompt_id)
        if prompt.option(option_id) is None:
            raise InvalidPromptError(f"unknown option {option_id!r}", prompt_id)
        if prompt.status != PromptStatus.PENDING:
            logger.info("respond: prompt %s already %s", prompt_id, prompt.status.value)
            return False

        delegation = self.delegation
        if delegation is not None and delegation.respond(
            prompt_id, option_id, updated_input=updated_input, feedback=feedback,
        ):
            return True

        # Nobody is parked on it (detected prompt, or bridge restarted).
        resolution = await self._execute(prompt, Decision(
            action=ACTION_USER_SELECTED,
            selected_option=option_id,
            confidence=1.0,
            handler="user_delegation",
            reason="User made the decision",
            automatic=False,
            response="User selection received.",
            updated_input=updated_input,
            feedback=feedback,
        ))
        return resolution.action == ACTION_USER_SELECTED

    def get_pending_prompts(self, conversation_id: str | None = None) -> list[Prompt]:
        return self._store.list_pending_prompts(conversation_id)

    def cancel_request(self, request_id: str) -> int:
        delegation = self.delegation
        return delegation.cancel_request(request_id) if delegation else 0

    def cancel_all(self) -> int:
        delegation = self.delegation
        return delegation.cancel_all() if delegation else 0

    # ── Timeout sweep ──

    async def handle_timeouts(self, now: datetime | None = None) -> list[Prompt]:
        """Time out expired pending prompts. Returns the ones updated."""
        expired = self._store.list_expired_prompts(now)
        updated: list[Prompt] = []
        for prompt in expired:
            option = prompt.default_option()
            applied = self._store.update_prompt_status(
                prompt.id, PromptStatus.TIMEOUT, option.id, "timeout",
            )
            if not applied:
                continue
            prompt.status = PromptStatus.TIMEOUT
            prompt.selected_option = option.id
            prompt.auto_handler = "timeout"
            updated.append(prompt)
            self._stats.increment("prompts_timed_out")
            logger.info(
                "Prompt %s timed out; default option %s (%s)",
                prompt.id, option.id, option.label,
            )
            delegation = self.delegation
            if delegation is not None:
                delegation.expire(prompt.id, option.id)
            await fire_event(self._emit, "prompt-resolved", {
                "promptId": prompt.id,
                "conversationId": prompt.conversation_id,
                "action": ACTION_TIMEOUT,
                "selectedOption": option.id,
                "automatic": True,
                "handler": "timeout",
                "pending": False,
            }, _room(prompt))
        return updated

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.handle_timeouts()
            except sqlite3.Error:
                logger.exception("Timeout sweep failed")
            self._stats.save()

    def start_sweeper(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Timeout sweeper started (every %.0fs)", self._sweep_interval)

    async def stop_sweeper(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

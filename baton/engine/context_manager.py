"""Per-conversation session continuity and context accounting.

A conversation outlives any single runtime session. This manager keeps
the continuity token the runtime issued, a running token estimate, and
the last compaction time, and decides when to compact.

Token counts are estimates (characters / ``chars_per_token`` plus a
per-message overhead) and compaction applies an estimated reduction.
Both are tunable on ``BridgeConfig``.

Session id and token writes are best-effort: a store failure is logged
and the turn completes with stale bookkeeping.
"""
from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timedelta

from baton.shared.services.store import SqliteStore

from .config import BridgeConfig
from .models import (
    ContinuityMode,
    ConversationSession,
    PermissionMode,
    parse_permission_mode,
    utcnow,
)
from .stats import BridgeStats

logger = logging.getLogger(__name__)

COMPACT_PROMPT = (
    "/compact Summarize this conversation so far. Keep the key topics, "
    "decisions, open tasks and file paths needed to continue the work."
)


class SessionContextManager:
    """Owns ``ConversationSession`` state for every conversation."""

    def __init__(
        self,
        store: SqliteStore,
        config: BridgeConfig | None = None,
        runtime=None,
        stats: BridgeStats | None = None,
    ) -> None:
        self._store = store
        self._config = config or BridgeConfig()
        self._runtime = runtime
        self._stats = stats or BridgeStats()
        self._sessions: dict[str, ConversationSession] = {}

    @property
    def compact_threshold(self) -> int:
        return self._config.compact_threshold

    def estimate_tokens(self, text: str) -> int:
        return (
            math.ceil(len(text or "") / self._config.chars_per_token)
            + self._config.tokens_per_message_overhead
        )

    def get_or_create_session(
        self,
        conversation_id: str,
        permission_mode: str | PermissionMode | None = None,
    ) -> ConversationSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = ConversationSession(conversation_id=conversation_id)
            try:
                row = self._store.get_conversation(conversation_id)
            except sqlite3.Error:
                logger.warning("Could not load conversation %s", conversation_id, exc_info=True)
                row = None
            if row is not None:
                session.claude_session_id = row["claude_session_id"]
                session.context_tokens = row["context_tokens"]
                session.last_compacted = row["last_compacted"]
                session.permission_mode = parse_permission_mode(row["permission_mode"])
                session.persisted = True
            self._sessions[conversation_id] = session
        if permission_mode is not None:
            session.permission_mode = (
                permission_mode if isinstance(permission_mode, PermissionMode)
                else parse_permission_mode(permission_mode)
            )
        return session

    def resolve_continuity(
        self,
        session: ConversationSession,
        requested_session_id: str | None = None,
    ) -> tuple[ContinuityMode, str | None]:
        """Pick how the next turn attaches to the runtime context.

        A persisted session id always wins over one the caller passed,
        so an existing continuity chain is never branched.
        """
        if session.claude_session_id:
            if requested_session_id and requested_session_id != session.claude_session_id:
                logger.info(
                    "Ignoring caller session %s for %s; using persisted %s",
                    requested_session_id, session.conversation_id,
                    session.claude_session_id,
                )
            return ContinuityMode.RESUME, session.claude_session_id
        if requested_session_id:
            return ContinuityMode.RESUME, requested_session_id
        if session.context_tokens > 0:
            return ContinuityMode.CONTINUE, None
        return ContinuityMode.NEW, None

    def should_compact(self, session: ConversationSession, now: datetime | None = None) -> bool:
        if not session.claude_session_id:
            return False
        if session.context_tokens > self.compact_threshold:
            return True
        if session.last_compacted is not None:
            age = (now or utcnow()) - session.last_compacted
            if age > timedelta(hours=self._config.compact_max_age_hours):
                return True
        return False

    async def compact(self, session: ConversationSession) -> None:
        """Ask the runtime to summarize the session. Best-effort."""
        if not session.claude_session_id or self._runtime is None:
            return
        before = session.context_tokens
        new_session_id: str | None = None
        options = self._runtime.build_options(
            mode=ContinuityMode.RESUME,
            session_id=session.claude_session_id,
            permission_mode=session.permission_mode,
            max_turns=1,
        )
        try:
            async for event in self._runtime.stream(COMPACT_PROMPT, options):
                sid = event.get("session_id") if isinstance(event, dict) else None
                if sid and new_session_id is None:
                    new_session_id = sid
        except Exception:
            logger.warning(
                "Compaction failed for %s; continuing uncompacted",
                session.conversation_id, exc_info=True,
            )
            return

        session.context_tokens = math.floor(before * (1 - self._config.compaction_reduction))
        session.last_compacted = utcnow()
        if new_session_id and new_session_id != session.claude_session_id:
            session.claude_session_id = new_session_id
            session.epoch += 1
        try:
            self._store.record_compaction(
                session.conversation_id,
                session.context_tokens,
                session.last_compacted,
                session_id=session.claude_session_id,
            )
        except sqlite3.Error:
            logger.warning("Could not record compaction for %s", session.conversation_id, exc_info=True)
        self._stats.increment("compactions")
        logger.info(
            "Context compacted for %s: %d -> %d tokens (epoch %d)",
            session.conversation_id, before, session.context_tokens, session.epoch,
        )

    def record_token_usage(self, conversation_id: str, estimated_tokens: int) -> None:
        session = self.get_or_create_session(conversation_id)
        session.context_tokens += max(0, int(estimated_tokens))
        try:
            session.context_tokens = self._store.add_context_tokens(
                conversation_id, max(0, int(estimated_tokens)),
            )
            session.persisted = True
        except sqlite3.Error:
            logger.warning("Could not record token usage for %s", conversation_id, exc_info=True)

    def store_session_id(self, conversation_id: str, session_id: str) -> bool:
        """Persist the continuity token. True if it was written."""
        session = self.get_or_create_session(conversation_id)
        if session.claude_session_id == session_id and session.persisted:
            return False
        if session.claude_session_id and session.claude_session_id != session_id:
            # Only compaction or new chat may start a new epoch.
            logger.warning(
                "Conversation %s already has session %s in epoch %d; not replacing with %s",
                conversation_id, session.claude_session_id, session.epoch, session_id,
            )
            return False
        session.claude_session_id = session_id
        try:
            self._store.update_session_id(conversation_id, session_id)
        except sqlite3.Error:
            logger.warning("Could not store session id for %s", conversation_id, exc_info=True)
            return False
        session.persisted = True
        logger.info("Stored session %s for conversation %s", session_id, conversation_id)
        return True

    def new_chat(self, conversation_id: str) -> ConversationSession:
        """Start a fresh epoch for *conversation_id*."""
        old = self._sessions.get(conversation_id)
        try:
            self._store.reset_conversation(conversation_id)
        except sqlite3.Error:
            logger.warning("Could not reset conversation %s", conversation_id, exc_info=True)
        session = ConversationSession(
            conversation_id=conversation_id,
            permission_mode=old.permission_mode if old else PermissionMode.DEFAULT,
            epoch=(old.epoch + 1) if old else 0,
        )
        self._sessions[conversation_id] = session
        return session

"""SQLite persistence for conversations, interactive prompts and grants.

Three tables back the bridge:

- ``conversations``: continuity token, token estimate, last compaction
- ``interactive_prompts``: every prompt ever created (audit trail)
- ``conversation_permissions``: "always allow" grants per conversation

Prompt status updates only apply to rows still ``pending`` so the
terminal transition happens exactly once even when the timeout sweep
and a human answer race.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from baton.engine.models import (
    Prompt,
    PromptOption,
    PromptStatus,
    PromptType,
    utcnow,
)

logger = logging.getLogger(__name__)


def _iso_utc(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SqliteStore:
    """Record store backing the bridge."""

    def __init__(self, db_path: Path | str):
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    claude_session_id TEXT,
                    context_tokens INTEGER NOT NULL DEFAULT 0,
                    last_compacted TEXT,
                    permission_mode TEXT NOT NULL DEFAULT 'default',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS interactive_prompts (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT,
                    session_id TEXT,
                    request_id TEXT,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    options TEXT NOT NULL,
                    context TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'pending',
                    selected_option TEXT,
                    auto_handler TEXT,
                    timeout_at TEXT,
                    created_at TEXT NOT NULL,
                    responded_at TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_prompts_conversation_status "
                "ON interactive_prompts(conversation_id, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_prompts_status_timeout "
                "ON interactive_prompts(status, timeout_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_permissions (
                    conversation_id TEXT NOT NULL,
                    tool_name TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'granted',
                    granted_by TEXT NOT NULL DEFAULT 'user',
                    granted_at TEXT NOT NULL,
                    expires_at TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    PRIMARY KEY (conversation_id, tool_name)
                )
                """
            )

    # ── Conversations ──

    def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "id": row["id"],
            "claude_session_id": row["claude_session_id"],
            "context_tokens": int(row["context_tokens"] or 0),
            "last_compacted": _parse_ts(row["last_compacted"]),
            "permission_mode": row["permission_mode"],
        }

    def _upsert_conversation(
        self,
        conn: sqlite3.Connection,
        conversation_id: str,
        permission_mode: str | None = None,
    ) -> None:
        now = _iso_utc(utcnow())
        conn.execute(
            """
            INSERT INTO conversations(id, permission_mode, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (conversation_id, permission_mode or "default", now, now),
        )
        if permission_mode:
            conn.execute(
                "UPDATE conversations SET permission_mode = ?, updated_at = ? WHERE id = ?",
                (permission_mode, now, conversation_id),
            )

    def ensure_conversation(
        self,
        conversation_id: str,
        permission_mode: str | None = None,
    ) -> None:
        with self._transaction() as conn:
            self._upsert_conversation(conn, conversation_id, permission_mode)

    def update_session_id(self, conversation_id: str, session_id: str) -> None:
        with self._transaction() as conn:
            self._upsert_conversation(conn, conversation_id)
            conn.execute(
                "UPDATE conversations SET claude_session_id = ?, updated_at = ? WHERE id = ?",
                (session_id, _iso_utc(utcnow()), conversation_id),
            )

    def add_context_tokens(self, conversation_id: str, tokens: int) -> int:
        """Add to the running estimate and return the new total."""
        with self._transaction() as conn:
            self._upsert_conversation(conn, conversation_id)
            conn.execute(
                """
                UPDATE conversations
                SET context_tokens = context_tokens + ?, updated_at = ?
                WHERE id = ?
                """,
                (int(tokens), _iso_utc(utcnow()), conversation_id),
            )
            row = conn.execute(
                "SELECT context_tokens FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        return int(row["context_tokens"])

    def record_compaction(
        self,
        conversation_id: str,
        context_tokens: int,
        compacted_at: datetime,
        session_id: str | None = None,
    ) -> None:
        with self._transaction() as conn:
            self._upsert_conversation(conn, conversation_id)
            conn.execute(
                """
                UPDATE conversations
                SET context_tokens = ?, last_compacted = ?,
                    claude_session_id = COALESCE(?, claude_session_id),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    int(context_tokens),
                    _iso_utc(compacted_at),
                    session_id,
                    _iso_utc(utcnow()),
                    conversation_id,
                ),
            )

    def reset_conversation(self, conversation_id: str) -> None:
        """Start a fresh epoch: forget the session id and token estimate."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE conversations
                SET claude_session_id = NULL, context_tokens = 0,
                    last_compacted = NULL, updated_at = ?
                WHERE id = ?
                """,
                (_iso_utc(utcnow()), conversation_id),
            )

    # ── Interactive prompts ──

    def create_prompt(self, prompt: Prompt) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO interactive_prompts(
                    id, conversation_id, session_id, request_id, type, title,
                    message, options, context, status, selected_option,
                    auto_handler, timeout_at, created_at, responded_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    prompt.id,
                    prompt.conversation_id,
                    prompt.session_id,
                    prompt.request_id,
                    prompt.type.value,
                    prompt.title,
                    prompt.message,
                    json.dumps([o.to_dict() for o in prompt.options]),
                    json.dumps(prompt.context, default=str),
                    prompt.status.value,
                    prompt.selected_option,
                    prompt.auto_handler,
                    _iso_utc(prompt.timeout_at) if prompt.timeout_at else None,
                    _iso_utc(prompt.created_at),
                    None,
                ),
            )

    @staticmethod
    def _row_to_prompt(row: sqlite3.Row) -> Prompt:
        return Prompt(
            id=row["id"],
            conversation_id=row["conversation_id"],
            session_id=row["session_id"],
            request_id=row["request_id"],
            type=PromptType(row["type"]),
            title=row["title"],
            message=row["message"],
            options=[PromptOption.from_dict(o) for o in json.loads(row["options"])],
            context=json.loads(row["context"] or "{}"),
            status=PromptStatus(row["status"]),
            selected_option=row["selected_option"],
            auto_handler=row["auto_handler"],
            timeout_at=_parse_ts(row["timeout_at"]),
            created_at=_parse_ts(row["created_at"]) or utcnow(),
            responded_at=_parse_ts(row["responded_at"]),
        )

    def get_prompt(self, prompt_id: str) -> Prompt | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM interactive_prompts WHERE id = ?",
                (prompt_id,),
            ).fetchone()
        return self._row_to_prompt(row) if row is not None else None

    def update_prompt_status(
        self,
        prompt_id: str,
        status: PromptStatus,
        selected_option: str | None,
        auto_handler: str | None,
        responded_at: datetime | None = None,
    ) -> bool:
        """Move a pending prompt to a terminal status. False if it was not pending."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE interactive_prompts
                SET status = ?, selected_option = ?, auto_handler = ?,
                    responded_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (
                    status.value,
                    selected_option,
                    auto_handler,
                    _iso_utc(responded_at or utcnow()),
                    prompt_id,
                ),
            )
            return cursor.rowcount == 1

    def list_pending_prompts(
        self,
        conversation_id: str | None = None,
        now: datetime | None = None,
    ) -> list[Prompt]:
        """Pending prompts not yet past their timeout, newest first."""
        cutoff = _iso_utc(now or utcnow())
        query = (
            "SELECT * FROM interactive_prompts "
            "WHERE status = 'pending' AND (timeout_at IS NULL OR timeout_at > ?)"
        )
        params: list[Any] = [cutoff]
        if conversation_id is not None:
            query += " AND conversation_id = ?"
            params.append(conversation_id)
        query += " ORDER BY created_at DESC"
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_prompt(r) for r in rows]

    def list_expired_prompts(self, now: datetime | None = None) -> list[Prompt]:
        cutoff = _iso_utc(now or utcnow())
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM interactive_prompts
                WHERE status = 'pending' AND timeout_at IS NOT NULL
                  AND timeout_at <= ?
                ORDER BY created_at ASC
                """,
                (cutoff,),
            ).fetchall()
        return [self._row_to_prompt(r) for r in rows]

    def prompt_status_counts(self) -> dict[str, int]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM interactive_prompts GROUP BY status"
            ).fetchall()
        return {row["status"]: int(row["n"]) for row in rows}

    # ── Permission grants ──

    def grant_permission(
        self,
        conversation_id: str,
        tool_name: str,
        granted_by: str = "user",
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO conversation_permissions(
                    conversation_id, tool_name, status, granted_by,
                    granted_at, expires_at, metadata
                )
                VALUES (?, ?, 'granted', ?, ?, ?, ?)
                ON CONFLICT(conversation_id, tool_name) DO UPDATE SET
                    status = 'granted',
                    granted_by = excluded.granted_by,
                    granted_at = excluded.granted_at,
                    expires_at = excluded.expires_at,
                    metadata = excluded.metadata
                """,
                (
                    conversation_id,
                    tool_name,
                    granted_by,
                    _iso_utc(utcnow()),
                    _iso_utc(expires_at) if expires_at else None,
                    json.dumps(metadata or {}, sort_keys=True),
                ),
            )
        logger.info(
            "Permission granted: conversation=%s tool=%s by=%s",
            conversation_id, tool_name, granted_by,
        )

    def list_permission_grants(
        self,
        conversation_id: str,
        now: datetime | None = None,
    ) -> list[str]:
        """Tool names granted for a conversation and not yet expired."""
        cutoff = _iso_utc(now or utcnow())
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT tool_name FROM conversation_permissions
                WHERE conversation_id = ? AND status = 'granted'
                  AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY tool_name
                """,
                (conversation_id, cutoff),
            ).fetchall()
        return [row["tool_name"] for row in rows]

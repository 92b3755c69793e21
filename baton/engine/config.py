"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via BATON_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Async sink for outbound transport events.
# Signature: async def emit(event_name, payload, room) -> None
EmitCallback = Callable[[str, dict[str, Any], "str | None"], Awaitable[None]]


async def fire_event(
    callback: EmitCallback | None,
    event_name: str,
    payload: dict[str, Any],
    room: str | None = None,
) -> None:
    """Emit through a callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event_name, payload, room)
    except Exception:
        logger.warning("emit %s to %s failed", event_name, room, exc_info=True)


def _baton_home() -> Path:
    return Path.home() / ".baton"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number, using %s", name, raw, default)
        return default


@dataclass
class BridgeConfig:
    """Bridge process configuration."""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    # Where client connections reach the bridge.
    backend_url: str = "http://localhost:3001"
    # Reconnect/poll fallback interval for client connections.
    poll_interval_seconds: float = 0.5

    # Paths
    working_dir: str = "."
    db_path: str = field(default_factory=lambda: str(_baton_home() / "baton.db"))
    stats_path: str = field(
        default_factory=lambda: str(_baton_home() / "stats.json"),
    )
    log_dir: str = field(default_factory=lambda: str(_baton_home() / "logs"))

    # Runtime
    max_turns: int = 20
    max_concurrent_requests: int = 10
    allowed_tools: list[str] = field(default_factory=list)

    # Permission waits. The per-call human wait must be shorter than
    # the prompt expiry so a timed-out wait leaves the prompt pending
    # until the sweep runs.
    user_response_timeout_seconds: float = 300.0
    prompt_expiry_seconds: float = 900.0
    sweep_interval_seconds: float = 30.0

    # Context accounting. Heuristics, not measurements.
    context_limit_tokens: int = 200_000
    compact_ratio: float = 0.75
    compact_max_age_hours: float = 24.0
    chars_per_token: int = 4
    tokens_per_message_overhead: int = 500
    compaction_reduction: float = 0.7

    log_level: str = "INFO"

    @property
    def compact_threshold(self) -> int:
        return int(self.context_limit_tokens * self.compact_ratio)

    def validate(self) -> list[str]:
        """Return a list of problems; empty means the config is usable."""
        problems: list[str] = []
        if not 0 < self.port < 65536:
            problems.append(f"port {self.port} out of range")
        if self.max_turns <= 0:
            problems.append("max_turns must be positive")
        if self.max_concurrent_requests <= 0:
            problems.append("max_concurrent_requests must be positive")
        if self.user_response_timeout_seconds <= 0:
            problems.append("user_response_timeout_seconds must be positive")
        if self.prompt_expiry_seconds <= self.user_response_timeout_seconds:
            problems.append(
                "prompt_expiry_seconds must exceed "
                "user_response_timeout_seconds"
            )
        if self.sweep_interval_seconds <= 0:
            problems.append("sweep_interval_seconds must be positive")
        if self.chars_per_token <= 0:
            problems.append("chars_per_token must be positive")
        if not 0 <= self.compaction_reduction < 1:
            problems.append("compaction_reduction must be in [0, 1)")
        if not 0 < self.compact_ratio <= 1:
            problems.append("compact_ratio must be in (0, 1]")
        return problems

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from BATON_* environment variables."""
        baton_vars = {
            k: v for k, v in os.environ.items() if k.startswith("BATON_")
        }
        if baton_vars:
            logger.info(
                "BridgeConfig.from_env: BATON_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(baton_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no BATON_* env vars set, using defaults")

        defaults = cls()
        allowed = os.getenv("BATON_ALLOWED_TOOLS", "")
        config = cls(
            host=os.getenv("BATON_HOST", defaults.host),
            port=_env_int("BATON_PORT", defaults.port),
            backend_url=os.getenv("BATON_BACKEND_URL", defaults.backend_url),
            poll_interval_seconds=_env_float(
                "BATON_POLL_INTERVAL", defaults.poll_interval_seconds,
            ),
            working_dir=os.getenv("BATON_WORKING_DIR", os.getcwd()),
            db_path=os.getenv("BATON_DB_PATH") or defaults.db_path,
            stats_path=os.getenv("BATON_STATS_PATH") or defaults.stats_path,
            log_dir=os.getenv("BATON_LOG_DIR") or defaults.log_dir,
            max_turns=_env_int("BATON_MAX_TURNS", defaults.max_turns),
            max_concurrent_requests=_env_int(
                "BATON_MAX_CONCURRENT", defaults.max_concurrent_requests,
            ),
            allowed_tools=[t.strip() for t in allowed.split(",") if t.strip()],
            user_response_timeout_seconds=_env_float(
                "BATON_USER_RESPONSE_TIMEOUT",
                defaults.user_response_timeout_seconds,
            ),
            prompt_expiry_seconds=_env_float(
                "BATON_PROMPT_EXPIRY", defaults.prompt_expiry_seconds,
            ),
            sweep_interval_seconds=_env_float(
                "BATON_SWEEP_INTERVAL", defaults.sweep_interval_seconds,
            ),
            context_limit_tokens=_env_int(
                "BATON_CONTEXT_LIMIT", defaults.context_limit_tokens,
            ),
            log_level=os.getenv("BATON_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "BridgeConfig.from_env: port=%d cwd=%s db=%s log_level=%s",
            config.port, config.working_dir, config.db_path, config.log_level,
        )
        return config

"""Bridge counters persisted between runs.

Shown by ``baton --stats`` and cleared by ``baton --reset``.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from baton.shared.services.durable_write import atomic_write_json

from .models import utcnow

logger = logging.getLogger(__name__)

COUNTERS = (
    "requests",
    "turns_completed",
    "errors",
    "aborts",
    "prompts_created",
    "prompts_auto_handled",
    "prompts_answered",
    "prompts_timed_out",
    "prompts_left_pending",
    "permissions_allowed",
    "permissions_denied",
    "compactions",
)


class BridgeStats:
    """In-memory counters with JSON persistence."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path).expanduser() if path else None
        self._counters: dict[str, int] = {name: 0 for name in COUNTERS}
        self._started_at = utcnow()
        self._last_reset: str | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    def increment(self, name: str, amount: int = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        return self._counters.get(name, 0)

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "startedAt": self._started_at.isoformat(),
            "lastReset": self._last_reset,
        }

    def load(self) -> None:
        if self._path is None or not self._path.is_file():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read stats from %s: %s", self._path, exc)
            return
        for name, value in (data.get("counters") or {}).items():
            if isinstance(value, int):
                self._counters[name] = value
        self._last_reset = data.get("lastReset")

    def save(self) -> None:
        if self._path is None:
            return
        try:
            atomic_write_json(self._path, self.snapshot())
        except OSError as exc:
            logger.warning("Could not write stats to %s: %s", self._path, exc)

    def reset(self) -> None:
        self._counters = {name: 0 for name in COUNTERS}
        self._last_reset = utcnow().isoformat()
        self.save()

    def format_report(self) -> str:
        width = max(len(name) for name in self._counters)
        lines = ["Bridge statistics"]
        for name in sorted(self._counters):
            lines.append(f"  {name.ljust(width)}  {self._counters[name]}")
        if self._last_reset:
            lines.append(f"  last reset: {self._last_reset}")
        return "\n".join(lines)

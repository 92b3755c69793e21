"""Workspace shell-command allowlist/denylist persistence.

Rules are stored as one regex pattern per line in:
- <workspace>/.baton/command_allowlist.txt
- <workspace>/.baton/command_denylist.txt

They extend the built-in Bash tables of the allowlist strategy. "Always
allow" on a shell command appends a pattern here instead of granting
the whole tool.
"""
from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

BATON_DIRNAME = ".baton"
ALLOWLIST_FILENAME = "command_allowlist.txt"
DENYLIST_FILENAME = "command_denylist.txt"

# Commands whose arguments are read-only paths or filters.
_EXPLORATORY = {
    "ls", "grep", "rg", "find", "cat", "head", "tail", "wc", "sort",
    "uniq", "tree", "du", "df", "which", "pwd",
}


@dataclass
class CommandPolicyRules:
    """Compiled workspace command rules."""

    allow: list[re.Pattern[str]] = field(default_factory=list)
    deny: list[re.Pattern[str]] = field(default_factory=list)


class CommandPolicyStore:
    """Reads and writes workspace command policy files."""

    def __init__(self, workspace_dir: Path | str) -> None:
        self._baton_dir = Path(workspace_dir) / BATON_DIRNAME
        self._allowlist_path = self._baton_dir / ALLOWLIST_FILENAME
        self._denylist_path = self._baton_dir / DENYLIST_FILENAME

    @property
    def allowlist_path(self) -> Path:
        return self._allowlist_path

    @property
    def denylist_path(self) -> Path:
        return self._denylist_path

    def load_compiled(self) -> CommandPolicyRules:
        allow = self._read_patterns(self._allowlist_path)
        deny = self._read_patterns(self._denylist_path)
        logger.debug(
            "Command policy loaded: allow=%d deny=%d from %s",
            len(allow), len(deny), self._baton_dir,
        )
        return CommandPolicyRules(
            allow=self._compile_patterns(allow),
            deny=self._compile_patterns(deny),
        )

    def add_allow_pattern(self, pattern: str) -> None:
        self._add_pattern(self._allowlist_path, pattern)

    @staticmethod
    def build_command_pattern(command: str) -> str:
        """Regex that re-allows *command* on later runs.

        Read-only listing commands keep their executable, flags and
        argument count but accept any argument values; everything else
        must match exactly.
        """
        cleaned = str(command or "").strip()
        if not cleaned:
            return ""
        try:
            tokens = shlex.split(cleaned)
        except ValueError:
            tokens = []
        if not tokens or Path(tokens[0]).name not in _EXPLORATORY:
            return f"^{re.escape(cleaned)}$"
        parts = [re.escape(Path(tokens[0]).name)]
        for token in tokens[1:]:
            parts.append(re.escape(token) if token.startswith("-") else r"[^\s]+")
        return r"^\s*" + r"\s+".join(parts) + r"\s*$"

    @staticmethod
    def _compile_patterns(patterns: list[str]) -> list[re.Pattern[str]]:
        rules = []
        for source in patterns:
            try:
                rules.append(re.compile(source, re.IGNORECASE))
            except re.error as exc:
                logger.warning("Skipping bad command pattern %r: %s", source, exc)
        return rules

    @staticmethod
    def _read_patterns(path: Path) -> list[str]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        stripped = (line.strip() for line in text.splitlines())
        return [entry for entry in stripped if entry and not entry.startswith("#")]

    def _add_pattern(self, path: Path, pattern: str) -> None:
        entry = pattern.strip()
        if not entry or entry in self._read_patterns(path):
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = path.read_text(encoding="utf-8") if path.exists() else ""
        with path.open("a", encoding="utf-8") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(entry + "\n")
        logger.info("Command policy: appended %s to %s", entry, path.name)

"""Crash-safe JSON files: readers see either the old or the new document."""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def atomic_write_json(path: Path, data: Any) -> None:
    """Replace *path* with *data* serialized as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with tmp:
            json.dump(data, tmp, indent=2, sort_keys=True, default=str)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, path)
    except Exception:
        Path(tmp.name).unlink(missing_ok=True)
        raise

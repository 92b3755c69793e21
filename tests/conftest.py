from __future__ import annotations

import asyncio

import pytest

from baton.engine.config import BridgeConfig
from baton.shared.services.store import SqliteStore


@pytest.fixture
def store(tmp_path):
    return SqliteStore(tmp_path / "baton.db")


@pytest.fixture
def config(tmp_path):
    return BridgeConfig(
        working_dir=str(tmp_path / "workspace"),
        db_path=str(tmp_path / "baton.db"),
        stats_path=str(tmp_path / "stats.json"),
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)
    return _wait

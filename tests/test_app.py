"""Command-line entry point and persisted statistics."""

from __future__ import annotations

import json

import pytest

from baton.app import main
from baton.engine.stats import BridgeStats


@pytest.fixture
def stats_env(monkeypatch, tmp_path):
    monkeypatch.setenv("BATON_STATS_PATH", str(tmp_path / "stats.json"))
    monkeypatch.setenv("BATON_DB_PATH", str(tmp_path / "baton.db"))
    monkeypatch.setenv("BATON_LOG_DIR", str(tmp_path / "logs"))
    return tmp_path / "stats.json"


def test_stats_round_trip(tmp_path):
    stats = BridgeStats(tmp_path / "stats.json")
    stats.increment("requests", 3)
    stats.increment("aborts")
    stats.save()

    loaded = BridgeStats(tmp_path / "stats.json")
    loaded.load()

    assert loaded.get("requests") == 3
    assert loaded.get("aborts") == 1
    assert "requests" in loaded.format_report()


def test_unreadable_stats_are_ignored(tmp_path):
    path = tmp_path / "stats.json"
    path.write_text("{not json")
    stats = BridgeStats(path)
    stats.load()
    assert stats.get("requests") == 0


def test_stats_flag_prints_report(stats_env, capsys):
    stats = BridgeStats(stats_env)
    stats.increment("turns_completed", 2)
    stats.save()

    with pytest.raises(SystemExit) as exc:
        main(["--stats"])

    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "Bridge statistics" in out
    assert "turns_completed" in out


def test_reset_flag_clears_counters(stats_env, capsys):
    stats = BridgeStats(stats_env)
    stats.increment("errors", 5)
    stats.save()

    with pytest.raises(SystemExit) as exc:
        main(["--reset"])

    assert exc.value.code == 0
    data = json.loads(stats_env.read_text())
    assert data["counters"]["errors"] == 0
    assert data["lastReset"] is not None
    assert "Statistics reset." in capsys.readouterr().out


def test_bad_config_exits_nonzero(stats_env, tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(tmp_path / "missing.yaml"), "--stats"])

    assert exc.value.code == 1
    assert "config file not found" in capsys.readouterr().err

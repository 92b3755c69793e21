"""Environment and YAML configuration."""

from __future__ import annotations

import pytest

from baton.engine.config import BridgeConfig
from baton.engine.errors import ConfigError
from baton.engine.yaml_config import apply_overrides, load_yaml_config


def test_defaults_are_valid():
    config = BridgeConfig()

    assert config.validate() == []
    assert config.compact_threshold == 150_000


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("BATON_PORT", "9100")
    monkeypatch.setenv("BATON_ALLOWED_TOOLS", "Read, Grep,,Write")
    monkeypatch.setenv("BATON_USER_RESPONSE_TIMEOUT", "120")
    monkeypatch.setenv("BATON_WORKING_DIR", str(tmp_path))

    config = BridgeConfig.from_env()

    assert config.port == 9100
    assert config.allowed_tools == ["Read", "Grep", "Write"]
    assert config.user_response_timeout_seconds == 120.0
    assert config.working_dir == str(tmp_path)


def test_bad_env_number_falls_back(monkeypatch):
    monkeypatch.setenv("BATON_PORT", "eighty")
    assert BridgeConfig.from_env().port == 8080


def test_validate_reports_problems():
    config = BridgeConfig(port=0, prompt_expiry_seconds=10, user_response_timeout_seconds=30)

    problems = config.validate()

    assert "port 0 out of range" in problems
    assert any("prompt_expiry_seconds" in p for p in problems)


def test_yaml_section_overrides_base(tmp_path):
    path = tmp_path / "baton.yaml"
    path.write_text(
        "bridge:\n"
        "  port: '9090'\n"
        "  allowed_tools: [Read, Bash]\n"
        "  compact_ratio: 0.5\n"
        "  unknown_key: 1\n"
    )

    config = load_yaml_config(path, base=BridgeConfig())

    assert config.port == 9090
    assert config.allowed_tools == ["Read", "Bash"]
    assert config.compact_ratio == 0.5


def test_yaml_errors(tmp_path):
    with pytest.raises(ConfigError):
        load_yaml_config(tmp_path / "missing.yaml", base=BridgeConfig())

    bad = tmp_path / "bad.yaml"
    bad.write_text("bridge: [1, 2]\n")
    with pytest.raises(ConfigError):
        load_yaml_config(bad, base=BridgeConfig())

    with pytest.raises(ConfigError):
        apply_overrides(BridgeConfig(), {"port": "not-a-port"})

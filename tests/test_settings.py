import json

import pytest

from procbroker.config import AppSettings, load_settings, save_settings

ENV_VARS = (
    "CLAUDE_CLI_PATH",
    "CLAUDE_CLI_MAX_CONCURRENT",
    "CLAUDE_CLI_TIMEOUT",
    "CLAUDE_CLI_GRACE_MS",
    "PROCBROKER_ARTIFACT_DIR",
    "PROCBROKER_PREFER_CLI",
    "PROCBROKER_ENV_OVERRIDES_CONFIG",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_MODEL",
    "HOST",
    "PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config_or_env(tmp_path):
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.cli_path == "claude"
    assert settings.max_concurrent == 3
    assert settings.default_timeout_s == 120.0
    assert settings.prefer_cli is True


def test_env_values_convert_units(tmp_path, monkeypatch):
    monkeypatch.setenv("CLAUDE_CLI_PATH", "/opt/claude")
    monkeypatch.setenv("CLAUDE_CLI_MAX_CONCURRENT", "5")
    monkeypatch.setenv("CLAUDE_CLI_TIMEOUT", "30000")
    monkeypatch.setenv("CLAUDE_CLI_GRACE_MS", "500")
    monkeypatch.setenv("PROCBROKER_PREFER_CLI", "false")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.cli_path == "/opt/claude"
    assert settings.max_concurrent == 5
    assert settings.default_timeout_s == 30.0
    assert settings.grace_period_s == 0.5
    assert settings.prefer_cli is False


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"cli_path": "/from/config"}))
    monkeypatch.setenv("CLAUDE_CLI_PATH", "/from/env")
    settings = load_settings(config_path=config_path)
    assert settings.cli_path == "/from/config"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"cli_path": "/from/config"}))
    monkeypatch.setenv("CLAUDE_CLI_PATH", "/from/env")
    monkeypatch.setenv("PROCBROKER_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.cli_path == "/from/env"


def test_api_key_always_comes_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"anthropic_model": "claude-test"}))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
    settings = load_settings(config_path=config_path)
    assert settings.anthropic_api_key == "sk-env"
    assert settings.anthropic_model == "claude-test"


def test_unreadable_config_is_ignored(tmp_path):
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    assert load_settings(config_path=config_path).cli_path == "claude"


def test_save_settings_never_writes_api_key(tmp_path):
    config_path = tmp_path / "config.json"
    save_settings(AppSettings(anthropic_api_key="sk-secret", max_concurrent=2), config_path)
    saved = json.loads(config_path.read_text())
    assert "anthropic_api_key" not in saved
    assert saved["max_concurrent"] == 2


def test_safe_dict_masks_key():
    assert AppSettings(anthropic_api_key="sk").to_safe_dict()["anthropic_api_key"] == "********"
    assert AppSettings().to_safe_dict()["anthropic_api_key"] is None

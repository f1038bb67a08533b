"""Tests for configuration management."""

import pytest
import yaml

from visaire.config import (
    DEFAULT_BLOCKED_COMMANDS,
    VisaireConfig,
    default_config_path,
    get_default_config_content,
)
from visaire.errors import ConfigError
from visaire.models.types import EffortLevel, RetentionPolicy


def test_config_defaults():
    config = VisaireConfig()
    assert config.default_provider == "claude"
    assert config.default_model == ""
    assert config.timeout == 30000
    assert config.max_retries == 3
    assert config.agent.enabled is True
    assert config.agent.auto_approve is False
    assert config.agent.effort == "medium"
    assert config.agent.tool_security.blocked_commands == DEFAULT_BLOCKED_COMMANDS
    assert config.validate() == []


def test_config_save_load_roundtrip(tmp_path):
    config_path = tmp_path / "config.yaml"

    original = VisaireConfig(default_provider="gpt", timeout=5000)
    original.agent.effort = "high"
    original.save(config_path)

    loaded = VisaireConfig.load(config_path)
    assert loaded.default_provider == "gpt"
    assert loaded.timeout == 5000
    assert loaded.agent.effort == "high"
    assert loaded.agent.enabled is True  # default preserved


def test_config_env_override(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    VisaireConfig().save(config_path)

    monkeypatch.setenv("VISAIRE_PROVIDER", "gemini")
    monkeypatch.setenv("VISAIRE_TIMEOUT", "9000")
    monkeypatch.setenv("VISAIRE_AGENT_ENABLED", "false")
    monkeypatch.setenv("VISAIRE_EFFORT", "low")

    loaded = VisaireConfig.load(config_path)
    assert loaded.default_provider == "gemini"
    assert loaded.timeout == 9000
    assert loaded.agent.enabled is False
    assert loaded.agent.effort == "low"


def test_missing_file_gives_defaults(tmp_path):
    loaded = VisaireConfig.load(tmp_path / "absent.yaml")
    assert loaded == VisaireConfig()


def test_unknown_keys_ignored(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({"legacy_option": 1, "agent": {"colour": "blue"}}))
    loaded = VisaireConfig.load(config_path)
    assert not hasattr(loaded, "legacy_option")
    assert loaded.agent.effort == "medium"


def test_default_path_uses_home(visaire_home):
    assert default_config_path() == visaire_home / "config.yaml"


def test_default_content_parses():
    data = yaml.safe_load(get_default_config_content())
    config = VisaireConfig.from_dict(data)
    assert config.validate() == []
    assert config.agent.tool_security.max_output_size == 1024 * 1024


class TestDottedAccess:
    def test_get_accepts_camel_case(self):
        config = VisaireConfig()
        assert config.get("agent.toolSecurity.maxOutputSize") == 1024 * 1024
        assert config.get("agent.tool_security.max_output_size") == 1024 * 1024
        assert config.get("defaultProvider") == "claude"

    def test_get_unknown(self):
        with pytest.raises(ConfigError):
            VisaireConfig().get("agent.nope")

    @pytest.mark.parametrize(
        "key,raw,expected",
        [
            ("agent.autoApprove", "true", True),
            ("timeout", "12000", 12000),
            ("temperature", "0.2", 0.2),
            ("agent.toolSecurity.allowedCommands", "git, ls ,npm", ["git", "ls", "npm"]),
            ("defaultModel", "gpt-4o", "gpt-4o"),
        ],
    )
    def test_set_coerces(self, key, raw, expected):
        config = VisaireConfig()
        assert config.set(key, raw) == expected
        assert config.get(key) == expected

    def test_set_api_key(self):
        config = VisaireConfig()
        config.set("apiKeys.claude", "sk-ant-value")
        assert config.api_keys == {"claude": "sk-ant-value"}

    def test_invalid_value_rolled_back(self):
        config = VisaireConfig()
        with pytest.raises(ConfigError) as exc_info:
            config.set("agent.effort", "extreme")
        assert "effort" in exc_info.value.message
        assert config.agent.effort == "medium"

    def test_invalid_number(self):
        with pytest.raises(ConfigError):
            VisaireConfig().set("timeout", "soon")

    def test_section_not_assignable(self):
        with pytest.raises(ConfigError):
            VisaireConfig().set("agent", "x")

    def test_reset(self):
        config = VisaireConfig()
        config.set("defaultProvider", "gpt")
        config.reset()
        assert config.default_provider == "claude"

    def test_validate_reports_every_problem(self):
        config = VisaireConfig(default_provider="x", timeout=10, output_format="xml")
        problems = config.validate()
        assert len(problems) == 3


class TestApiKeys:
    def test_config_value_wins(self, monkeypatch):
        monkeypatch.setenv("CLAUDE_API_KEY", "from-env")
        config = VisaireConfig(api_keys={"claude": "from-config"})
        assert config.get_api_key("claude") == "from-config"

    @pytest.mark.parametrize(
        "provider,env_var",
        [
            ("claude", "ANTHROPIC_API_KEY"),
            ("gpt", "OPENAI_API_KEY"),
            ("gpt", "GPT_API_KEY"),
            ("gemini", "GOOGLE_API_KEY"),
        ],
    )
    def test_env_fallback(self, monkeypatch, provider, env_var):
        monkeypatch.setenv(env_var, "env-key")
        assert VisaireConfig().get_api_key(provider) == "env-key"

    def test_missing(self):
        assert VisaireConfig().get_api_key("gemini") is None


class TestSessionOptions:
    def test_defaults_carried(self):
        config = VisaireConfig(api_keys={"claude": "k"})
        options = config.to_session_options()
        assert options.provider == "claude"
        assert options.api_key == "k"
        assert options.model is None
        assert options.effort == EffortLevel.MEDIUM
        assert options.retention_policy == RetentionPolicy.IMPORTANCE
        assert options.max_iterations is None
        assert options.tool_security["max_execution_time"] == 30000
        assert options.redact_secrets is True

    def test_redact_setting_carried(self, monkeypatch):
        monkeypatch.setenv("VISAIRE_REDACT_SECRETS", "false")
        assert VisaireConfig.load().to_session_options().redact_secrets is False

    def test_overrides_win_and_none_ignored(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "gpt-env")
        options = VisaireConfig().to_session_options(
            provider="gpt", timeout=None, effort="high", auto_approve=True
        )
        assert options.provider == "gpt"
        assert options.api_key == "gpt-env"
        assert options.timeout == 30000
        assert options.effort == EffortLevel.HIGH
        assert options.approve_all is True

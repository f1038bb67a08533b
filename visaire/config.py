"""Configuration management for Visaire."""

from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import yaml

from . import get_visaire_home
from .errors import ConfigError
from .models.types import AgentOptions, SessionOptions

PROVIDERS = ("claude", "gpt", "gemini")
OUTPUT_FORMATS = ("text", "json", "markdown")
EFFORT_LEVELS = ("low", "medium", "high", "maximum")
RETENTION_POLICIES = ("importance", "recency", "fifo")

DEFAULT_ALLOWED_COMMANDS = [
    "npm", "node", "npx", "git", "ls", "pwd", "cat", "echo", "mkdir", "touch",
    "grep", "find", "curl", "wget", "which", "whereis", "ps", "sleep",
    "python", "python3", "pip", "pytest", "head", "tail", "wc",
]
DEFAULT_BLOCKED_COMMANDS = [
    "rm", "rmdir", "del", "format", "fdisk", "mkfs", "dd", "sudo", "su",
    "chmod", "chown", "passwd", "shutdown", "reboot", "halt", "init",
]


@dataclass
class ToolSecurity:
    allowed_commands: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    blocked_commands: list[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_COMMANDS))
    max_execution_time: int = 30000  # ms
    max_output_size: int = 1024 * 1024  # bytes
    max_file_size: int = 10 * 1024 * 1024  # bytes
    allowed_paths: list[str] = field(default_factory=list)  # extra roots beyond cwd + tmp
    allowed_domains: list[str] = field(default_factory=list)
    blocked_domains: list[str] = field(default_factory=list)


@dataclass
class AgentSettings:
    enabled: bool = True
    auto_approve: bool = False
    confirmation_enabled: bool = True
    max_actions_per_prompt: int = 10
    max_iterations: int = 0  # 0 = derive from effort
    effort: str = "medium"
    continue_on_error: bool = True
    max_context_size: int = 100_000
    retention_policy: str = "importance"
    tool_security: ToolSecurity = field(default_factory=ToolSecurity)


@dataclass
class VisaireConfig:
    """Visaire configuration."""

    default_provider: str = "claude"
    default_model: str = ""  # empty = provider default
    timeout: int = 30000  # ms
    max_retries: int = 3
    output_format: str = "text"
    max_tokens: int = 4096
    temperature: float = 0.7

    # Config file takes priority, {PROVIDER}_API_KEY env vars as fallback
    api_keys: dict[str, str] = field(default_factory=dict)

    agent: AgentSettings = field(default_factory=AgentSettings)

    redact_secrets: bool = True

    @classmethod
    def load(cls, config_path: Path | None = None) -> VisaireConfig:
        """Load configuration from YAML file with environment variable overrides."""
        if config_path is None:
            config_path = default_config_path()

        config_dict: dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                config_dict = yaml.safe_load(f) or {}

        config = cls.from_dict(config_dict)

        # Environment variable overrides (VISAIRE_ prefix)
        env_map = {
            "default_provider": ("VISAIRE_PROVIDER", str),
            "default_model": ("VISAIRE_MODEL", str),
            "timeout": ("VISAIRE_TIMEOUT", int),
            "max_retries": ("VISAIRE_MAX_RETRIES", int),
            "output_format": ("VISAIRE_OUTPUT_FORMAT", str),
            "agent.enabled": ("VISAIRE_AGENT_ENABLED", _parse_bool),
            "agent.auto_approve": ("VISAIRE_AUTO_APPROVE", _parse_bool),
            "agent.effort": ("VISAIRE_EFFORT", str),
            "agent.max_iterations": ("VISAIRE_MAX_ITERATIONS", int),
            "redact_secrets": ("VISAIRE_REDACT_SECRETS", _parse_bool),
        }

        for key, (env_var, converter) in env_map.items():
            value = os.getenv(env_var)
            if value is not None:
                _assign(config, key.split("."), converter(value))

        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VisaireConfig:
        return _build(cls, data)

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to YAML file."""
        if config_path is None:
            config_path = default_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(asdict(self), f, default_flow_style=False, allow_unicode=True)

    # --- Dotted access ---

    def get(self, key: str) -> Any:
        """Read a value by dotted path, e.g. ``agent.tool_security.max_output_size``."""
        target: Any = self
        for part in _normalize_key(key):
            if isinstance(target, dict):
                if part not in target:
                    raise ConfigError(f"Unknown config key: {key}")
                target = target[part]
            elif is_dataclass(target) and part in _field_names(target):
                target = getattr(target, part)
            else:
                raise ConfigError(f"Unknown config key: {key}")
        return target

    def set(self, key: str, value: Any) -> Any:
        """Set a value by dotted path, coercing strings to the field's type.

        The change is rolled back and ConfigError raised when it makes the
        configuration invalid.
        """
        parts = _normalize_key(key)
        current = self.get(key) if parts[0] != "api_keys" or len(parts) < 2 else None
        parsed = _coerce(value, current) if isinstance(value, str) else value

        snapshot = asdict(self)
        _assign(self, parts, parsed)
        problems = self.validate()
        if problems:
            restored = VisaireConfig.from_dict(snapshot)
            self.__dict__.update(restored.__dict__)
            raise ConfigError("; ".join(problems))
        return parsed

    def reset(self) -> None:
        self.__dict__.update(VisaireConfig().__dict__)

    def validate(self) -> list[str]:
        problems: list[str] = []
        if self.default_provider not in PROVIDERS:
            problems.append(
                f"defaultProvider must be one of {', '.join(PROVIDERS)}"
            )
        if self.timeout < 1000:
            problems.append("timeout must be at least 1000 ms")
        if self.max_retries < 0:
            problems.append("maxRetries must be >= 0")
        if self.output_format not in OUTPUT_FORMATS:
            problems.append(
                f"outputFormat must be one of {', '.join(OUTPUT_FORMATS)}"
            )
        if self.agent.max_actions_per_prompt < 1:
            problems.append("agent.maxActionsPerPrompt must be >= 1")
        if self.agent.effort not in EFFORT_LEVELS:
            problems.append(f"agent.effort must be one of {', '.join(EFFORT_LEVELS)}")
        if self.agent.retention_policy not in RETENTION_POLICIES:
            problems.append(
                f"agent.retentionPolicy must be one of {', '.join(RETENTION_POLICIES)}"
            )
        if self.agent.max_iterations < 0:
            problems.append("agent.maxIterations must be >= 0")
        return problems

    # --- Derived values ---

    def get_api_key(self, provider: str) -> str | None:
        """Get API key for a provider: config value first, then env var fallback."""
        configured = self.api_keys.get(provider, "")
        if configured:
            return configured
        for env_var in _API_KEY_ENV.get(provider, (f"{provider.upper()}_API_KEY",)):
            value = os.getenv(env_var, "")
            if value:
                return value
        return None

    def to_session_options(self, **overrides: Any) -> SessionOptions:
        """Build the session options record, letting non-None overrides win."""
        provider = overrides.get("provider") or self.default_provider
        base: dict[str, Any] = {
            "provider": provider,
            "api_key": self.get_api_key(provider),
            "model": self.default_model or None,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "effort": self.agent.effort,
            "auto_approve": self.agent.auto_approve,
            "max_iterations": self.agent.max_iterations or None,
            "max_actions_per_prompt": self.agent.max_actions_per_prompt,
            "continue_on_error": self.agent.continue_on_error,
            "max_context_size": self.agent.max_context_size,
            "retention_policy": self.agent.retention_policy,
            "redact_secrets": self.redact_secrets,
            "agent": AgentOptions(
                enabled=self.agent.enabled,
                auto_approve=self.agent.auto_approve,
                confirmation_enabled=self.agent.confirmation_enabled,
            ),
            "tool_security": asdict(self.agent.tool_security),
        }
        base.update({k: v for k, v in overrides.items() if v is not None})
        return SessionOptions.model_validate(base)


_API_KEY_ENV: dict[str, tuple[str, ...]] = {
    "claude": ("CLAUDE_API_KEY", "ANTHROPIC_API_KEY"),
    "gpt": ("GPT_API_KEY", "OPENAI_API_KEY"),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


def default_config_path() -> Path:
    return get_visaire_home() / "config.yaml"


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _normalize_key(key: str) -> list[str]:
    """``agent.toolSecurity.maxOutputSize`` -> ``['agent', 'tool_security', 'max_output_size']``."""
    parts = [p for p in key.split(".") if p]
    if not parts:
        raise ConfigError("Empty config key")
    normalized = [_CAMEL.sub("_", p).lower() for p in parts]
    # Provider names under api_keys are kept verbatim.
    if normalized[0] == "api_keys" and len(parts) > 1:
        normalized[1:] = parts[1:]
    return normalized


def _field_names(obj: Any) -> set[str]:
    return {f.name for f in fields(obj)}


def _assign(target: Any, parts: list[str], value: Any) -> None:
    for part in parts[:-1]:
        target = target[part] if isinstance(target, dict) else getattr(target, part)
    last = parts[-1]
    if isinstance(target, dict):
        target[last] = value
    elif last in _field_names(target):
        setattr(target, last, value)
    else:
        raise ConfigError(f"Unknown config key: {'.'.join(parts)}")


def _coerce(raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return _parse_bool(raw)
    try:
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid number: {raw!r}") from e
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    if is_dataclass(current) or isinstance(current, dict):
        raise ConfigError("Cannot assign a scalar to a config section")
    return raw


def _build(cls: type, data: dict[str, Any]) -> Any:
    """Construct a (possibly nested) dataclass from a dict, ignoring unknown keys."""
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        nested = _NESTED.get((cls.__name__, f.name))
        if nested is not None and isinstance(value, dict):
            value = _build(nested, value)
        kwargs[f.name] = value
    return cls(**kwargs)


_NESTED: dict[tuple[str, str], type] = {
    ("VisaireConfig", "agent"): AgentSettings,
    ("AgentSettings", "tool_security"): ToolSecurity,
}


def get_default_config_content() -> str:
    """Get default config file content for `visaire config reset`."""
    return """\
# Visaire Configuration
default_provider: "claude"        # "claude", "gpt", or "gemini"
default_model: ""                 # Empty = provider default model
timeout: 30000                    # LLM request timeout (ms, >= 1000)
max_retries: 3                    # Retries on network / 5xx errors
output_format: "text"             # "text", "json", or "markdown"
max_tokens: 4096
temperature: 0.7

# API keys (env fallbacks: CLAUDE_API_KEY, GPT_API_KEY, GEMINI_API_KEY)
api_keys: {}

agent:
  enabled: true                   # Interpret replies as local actions
  auto_approve: false             # Skip confirmation for destructive actions
  confirmation_enabled: true
  max_actions_per_prompt: 10
  max_iterations: 0               # 0 = derive from effort
  effort: "medium"                # "low", "medium", "high", "maximum"
  continue_on_error: true
  max_context_size: 100000        # Serialized context budget (chars)
  retention_policy: "importance"  # "importance", "recency", or "fifo"
  tool_security:
    max_execution_time: 30000     # ms
    max_output_size: 1048576      # bytes
    max_file_size: 10485760       # bytes
    allowed_paths: []
    allowed_domains: []
    blocked_domains: []

redact_secrets: true              # Redact API keys/tokens in session logs
"""

"""Tests for the typer CLI surface."""

from __future__ import annotations

import json

import pytest
import yaml
from typer.testing import CliRunner

import visaire.cli as cli_mod
from visaire import __version__
from visaire.agent import Agent
from visaire.config import default_config_path

runner = CliRunner()

CLAUDE_KEY = "sk-ant-" + "k" * 30


class ScriptedLLM:
    def __init__(self, reply: str) -> None:
        self.reply = reply

    async def __call__(self, prompt: str) -> str:
        return self.reply


@pytest.fixture
def scripted_agent(monkeypatch, workspace):
    """Replace the real agent factory with one that answers from a fixed reply."""

    def _install(reply: str) -> None:
        def _build(options, root=None):
            return Agent(options, llm_fn=ScriptedLLM(reply), root=workspace)

        monkeypatch.setattr(cli_mod, "_build_agent", _build)

    return _install


class TestTopLevel:
    def test_help(self):
        result = runner.invoke(cli_mod.app, ["--help"])
        assert result.exit_code == 0
        assert "ask" in result.output
        assert "test-key" in result.output

    def test_version(self):
        result = runner.invoke(cli_mod.app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_bare_invocation_prints_banner(self):
        result = runner.invoke(cli_mod.app, [])
        assert result.exit_code == 0
        assert "Visaire" in result.output


class TestAsk:
    def test_json_output_executes_actions(self, scripted_agent, workspace):
        scripted_agent("Here you go:\n```\nhello world\n```\n")
        result = runner.invoke(
            cli_mod.app,
            ["ask", "Create a file called `hello.txt` with hello world",
             "--api-key", CLAUDE_KEY, "--auto-approve", "--json"],
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["success"] is True
        assert payload["summary"]["files_created"] == 1
        assert (workspace / "hello.txt").read_text() == "hello world"

    def test_blocked_command_reported_in_json(self, scripted_agent):
        scripted_agent("No.")
        result = runner.invoke(
            cli_mod.app, ["ask", "Run `rm -rf /`", "--api-key", CLAUDE_KEY, "--json"]
        )
        payload = json.loads(result.stdout)
        assert payload["summary"]["commands_run"] == 0
        assert payload["errors"][0]["kind"] == "blocked"

    def test_plain_output_shows_reply(self, scripted_agent):
        scripted_agent("Nothing to do here.")
        result = runner.invoke(
            cli_mod.app, ["ask", "just say hello", "--api-key", CLAUDE_KEY, "--no-agent"]
        )
        assert result.exit_code == 0, result.output
        assert "Nothing to do here." in result.output

    def test_missing_api_key_fails(self):
        result = runner.invoke(cli_mod.app, ["ask", "hello"])
        assert result.exit_code == 1
        assert "No API key" in result.output

    def test_unknown_provider_fails(self):
        result = runner.invoke(
            cli_mod.app, ["ask", "hello", "--provider", "mystery", "--api-key", "x"]
        )
        assert result.exit_code == 1
        assert "Unknown provider" in result.output

    def test_unknown_effort_fails(self):
        result = runner.invoke(
            cli_mod.app, ["ask", "hello", "--effort", "extreme", "--api-key", CLAUDE_KEY]
        )
        assert result.exit_code == 1
        assert "Unknown effort" in result.output


class TestConfigCommands:
    def test_show_masks_keys(self, monkeypatch):
        config_path = default_config_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(yaml.dump({"api_keys": {"claude": CLAUDE_KEY}}))

        result = runner.invoke(cli_mod.app, ["config", "show"])
        assert result.exit_code == 0
        assert CLAUDE_KEY not in result.output
        assert "sk-ant" in result.output

    def test_set_persists(self):
        result = runner.invoke(cli_mod.app, ["config", "set", "agent.effort", "high"])
        assert result.exit_code == 0, result.output
        saved = yaml.safe_load(default_config_path().read_text())
        assert saved["agent"]["effort"] == "high"

    def test_set_invalid_value(self):
        result = runner.invoke(cli_mod.app, ["config", "set", "agent.effort", "extreme"])
        assert result.exit_code == 1

    def test_set_unknown_key(self):
        result = runner.invoke(cli_mod.app, ["config", "set", "nope.key", "1"])
        assert result.exit_code == 1

    def test_reset(self):
        runner.invoke(cli_mod.app, ["config", "set", "agent.effort", "high"])
        result = runner.invoke(cli_mod.app, ["config", "reset", "--yes"])
        assert result.exit_code == 0
        saved = yaml.safe_load(default_config_path().read_text())
        assert saved["agent"]["effort"] == "medium"

    def test_reset_declined(self):
        result = runner.invoke(cli_mod.app, ["config", "reset"], input="n\n")
        assert result.exit_code == 1
        assert not default_config_path().exists()


class TestStatusAndKeys:
    def test_status_json(self):
        result = runner.invoke(cli_mod.app, ["status", "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["version"] == __version__
        assert payload["api_key_configured"] is False
        assert set(payload["registry"]["tools"]) == {"filesystem", "exec", "network", "analysis"}

    def test_status_table(self):
        result = runner.invoke(cli_mod.app, ["status"])
        assert result.exit_code == 0
        assert "Tools" in result.output

    def test_test_key_bad_format(self):
        result = runner.invoke(cli_mod.app, ["test-key", "--provider", "gpt", "--api-key", "bad"])
        assert result.exit_code == 1
        assert "FAIL" in result.output

    def test_test_key_probe(self, monkeypatch):
        async def _probe(provider, key, model=None):
            return True

        monkeypatch.setattr("visaire.llm.probe_api_key", _probe)
        result = runner.invoke(cli_mod.app, ["test-key", "--api-key", CLAUDE_KEY])
        assert result.exit_code == 0, result.output
        assert result.output.count("OK") == 2

    def test_test_key_missing(self):
        result = runner.invoke(cli_mod.app, ["test-key", "--provider", "gemini"])
        assert result.exit_code == 1


class TestHistory:
    def test_empty(self):
        result = runner.invoke(cli_mod.app, ["history"])
        assert result.exit_code == 0
        assert "No conversations" in result.output

    def test_lists_conversations_after_ask(self, scripted_agent):
        scripted_agent("Sure thing.")
        runner.invoke(
            cli_mod.app, ["ask", "say something nice", "--api-key", CLAUDE_KEY, "--no-agent"]
        )
        result = runner.invoke(cli_mod.app, ["history", "--json"])
        assert result.exit_code == 0
        conversations = json.loads(result.output)
        assert len(conversations) == 1
        assert conversations[0]["messages"][0]["content"] == "say something nice"

        result = runner.invoke(cli_mod.app, ["history", "--search", "unrelated", "--json"])
        assert json.loads(result.output) == []

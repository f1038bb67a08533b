"""Tests for LLM provider adapters."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import visaire.llm as llm_mod
from visaire.errors import ErrorKind, ProviderError
from visaire.llm import (
    _DEFAULT_MODELS,
    call_llm,
    classify_error,
    create_llm_fn,
    probe_api_key,
    validate_api_key_format,
)
from visaire.models.types import SessionOptions

CLAUDE_KEY = "sk-ant-" + "a" * 30
GPT_KEY = "sk-" + "b" * 30


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class APIConnectionError(Exception):
    pass


def _claude_client(text: str = "hello") -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(
        return_value=SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])
    )
    return client


class TestKeyFormat:
    def test_formats(self):
        assert validate_api_key_format("claude", CLAUDE_KEY)
        assert not validate_api_key_format("claude", GPT_KEY)
        assert validate_api_key_format("gpt", GPT_KEY)
        assert validate_api_key_format("gemini", "g" * 39)
        assert not validate_api_key_format("gemini", "short")
        assert not validate_api_key_format("gpt", None)
        assert not validate_api_key_format("other", GPT_KEY)


class TestClassifyError:
    @pytest.mark.parametrize(
        "status,kind",
        [
            (401, ErrorKind.UPSTREAM_AUTH),
            (403, ErrorKind.UPSTREAM_AUTH),
            (429, ErrorKind.UPSTREAM_RATE_LIMIT),
            (500, ErrorKind.UPSTREAM_SERVER),
            (503, ErrorKind.UPSTREAM_SERVER),
            (400, ErrorKind.INVALID_INPUT),
        ],
    )
    def test_status_codes(self, status, kind):
        error = classify_error("gpt", _StatusError(status))
        assert error.kind == kind
        assert error.status_code == status
        assert error.provider == "gpt"

    def test_connection_by_name(self):
        assert classify_error("claude", APIConnectionError("down")).kind == ErrorKind.NETWORK

    def test_unknown_is_internal(self):
        assert classify_error("claude", ValueError("odd")).kind == ErrorKind.INTERNAL

    def test_provider_error_passthrough(self):
        original = ProviderError("gemini", "x", ErrorKind.TIMEOUT)
        assert classify_error("gemini", original) is original


class TestCallLlm:
    async def test_claude_reply(self):
        client = _claude_client("hi there")
        with patch("anthropic.AsyncAnthropic", return_value=client) as cls:
            reply = await call_llm("claude", CLAUDE_KEY, "Say hi", system_prompt="be brief")
        assert reply == "hi there"
        cls.assert_called_once_with(api_key=CLAUDE_KEY, max_retries=0)
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == _DEFAULT_MODELS["claude"]
        assert kwargs["system"] == "be brief"
        assert kwargs["messages"] == [{"role": "user", "content": "Say hi"}]

    async def test_gpt_reply(self):
        client = MagicMock()
        message = SimpleNamespace(content="from gpt")
        client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)])
        )
        with patch("openai.AsyncOpenAI", return_value=client):
            reply = await call_llm("gpt", GPT_KEY, "hello", model="gpt-4o")
        assert reply == "from gpt"
        assert client.chat.completions.create.call_args.kwargs["model"] == "gpt-4o"

    async def test_unknown_provider(self):
        with pytest.raises(ProviderError) as exc_info:
            await call_llm("mystery", "key", "hi")
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    async def test_missing_key(self):
        with pytest.raises(ProviderError) as exc_info:
            await call_llm("claude", None, "hi")
        assert exc_info.value.kind == ErrorKind.UPSTREAM_AUTH

    async def test_server_errors_retried_with_backoff(self, monkeypatch):
        caller = AsyncMock(side_effect=[_StatusError(502), _StatusError(503), "recovered"])
        monkeypatch.setitem(llm_mod._CALLERS, "claude", caller)
        sleep = AsyncMock()
        monkeypatch.setattr(llm_mod.asyncio, "sleep", sleep)

        reply = await call_llm("claude", CLAUDE_KEY, "hi", max_retries=3)
        assert reply == "recovered"
        assert caller.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]

    async def test_auth_error_not_retried(self, monkeypatch):
        caller = AsyncMock(side_effect=_StatusError(401))
        monkeypatch.setitem(llm_mod._CALLERS, "gpt", caller)
        with pytest.raises(ProviderError) as exc_info:
            await call_llm("gpt", GPT_KEY, "hi")
        assert exc_info.value.kind == ErrorKind.UPSTREAM_AUTH
        assert caller.await_count == 1

    async def test_retries_exhausted(self, monkeypatch):
        caller = AsyncMock(side_effect=_StatusError(500))
        monkeypatch.setitem(llm_mod._CALLERS, "gpt", caller)
        monkeypatch.setattr(llm_mod.asyncio, "sleep", AsyncMock())
        with pytest.raises(ProviderError) as exc_info:
            await call_llm("gpt", GPT_KEY, "hi", max_retries=2)
        assert exc_info.value.kind == ErrorKind.UPSTREAM_SERVER
        assert caller.await_count == 3


class TestProbeAndFactory:
    async def test_probe_rejects_bad_format_without_request(self, monkeypatch):
        caller = AsyncMock(return_value="ok")
        monkeypatch.setitem(llm_mod._CALLERS, "claude", caller)
        assert await probe_api_key("claude", "not-a-key") is False
        caller.assert_not_awaited()

    async def test_probe_success_and_failure(self, monkeypatch):
        monkeypatch.setitem(llm_mod._CALLERS, "claude", AsyncMock(return_value="ok"))
        assert await probe_api_key("claude", CLAUDE_KEY) is True

        monkeypatch.setitem(llm_mod._CALLERS, "claude", AsyncMock(side_effect=_StatusError(401)))
        assert await probe_api_key("claude", CLAUDE_KEY) is False

    async def test_create_llm_fn_binds_options(self, monkeypatch):
        caller = AsyncMock(return_value="bound")
        monkeypatch.setitem(llm_mod._CALLERS, "gpt", caller)
        options = SessionOptions(provider="gpt", api_key=GPT_KEY, model="gpt-4o",
                                 max_tokens=256, temperature=0.2)
        fn = create_llm_fn(options)
        assert callable(fn)
        assert await fn("prompt") == "bound"
        assert caller.await_args.args == (GPT_KEY, "prompt", "gpt-4o", 256, 0.2, None)

"""Tests for llm/router.py and llm/ollama_client.py.

No network: provider SDK calls are never reached, Ollama HTTP is patched.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from freightlens.core.exceptions import ConfigurationError, LLMProviderError
from freightlens.llm.ollama_client import ollama_chat
from freightlens.llm.router import (
    USER_MESSAGES,
    ToolCall,
    _anthropic_messages,
    _openai_messages,
    classify_error,
    complete_sync,
    get_available_providers,
    resolve_provider,
    user_message_for,
)


class _StatusError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ReadTimeout(Exception):
    pass


@pytest.fixture()
def no_keys(monkeypatch):
    for name in ("FL_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY", "FL_OPENAI_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestClassifyError:

    @pytest.mark.parametrize(
        "error,category",
        [
            (_StatusError("bad key", 401), "auth"),
            (_StatusError("Your credit balance is too low", 400), "quota"),
            (_StatusError("slow down", 429), "rate_limit"),
            (ReadTimeout("read"), "timeout"),
            (_StatusError("server exploded", 503), "unavailable"),
            (_StatusError("Overloaded"), "unavailable"),
            (ValueError("weird"), "unknown"),
        ],
    )
    def test_categories(self, error, category):
        classified = classify_error(error)
        assert isinstance(classified, LLMProviderError)
        assert classified.category == category

    def test_provider_error_passes_through(self):
        error = LLMProviderError("x", category="rate_limit")
        assert classify_error(error) is error

    def test_user_messages_never_leak_details(self):
        assert user_message_for("rate_limit") == USER_MESSAGES["rate_limit"]
        assert user_message_for("something-new") == USER_MESSAGES["unknown"]


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


CONVERSATION = [
    {"role": "user", "content": "Spend by carrier"},
    {
        "role": "assistant",
        "content": "Looking.",
        "tool_calls": [
            ToolCall(id="t1", name="discover_tables", input={}),
            ToolCall(id="t2", name="discover_fields", input={"table_name": "shipment"}),
        ],
    },
    {"role": "tool", "tool_call_id": "t1", "name": "discover_tables", "content": "{}"},
    {"role": "tool", "tool_call_id": "t2", "name": "discover_fields", "content": "{}"},
]


class TestMessageConversion:

    def test_anthropic_groups_tool_results(self):
        converted = _anthropic_messages(CONVERSATION)
        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assert [b["type"] for b in converted[1]["content"]] == ["text", "tool_use", "tool_use"]
        assert [b["tool_use_id"] for b in converted[2]["content"]] == ["t1", "t2"]

    def test_openai_uses_function_calls(self):
        converted = _openai_messages("system", CONVERSATION)
        assert converted[0] == {"role": "system", "content": "system"}
        calls = converted[2]["tool_calls"]
        assert calls[1]["function"]["name"] == "discover_fields"
        assert json.loads(calls[1]["function"]["arguments"]) == {"table_name": "shipment"}
        assert [m["role"] for m in converted[3:]] == ["tool", "tool"]


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


class TestProviders:

    def test_default_provider(self, monkeypatch):
        monkeypatch.delenv("FL_LLM_PROVIDER", raising=False)
        assert resolve_provider() == "anthropic"

    def test_provider_from_env(self, monkeypatch):
        monkeypatch.setenv("FL_LLM_PROVIDER", "Ollama")
        assert resolve_provider() == "ollama"

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unsupported LLM provider"):
            resolve_provider("bard")

    def test_missing_anthropic_key_is_auth_error(self, no_keys):
        with pytest.raises(LLMProviderError) as excinfo:
            complete_sync("system", [{"role": "user", "content": "hi"}], provider="anthropic")
        assert excinfo.value.category == "auth"

    def test_missing_openai_key_is_auth_error(self, no_keys):
        with pytest.raises(LLMProviderError) as excinfo:
            complete_sync("system", [{"role": "user", "content": "hi"}], provider="openai")
        assert excinfo.value.category == "auth"

    def test_only_ollama_without_keys(self, no_keys):
        assert get_available_providers() == ["ollama"]

    def test_ollama_tool_calls_normalized(self):
        message = {
            "content": "",
            "tool_calls": [{"function": {"name": "discover_tables", "arguments": '{"x": 1}'}}],
        }
        with patch("freightlens.llm.router.ollama_chat", return_value=message):
            response = complete_sync("system", [{"role": "user", "content": "hi"}], tools=[], provider="ollama")
        assert response.tool_calls[0].name == "discover_tables"
        assert response.tool_calls[0].input == {"x": 1}
        assert response.tool_calls[0].id.startswith("call_")
        assert response.stop_reason == "tool_use"


class TestOllamaClient:

    def test_returns_message(self):
        fake = MagicMock()
        fake.json.return_value = {"message": {"role": "assistant", "content": "hello"}}
        with patch("freightlens.llm.ollama_client.requests.post", return_value=fake) as post:
            message = ollama_chat([{"role": "user", "content": "hi"}], model="m", max_tokens=10)
        assert message["content"] == "hello"
        assert post.call_args.kwargs["json"]["options"]["num_predict"] == 10

    def test_connection_error_is_unavailable(self, monkeypatch):
        monkeypatch.setenv("FL_MAX_RETRIES", "0")
        with patch(
            "freightlens.llm.ollama_client.requests.post",
            side_effect=requests.exceptions.ConnectionError("refused"),
        ):
            with pytest.raises(LLMProviderError) as excinfo:
                ollama_chat([{"role": "user", "content": "hi"}], model="m")
        assert excinfo.value.category == "unavailable"

"""LLM router for the report agent.

Dispatches one tool-calling completion to the configured provider and
normalizes the answer into an ``LLMResponse``.

Supported providers:
- anthropic: Claude models via Anthropic API (default)
- openai: GPT models via OpenAI API
- ollama: Local models via Ollama

Environment variables:
- FL_LLM_PROVIDER: Provider to use (anthropic, openai, ollama)
- FL_ANTHROPIC_API_KEY: Anthropic API key
- FL_OPENAI_API_KEY: OpenAI API key
- FL_AGENT_MODEL: Model for the agent loop
- FL_AGENT_TEMPERATURE: Sampling temperature

Conversation messages use one provider-neutral shape:
``{"role": "user", "content": str}``,
``{"role": "assistant", "content": str, "tool_calls": [ToolCall, ...]}`` and
``{"role": "tool", "tool_call_id": str, "name": str, "content": str}``.
"""

from __future__ import annotations

import asyncio
import importlib.util
import json
import os
import uuid
from dataclasses import dataclass, field
from typing import Any

from freightlens.core.exceptions import ConfigurationError, LLMProviderError
from freightlens.llm.ollama_client import ollama_chat
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "ollama": "qwen2.5:14b-instruct",
}

USER_MESSAGES = {
    "auth": "The AI service is not configured correctly. Please contact support.",
    "rate_limit": "The AI service is busy right now. Please try again in a minute.",
    "quota": "The AI service is temporarily unavailable. Please contact support.",
    "timeout": "The request took too long. Try a simpler question or try again.",
    "unavailable": "The AI service is temporarily unavailable. Please try again shortly.",
    "unknown": "Something went wrong while generating your report. Please try again.",
}


@dataclass
class ToolCall:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """Normalized completion: prose plus any tool calls, in emitted order."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str | None = None


def user_message_for(category: str) -> str:
    """User-safe text for a provider failure category."""
    return USER_MESSAGES.get(category, USER_MESSAGES["unknown"])


def classify_error(error: Exception) -> LLMProviderError:
    """Map an SDK or HTTP failure to an ``LLMProviderError`` category."""
    if isinstance(error, LLMProviderError):
        return error
    status = getattr(error, "status_code", None)
    text = str(error).lower()
    name = type(error).__name__.lower()

    if status in (401, 403) or "api key" in text or "authentication" in text or "permission" in name:
        category = "auth"
    elif "credit" in text or "quota" in text or "billing" in text or "insufficient" in text:
        category = "quota"
    elif status == 429 or "rate limit" in text or "ratelimit" in name:
        category = "rate_limit"
    elif "timeout" in name or "timed out" in text:
        category = "timeout"
    elif (status is not None and status >= 500) or "overloaded" in text or "connection" in name:
        category = "unavailable"
    else:
        category = "unknown"
    return LLMProviderError(f"LLM call failed ({category}): {error}", category=category, original_error=error)


# =============================================================================
# Provider message formats
# =============================================================================

def _anthropic_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for msg in messages:
        if msg["role"] == "tool":
            block = {"type": "tool_result", "tool_use_id": msg["tool_call_id"], "content": msg["content"]}
            # Consecutive tool results travel in one user turn
            if converted and converted[-1]["role"] == "user" and isinstance(converted[-1]["content"], list):
                converted[-1]["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
        elif msg["role"] == "assistant" and msg.get("tool_calls"):
            blocks: list[dict[str, Any]] = []
            if msg.get("content"):
                blocks.append({"type": "text", "text": msg["content"]})
            for call in msg["tool_calls"]:
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
            converted.append({"role": "assistant", "content": blocks})
        else:
            converted.append({"role": msg["role"], "content": msg["content"]})
    return converted


def _openai_messages(system_prompt: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in messages:
        if msg["role"] == "tool":
            converted.append({"role": "tool", "tool_call_id": msg["tool_call_id"], "content": msg["content"]})
        elif msg["role"] == "assistant" and msg.get("tool_calls"):
            converted.append({
                "role": "assistant",
                "content": msg.get("content") or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.input)},
                    }
                    for call in msg["tool_calls"]
                ],
            })
        else:
            converted.append({"role": msg["role"], "content": msg["content"]})
    return converted


def _ollama_messages(system_prompt: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in messages:
        if msg["role"] == "tool":
            converted.append({"role": "tool", "content": msg["content"]})
        elif msg["role"] == "assistant" and msg.get("tool_calls"):
            converted.append({
                "role": "assistant",
                "content": msg.get("content") or "",
                "tool_calls": [
                    {"function": {"name": call.name, "arguments": call.input}} for call in msg["tool_calls"]
                ],
            })
        else:
            converted.append({"role": msg["role"], "content": msg["content"]})
    return converted


def _function_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": t["name"], "description": t["description"], "parameters": t["input_schema"]},
        }
        for t in tools
    ]


# =============================================================================
# Providers
# =============================================================================

def _call_anthropic(
    system_prompt: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None,
    model: str,
    temperature: float,
    max_tokens: int,
    timeout: int,
) -> LLMResponse:
    """Call Anthropic API (Claude models)."""
    import anthropic

    api_key = os.environ.get("FL_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise LLMProviderError(
            "Anthropic API key not found. Set FL_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY.",
            category="auth",
        )

    client = anthropic.Anthropic(api_key=api_key, timeout=timeout)
    kwargs: dict[str, Any] = {}
    if tools:
        kwargs["tools"] = tools
    response = client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system_prompt,
        messages=_anthropic_messages(messages),
        **kwargs,
    )

    text_parts = []
    calls = []
    for block in response.content:
        if block.type == "text":
            text_parts.append(block.text)
        elif block.type == "tool_use":
            calls.append(ToolCall(id=block.id, name=block.name, input=dict(block.input or {})))
    return LLMResponse(text="\n".join(text_parts), tool_calls=calls, stop_reason=response.stop_reason)


def _call_openai(
    system_prompt: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None,
    model: str,
    temperature: float,
    max_tokens: int,
    timeout: int,
) -> LLMResponse:
    """Call OpenAI API (GPT models)."""
    import openai

    api_key = os.environ.get("FL_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise LLMProviderError(
            "OpenAI API key not found. Set FL_OPENAI_API_KEY or OPENAI_API_KEY.",
            category="auth",
        )

    client = openai.OpenAI(api_key=api_key, timeout=timeout)
    kwargs: dict[str, Any] = {}
    if tools:
        kwargs["tools"] = _function_tools(tools)
    response = client.chat.completions.create(
        model=model,
        messages=_openai_messages(system_prompt, messages),
        temperature=temperature,
        max_tokens=max_tokens,
        **kwargs,
    )

    choice = response.choices[0]
    calls = []
    for call in choice.message.tool_calls or []:
        try:
            arguments = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError:
            LOGGER.warning("Model sent non-JSON arguments for %s", call.function.name)
            arguments = {}
        calls.append(ToolCall(id=call.id, name=call.function.name, input=arguments))
    return LLMResponse(text=choice.message.content or "", tool_calls=calls, stop_reason=choice.finish_reason)


def _call_ollama(
    system_prompt: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None,
    model: str,
    temperature: float,
    max_tokens: int,
    timeout: int,
) -> LLMResponse:
    message = ollama_chat(
        _ollama_messages(system_prompt, messages),
        model=model,
        tools=_function_tools(tools) if tools else None,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )
    calls = []
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            arguments = json.loads(arguments)
        calls.append(ToolCall(id=f"call_{uuid.uuid4().hex[:12]}", name=function.get("name", ""), input=arguments))
    return LLMResponse(
        text=message.get("content") or "",
        tool_calls=calls,
        stop_reason="tool_use" if calls else "stop",
    )


_PROVIDERS = {
    "anthropic": _call_anthropic,
    "openai": _call_openai,
    "ollama": _call_ollama,
}


def resolve_provider(provider: str | None = None) -> str:
    resolved = (provider or os.environ.get("FL_LLM_PROVIDER", "anthropic")).lower()
    if resolved not in _PROVIDERS:
        raise ConfigurationError(
            f"Unsupported LLM provider: {resolved}. Supported: {', '.join(_PROVIDERS)}"
        )
    return resolved


def complete_sync(
    system_prompt: str,
    messages: list[dict[str, Any]],
    *,
    tools: list[dict[str, Any]] | None = None,
    provider: str | None = None,
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int = 4096,
    timeout: int = 60,
) -> LLMResponse:
    """Run one completion against the configured provider.

    Raises:
        ConfigurationError: If the provider is unknown
        LLMProviderError: If the provider call fails, with its category
    """
    resolved = resolve_provider(provider)
    resolved_model = model or os.environ.get("FL_AGENT_MODEL", DEFAULT_MODELS[resolved])
    if temperature is None:
        temperature = float(os.environ.get("FL_AGENT_TEMPERATURE", "0"))

    try:
        return _PROVIDERS[resolved](
            system_prompt, messages, tools, resolved_model, temperature, max_tokens, timeout
        )
    except LLMProviderError:
        raise
    except Exception as e:
        raise classify_error(e) from e


async def complete(
    system_prompt: str,
    messages: list[dict[str, Any]],
    **kwargs: Any,
) -> LLMResponse:
    """Async wrapper running the blocking SDK call on a worker thread."""
    return await asyncio.to_thread(complete_sync, system_prompt, messages, **kwargs)


def _has_module(module_name: str) -> bool:
    """Return True when a module is installed in the current environment."""
    return importlib.util.find_spec(module_name) is not None


def get_available_providers() -> list[str]:
    """Providers usable with the installed packages and configured keys."""
    available = ["ollama"]
    if _has_module("anthropic") and (
        os.environ.get("FL_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
    ):
        available.append("anthropic")
    if _has_module("openai") and (
        os.environ.get("FL_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    ):
        available.append("openai")
    return available


def get_current_config() -> dict[str, Any]:
    """Get current LLM configuration."""
    provider = os.environ.get("FL_LLM_PROVIDER", "anthropic").lower()
    return {
        "provider": provider,
        "agent_model": os.environ.get("FL_AGENT_MODEL", DEFAULT_MODELS.get(provider, "")),
        "temperature": float(os.environ.get("FL_AGENT_TEMPERATURE", "0")),
        "available_providers": get_available_providers(),
    }

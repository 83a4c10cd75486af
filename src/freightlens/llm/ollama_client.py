"""Ollama client for local tool-calling models.

Thin wrapper around the Ollama ``/api/chat`` endpoint with retry on
connection errors, timeouts and 5xx responses.
"""

import os
import time
from typing import Any

import requests

from freightlens.core.exceptions import LLMProviderError


def ollama_chat(
    messages: list[dict[str, Any]],
    *,
    model: str,
    tools: list[dict[str, Any]] | None = None,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    timeout: int = 60,
) -> dict[str, Any]:
    """Call Ollama with chat messages and optional tool definitions.

    Args:
        messages: Ollama-format messages (system, user, assistant, tool)
        model: Ollama model name (e.g. qwen2.5:14b-instruct)
        tools: Function tool definitions in Ollama format
        temperature: Temperature for sampling
        max_tokens: Maximum tokens in response (Ollama calls it num_predict)
        timeout: Request timeout in seconds

    Returns:
        The response ``message`` object (``content`` and optional ``tool_calls``)

    Raises:
        LLMProviderError: If the call fails after retries
    """
    base_url = os.environ.get("FL_OLLAMA_BASE_URL", "http://localhost:11434")
    max_retries = int(os.environ.get("FL_MAX_RETRIES", "2"))
    endpoint = f"{base_url}/api/chat"

    # The system prompt carries the full schema and knowledge context; the
    # default 2048-token window truncates it silently.
    num_ctx = int(os.environ.get("FL_OLLAMA_NUM_CTX", "16384"))

    payload: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "stream": False,
        "options": {
            "temperature": temperature,
            "num_ctx": num_ctx,
        },
    }
    if tools:
        payload["tools"] = tools
    if max_tokens is not None:
        payload["options"]["num_predict"] = max_tokens

    for attempt in range(max_retries + 1):
        retry = attempt < max_retries
        try:
            response = requests.post(endpoint, json=payload, timeout=timeout)
            response.raise_for_status()
            result = response.json()
            if "message" not in result:
                raise LLMProviderError(f"Unexpected Ollama response format: {result}")
            return result["message"]

        except requests.exceptions.ConnectionError as e:
            if retry:
                time.sleep(0.5 * (2 ** attempt))
                continue
            raise LLMProviderError(
                f"Cannot connect to Ollama at {base_url}. Ensure Ollama is running.",
                category="unavailable",
                original_error=e,
            ) from e

        except requests.exceptions.Timeout as e:
            if retry:
                time.sleep(0.5 * (2 ** attempt))
                continue
            raise LLMProviderError(
                f"Ollama request timed out after {timeout}s (model: {model})",
                category="timeout",
                original_error=e,
            ) from e

        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else 0
            if 500 <= status < 600 and retry:
                time.sleep(0.5 * (2 ** attempt))
                continue
            raise LLMProviderError(
                f"Ollama API error ({status}): {e.response.text if e.response is not None else e}",
                category="unavailable" if status >= 500 else "unknown",
                original_error=e,
            ) from e

    raise LLMProviderError(f"Ollama call failed after {max_retries} retries", category="unavailable")

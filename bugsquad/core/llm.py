"""Provider-neutral LLM adapter.

One contract for every provider: a list of ``Message`` in, reply text out.
The adapter is stateless apart from a reusable HTTP client and never retries;
retry policy belongs to the calling loop, which inspects ``error.retryable``.

Supported providers:
- anthropic: Messages API (system prompt lifted out, same-role turns merged)
- openai / openrouter: OpenAI-compatible chat completions
"""

import json
import logging
import os
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from bugsquad.core.errors import (
    AuthError,
    FatalConfigError,
    MalformedResponseError,
    ProviderError,
    RateLimitError,
    TransientNetworkError,
)
from bugsquad.core.models import Message

logger = logging.getLogger(__name__)

ProviderName = Literal["anthropic", "openai", "openrouter"]

DEFAULT_BASE_URLS: dict[str, str] = {
    "anthropic": "https://api.anthropic.com/v1",
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}

API_KEY_ENV_VARS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

ANTHROPIC_VERSION = "2023-06-01"


class ProviderConfig(BaseModel):
    """How to reach one model."""

    provider: ProviderName = "anthropic"
    model: str = "claude-sonnet-4-5"
    api_key: str | None = Field(default=None, repr=False)
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.2
    timeout: float = 120.0

    def resolved_api_key(self) -> str | None:
        return self.api_key or os.environ.get(API_KEY_ENV_VARS[self.provider])

    def resolved_base_url(self) -> str:
        return (self.base_url or DEFAULT_BASE_URLS[self.provider]).rstrip("/")


def _merge_turns(messages: list[Message]) -> tuple[str, list[dict[str, str]]]:
    """Split out system text and merge consecutive same-role turns."""
    system_parts: list[str] = []
    turns: list[dict[str, str]] = []
    for message in messages:
        if message.role == "system":
            system_parts.append(message.content)
            continue
        if turns and turns[-1]["role"] == message.role:
            turns[-1]["content"] += "\n\n" + message.content
        else:
            turns.append({"role": message.role, "content": message.content})
    return "\n\n".join(system_parts), turns


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:500]
    message = f"{provider} returned HTTP {status}: {detail}"
    if status in (401, 403):
        raise AuthError(message, status_code=status)
    if status == 429:
        raise RateLimitError(message, status_code=status)
    if status >= 500 or status == 408:
        raise TransientNetworkError(message, status_code=status)
    raise ProviderError(message, status_code=status)


class LLMAdapter:
    """Normalizes provider request/response differences.

    Usage:
        adapter = LLMAdapter()
        text = adapter.call([Message(role="user", content="hi")], ProviderConfig())
    """

    def __init__(self, transport: httpx.BaseTransport | None = None):
        self._client = httpx.Client(transport=transport)

    def close(self) -> None:
        self._client.close()

    def call(self, messages: list[Message], config: ProviderConfig) -> str:
        """Send the conversation and return the reply text.

        Raises:
            FatalConfigError: Missing credential or unusable config (not retryable)
            AuthError / RateLimitError: Provider refused the call (not retryable)
            TransientNetworkError / MalformedResponseError: Retryable
        """
        api_key = config.resolved_api_key()
        if not api_key:
            raise FatalConfigError(
                f"No API key for provider '{config.provider}'. "
                f"Set {API_KEY_ENV_VARS[config.provider]} or configure api_key."
            )
        if not messages:
            raise FatalConfigError("Cannot call a model with an empty conversation")

        if config.provider == "anthropic":
            url, headers, body = self._anthropic_request(messages, config, api_key)
        else:
            url, headers, body = self._openai_request(messages, config, api_key)

        try:
            response = self._client.post(url, headers=headers, json=body, timeout=config.timeout)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{config.provider} request timed out: {e}")
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{config.provider} connection failed: {e}")

        _raise_for_status(response, config.provider)

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedResponseError(f"{config.provider} returned invalid JSON: {e}")

        if config.provider == "anthropic":
            text = self._anthropic_text(payload)
        else:
            text = self._openai_text(payload)

        if not text.strip():
            raise MalformedResponseError(f"{config.provider} returned an empty reply")
        return text

    # --- Anthropic ---

    def _anthropic_request(
        self, messages: list[Message], config: ProviderConfig, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        system, turns = _merge_turns(messages)
        # Anthropic requires the first turn to be from the user
        if not turns or turns[0]["role"] != "user":
            turns.insert(0, {"role": "user", "content": "Begin."})
        body: dict[str, Any] = {
            "model": config.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": turns,
        }
        if system:
            body["system"] = system
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        return f"{config.resolved_base_url()}/messages", headers, body

    def _anthropic_text(self, payload: Any) -> str:
        if not isinstance(payload, dict) or not isinstance(payload.get("content"), list):
            raise MalformedResponseError("anthropic response has no 'content' list")
        return "".join(
            block.get("text", "")
            for block in payload["content"]
            if isinstance(block, dict) and block.get("type") == "text"
        )

    # --- OpenAI-compatible ---

    def _openai_request(
        self, messages: list[Message], config: ProviderConfig, api_key: str
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        body = {
            "model": config.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "content-type": "application/json",
        }
        return f"{config.resolved_base_url()}/chat/completions", headers, body

    def _openai_text(self, payload: Any) -> str:
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise MalformedResponseError("chat completion response has no choices[0].message.content")
        if isinstance(content, list):
            # Some compatible providers return content parts
            return "".join(part.get("text", "") for part in content if isinstance(part, dict))
        return content or ""

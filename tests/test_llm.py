"""Tests for the provider-neutral LLM adapter.

HTTP traffic goes through httpx.MockTransport; no network access.
"""

from __future__ import annotations

import json

import httpx
import pytest

from bugsquad.core.errors import (
    AuthError,
    FatalConfigError,
    MalformedResponseError,
    ProviderError,
    RateLimitError,
    TransientNetworkError,
)
from bugsquad.core.llm import LLMAdapter, ProviderConfig
from bugsquad.core.models import Message

CONVERSATION = [
    Message(role="system", content="You debug things."),
    Message(role="user", content="Error: boom"),
    Message(role="user", content="Observation from dev:\nonly on Mondays"),
]


def adapter_returning(status: int = 200, payload=None, text: str | None = None, seen: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if text is not None:
            return httpx.Response(status, text=text)
        return httpx.Response(status, json=payload)

    return LLMAdapter(transport=httpx.MockTransport(handler))


def anthropic_reply(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}], "stop_reason": "end_turn"}


class TestAnthropic:
    def test_request_shape(self):
        seen: list[httpx.Request] = []
        adapter = adapter_returning(payload=anthropic_reply("hello"), seen=seen)
        config = ProviderConfig(provider="anthropic", api_key="k", model="m")

        assert adapter.call(CONVERSATION, config) == "hello"

        request = seen[0]
        assert request.url == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "k"
        body = json.loads(request.content)
        assert body["system"] == "You debug things."
        # Consecutive user turns are merged into one
        assert len(body["messages"]) == 1
        assert "only on Mondays" in body["messages"][0]["content"]

    def test_conversation_starting_with_assistant(self):
        seen: list[httpx.Request] = []
        adapter = adapter_returning(payload=anthropic_reply("ok"), seen=seen)
        adapter.call([Message(role="assistant", content="hi")], ProviderConfig(api_key="k"))
        body = json.loads(seen[0].content)
        assert body["messages"][0]["role"] == "user"

    def test_multiple_text_blocks_joined(self):
        payload = {"content": [{"type": "text", "text": "a"}, {"type": "tool_use"}, {"type": "text", "text": "b"}]}
        adapter = adapter_returning(payload=payload)
        assert adapter.call(CONVERSATION, ProviderConfig(api_key="k")) == "ab"


class TestOpenAICompatible:
    @pytest.mark.parametrize(
        "provider,url",
        [
            ("openai", "https://api.openai.com/v1/chat/completions"),
            ("openrouter", "https://openrouter.ai/api/v1/chat/completions"),
        ],
    )
    def test_request_shape(self, provider, url):
        seen: list[httpx.Request] = []
        payload = {"choices": [{"message": {"content": "answer"}}]}
        adapter = adapter_returning(payload=payload, seen=seen)

        assert adapter.call(CONVERSATION, ProviderConfig(provider=provider, api_key="k")) == "answer"
        assert seen[0].url == url
        assert seen[0].headers["authorization"] == "Bearer k"
        assert len(json.loads(seen[0].content)["messages"]) == 3

    def test_custom_base_url(self):
        seen: list[httpx.Request] = []
        adapter = adapter_returning(payload={"choices": [{"message": {"content": "x"}}]}, seen=seen)
        config = ProviderConfig(provider="openai", api_key="k", base_url="http://localhost:9000/v1/")
        adapter.call(CONVERSATION, config)
        assert seen[0].url == "http://localhost:9000/v1/chat/completions"


class TestErrorMapping:
    @pytest.mark.parametrize(
        "status,error,retryable",
        [
            (401, AuthError, False),
            (403, AuthError, False),
            (429, RateLimitError, False),
            (500, TransientNetworkError, True),
            (503, TransientNetworkError, True),
            (408, TransientNetworkError, True),
            (400, ProviderError, False),
        ],
    )
    def test_status_codes(self, status, error, retryable):
        adapter = adapter_returning(status=status, payload={"error": "nope"})
        with pytest.raises(error) as exc_info:
            adapter.call(CONVERSATION, ProviderConfig(api_key="k"))
        assert exc_info.value.status_code == status
        assert exc_info.value.retryable is retryable

    def test_connection_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        adapter = LLMAdapter(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientNetworkError):
            adapter.call(CONVERSATION, ProviderConfig(api_key="k"))

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        adapter = LLMAdapter(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientNetworkError, match="timed out"):
            adapter.call(CONVERSATION, ProviderConfig(api_key="k"))

    def test_invalid_json(self):
        adapter = adapter_returning(text="<html>gateway</html>")
        with pytest.raises(MalformedResponseError, match="invalid JSON"):
            adapter.call(CONVERSATION, ProviderConfig(api_key="k"))

    def test_empty_reply(self):
        adapter = adapter_returning(payload=anthropic_reply("   "))
        with pytest.raises(MalformedResponseError, match="empty reply"):
            adapter.call(CONVERSATION, ProviderConfig(api_key="k"))

    def test_missing_choices(self):
        adapter = adapter_returning(payload={"choices": []})
        with pytest.raises(MalformedResponseError):
            adapter.call(CONVERSATION, ProviderConfig(provider="openai", api_key="k"))

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        adapter = adapter_returning(payload=anthropic_reply("never"))
        with pytest.raises(FatalConfigError, match="ANTHROPIC_API_KEY"):
            adapter.call(CONVERSATION, ProviderConfig())

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        assert ProviderConfig(provider="openai").resolved_api_key() == "env-key"

    def test_api_key_not_in_repr(self):
        assert "secret" not in repr(ProviderConfig(api_key="secret"))

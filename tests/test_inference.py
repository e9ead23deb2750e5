"""Tests for inference clients, routing and cost estimation. No network: httpx.MockTransport and a fake SDK."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import pytest
import httpx

from automaton.api.inference import (
    AnthropicInferenceClient,
    ConwayInferenceClient,
    InferenceRouter,
    estimate_cost,
    pricing_for,
)
from automaton.errors import InferenceError
from automaton.harness.retry import RetryConfig
from automaton.types import ChatMessage, ChatRole, TokenUsage

_NO_RETRY = RetryConfig(max_retries=0)


def _messages() -> list[ChatMessage]:
    return [
        ChatMessage(role=ChatRole.SYSTEM, content="You are an automaton."),
        ChatMessage(role=ChatRole.USER, content="Continue."),
    ]


class TestPricing:
    def test_longest_match_wins(self):
        assert pricing_for("gpt-4o-mini-2024-07-18") == (0.15, 0.60)
        assert pricing_for("gpt-4o-2024-08-06") == (2.50, 10.00)

    def test_unknown_model_uses_default(self):
        assert pricing_for("mystery-model") == (2.50, 10.00)

    def test_estimate_cost(self):
        usage = TokenUsage(prompt_tokens=1_000_000, completion_tokens=1_000_000)
        assert estimate_cost("gpt-4o-mini", usage) == pytest.approx(0.75)


class TestConwayInferenceClient:
    @pytest.mark.asyncio
    async def test_parses_content_tool_calls_and_usage(self):
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{
                    "message": {
                        "content": "Checking files.",
                        "tool_calls": [{
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "exec", "arguments": "{\"command\": \"ls\"}"},
                        }],
                    },
                }],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
            })

        client = ConwayInferenceClient(
            "https://api.example/", "key-123", retry_config=_NO_RETRY,
            transport=httpx.MockTransport(handler),
        )
        tools = [{"name": "exec", "description": "run", "input_schema": {"type": "object"}}]
        response = await client.chat("gpt-4o", _messages(), tools=tools, max_tokens=256)
        await client.close()

        assert captured["url"] == "https://api.example/v1/chat/completions"
        assert captured["auth"] == "Bearer key-123"
        assert captured["body"]["max_tokens"] == 256
        assert captured["body"]["tools"][0]["function"]["name"] == "exec"
        assert captured["body"]["messages"][0] == {"role": "system", "content": "You are an automaton."}

        assert response.content == "Checking files."
        assert response.tool_calls[0].arguments == {"command": "ls"}
        assert response.usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_bad_tool_arguments_become_empty(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": [{"message": {"tool_calls": [
                {"id": "c", "function": {"name": "exec", "arguments": "{not json"}},
            ]}}]})

        client = ConwayInferenceClient("https://api.example", "k", retry_config=_NO_RETRY,
                                       transport=httpx.MockTransport(handler))
        response = await client.chat("gpt-4o", _messages())
        assert response.tool_calls[0].arguments == {}
        assert response.content is None

    @pytest.mark.asyncio
    async def test_http_error_raises_with_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="bad key")

        client = ConwayInferenceClient("https://api.example", "k", retry_config=_NO_RETRY,
                                       transport=httpx.MockTransport(handler))
        with pytest.raises(InferenceError) as exc_info:
            await client.chat("gpt-4o", _messages())
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, monkeypatch):
        attempts = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] == 1:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        async def _no_sleep(delay: float) -> None:
            return None

        monkeypatch.setattr("automaton.harness.retry.asyncio.sleep", _no_sleep)
        client = ConwayInferenceClient("https://api.example", "k", retry_config=RetryConfig(max_retries=2),
                                       transport=httpx.MockTransport(handler))
        response = await client.chat("gpt-4o", _messages())
        assert response.content == "ok"
        assert attempts["n"] == 2


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

@dataclass
class _Block:
    type: str
    text: str = ""
    id: str = ""
    name: str = ""
    input: dict = field(default_factory=dict)


@dataclass
class _Usage:
    input_tokens: int = 20
    output_tokens: int = 5


@dataclass
class _Message:
    content: list
    usage: _Usage = field(default_factory=_Usage)


class _FakeMessages:
    def __init__(self, response: _Message):
        self.response = response
        self.kwargs: dict[str, Any] = {}

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.response


class _FakeAnthropic:
    def __init__(self, response: _Message):
        self.messages = _FakeMessages(response)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class TestAnthropicInferenceClient:
    def test_message_folding(self):
        system, api_messages = AnthropicInferenceClient._to_api_messages([
            ChatMessage(role=ChatRole.SYSTEM, content="rules"),
            ChatMessage(role=ChatRole.ASSISTANT, content="I did a thing"),
            ChatMessage(role=ChatRole.TOOL, content="[exec] ok"),
            ChatMessage(role=ChatRole.USER, content="Continue."),
        ])
        assert system == "rules"
        assert [m["role"] for m in api_messages] == ["user", "assistant", "user"]
        assert api_messages[0]["content"] == "(begin)"
        assert api_messages[2]["content"] == "[exec] ok\n\nContinue."

    @pytest.mark.asyncio
    async def test_text_and_tool_use_blocks(self):
        fake = _FakeAnthropic(_Message(content=[
            _Block(type="text", text="Sleeping now."),
            _Block(type="tool_use", id="tu_1", name="sleep", input={"duration_minutes": 10}),
        ]))
        client = AnthropicInferenceClient("key", retry_config=_NO_RETRY, client=fake)
        response = await client.chat("claude-sonnet-4-5-20250514", _messages(), tools=[{"name": "sleep"}])

        assert fake.messages.kwargs["system"] == "You are an automaton."
        assert fake.messages.kwargs["tools"] == [{"name": "sleep"}]
        assert response.content == "Sleeping now."
        assert response.tool_calls[0].name == "sleep"
        assert response.tool_calls[0].arguments == {"duration_minutes": 10}
        assert response.usage.total_tokens == 25

        await client.close()
        assert fake.closed


class TestRouter:
    @pytest.mark.asyncio
    async def test_routes_claude_models_to_anthropic(self):
        from unittest.mock import AsyncMock, MagicMock

        default = MagicMock()
        default.chat = AsyncMock(return_value="default")
        claude = MagicMock()
        claude.chat = AsyncMock(return_value="claude")
        router = InferenceRouter(default, claude)

        assert await router.chat("claude-haiku-3-5-20241022", []) == "claude"
        assert await router.chat("gpt-4o", []) == "default"

    def test_without_anthropic_everything_goes_to_default(self):
        default = object()
        assert InferenceRouter(default).client_for("claude-x") is default

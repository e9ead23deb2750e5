"""
Inference — the automaton's thinking, paid per token.

One request/response contract, two transports:

- ConwayInferenceClient: the compute provider's OpenAI-compatible
  ``/v1/chat/completions`` endpoint (the default; billed against credits).
- AnthropicInferenceClient: Claude models through the anthropic SDK, used
  when an Anthropic key is configured.

InferenceRouter picks the transport per model name. Both clients retry
transient failures through harness.retry before giving up.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Protocol

import anthropic
import httpx
import structlog

from automaton.errors import InferenceError
from automaton.harness.retry import RetryConfig, with_retries
from automaton.types import ChatMessage, ChatRole, InferenceResponse, TokenUsage, ToolCall, new_id

logger = structlog.get_logger(__name__)

# USD per 1M tokens: (prompt, completion)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "claude-sonnet-4-5-20250514": (3.00, 15.00),
    "claude-haiku-3-5-20241022": (0.25, 1.25),
}
DEFAULT_PRICING = MODEL_PRICING["gpt-4o"]


def pricing_for(model: str) -> tuple[float, float]:
    """Rates for the longest pricing key contained in the model name."""
    matches = [name for name in MODEL_PRICING if name in model]
    if not matches:
        return DEFAULT_PRICING
    return MODEL_PRICING[max(matches, key=len)]


def estimate_cost(model: str, usage: TokenUsage) -> float:
    """Estimated USD cost of one inference call."""
    prompt_rate, completion_rate = pricing_for(model)
    return (
        usage.prompt_tokens / 1_000_000 * prompt_rate
        + usage.completion_tokens / 1_000_000 * completion_rate
    )


class InferenceClient(Protocol):
    async def chat(
        self,
        model: str,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        max_tokens: int = 4096,
    ) -> InferenceResponse: ...


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("inference.unparseable_tool_arguments", raw=str(raw)[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ConwayInferenceClient:
    """OpenAI-compatible chat completions with function calling."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        temperature: float = 0.7,
        timeout: float = 120.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = f"{base_url.rstrip('/')}/v1/chat/completions"
        self._temperature = temperature
        self._retry_config = retry_config or RetryConfig()
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    @staticmethod
    def _tool_payload(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema", {"type": "object"}),
                },
            }
            for tool in tools
        ]

    async def chat(
        self,
        model: str,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        max_tokens: int = 4096,
    ) -> InferenceResponse:
        body: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "max_tokens": max_tokens,
            "temperature": self._temperature,
        }
        if tools:
            body["tools"] = self._tool_payload(tools)

        async def _post() -> httpx.Response:
            response = await self._client.post(self._url, json=body)
            if response.is_error:
                raise InferenceError(
                    f"Inference failed ({response.status_code}): {response.text[:500]}",
                    status_code=response.status_code,
                )
            return response

        logger.debug("inference.request", model=model, messages=len(messages))
        response = await with_retries(_post, config=self._retry_config)

        try:
            data = response.json()
        except ValueError as e:
            raise InferenceError(f"Failed to parse inference response: {e}") from e

        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        tool_calls = [
            ToolCall(
                id=str(tc.get("id") or new_id()),
                name=str((tc.get("function") or {}).get("name", "")),
                arguments=_parse_arguments((tc.get("function") or {}).get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]
        usage_data = data.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=int(usage_data.get("prompt_tokens", 0)),
            completion_tokens=int(usage_data.get("completion_tokens", 0)),
            total_tokens=int(usage_data.get("total_tokens", 0)),
        )
        return InferenceResponse(content=message.get("content"), tool_calls=tool_calls, usage=usage)

    async def close(self) -> None:
        await self._client.aclose()


class AnthropicInferenceClient:
    """Claude models through the Messages API."""

    def __init__(
        self,
        api_key: str,
        temperature: float = 0.7,
        timeout: float = 120.0,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        # SDK-level retries are disabled; harness.retry owns the policy.
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self._temperature = temperature
        self._timeout = timeout
        self._retry_config = retry_config or RetryConfig()

    @staticmethod
    def _to_api_messages(messages: list[ChatMessage]) -> tuple[str, list[dict[str, Any]]]:
        """Split out the system prompt and fold the rest into alternating turns.

        Tool results travel as plain text in the history, so they are sent as
        user content. Consecutive same-role messages are merged.
        """
        system_parts: list[str] = []
        api_messages: list[dict[str, Any]] = []
        for message in messages:
            if message.role is ChatRole.SYSTEM:
                system_parts.append(message.content)
                continue
            role = "assistant" if message.role is ChatRole.ASSISTANT else "user"
            if api_messages and api_messages[-1]["role"] == role:
                api_messages[-1]["content"] += "\n\n" + message.content
            else:
                api_messages.append({"role": role, "content": message.content})
        if not api_messages or api_messages[0]["role"] != "user":
            api_messages.insert(0, {"role": "user", "content": "(begin)"})
        return "\n\n".join(system_parts), api_messages

    async def chat(
        self,
        model: str,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        max_tokens: int = 4096,
    ) -> InferenceResponse:
        system, api_messages = self._to_api_messages(messages)
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": self._temperature,
            "messages": api_messages,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools

        async def _create() -> Any:
            return await asyncio.wait_for(
                self._client.messages.create(**kwargs), timeout=self._timeout
            )

        try:
            response = await with_retries(_create, config=self._retry_config)
        except anthropic.APIError as e:
            raise InferenceError(
                f"Anthropic inference failed: {e}",
                status_code=getattr(e, "status_code", None),
            ) from e

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
                )
        usage = TokenUsage(
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
            total_tokens=response.usage.input_tokens + response.usage.output_tokens,
        )
        return InferenceResponse(
            content="\n".join(text_parts) or None,
            tool_calls=tool_calls,
            usage=usage,
        )

    async def close(self) -> None:
        await self._client.close()


class InferenceRouter:
    """Sends claude-* models to Anthropic (when configured), everything else to Conway."""

    def __init__(
        self,
        default: InferenceClient,
        anthropic_client: Optional[InferenceClient] = None,
    ):
        self._default = default
        self._anthropic = anthropic_client

    def client_for(self, model: str) -> InferenceClient:
        if self._anthropic is not None and model.startswith("claude"):
            return self._anthropic
        return self._default

    async def chat(
        self,
        model: str,
        messages: list[ChatMessage],
        tools: Optional[list[dict[str, Any]]] = None,
        max_tokens: int = 4096,
    ) -> InferenceResponse:
        return await self.client_for(model).chat(model, messages, tools, max_tokens)

    async def close(self) -> None:
        for client in (self._default, self._anthropic):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

"""Chat-completions client for OpenAI-compatible HTTP APIs."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import ValidationError

from crew_runtime.agents.llm.base import (
    LlmError,
    LlmMessage,
    LlmOutputError,
    LlmResponse,
    LlmTimeoutError,
    ModelT,
    ToolCall,
    ToolSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 2


class OpenAICompatibleClient:
    """``LlmClient`` over ``POST {base_url}/chat/completions``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport or httpx.AsyncHTTPTransport(retries=max_retries),
        )

    async def generate(
        self,
        messages: Sequence[LlmMessage],
        *,
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] = (),
        max_tokens: int | None = None,
    ) -> LlmResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": _to_wire_messages(messages, system_prompt=system_prompt),
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": spec.name,
                        "description": spec.description,
                        "parameters": spec.parameters,
                    },
                }
                for spec in tools
            ]
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        message = await self._complete(payload)
        return LlmResponse(
            text=message.get("content") or "",
            tool_calls=_parse_tool_calls(message.get("tool_calls") or []),
        )

    async def generate_object(
        self,
        messages: Sequence[LlmMessage],
        schema: type[ModelT],
        *,
        system_prompt: str | None = None,
    ) -> ModelT:
        schema_hint = (
            "Return only a JSON object matching this JSON schema:\n"
            f"{json.dumps(schema.model_json_schema(), ensure_ascii=False)}"
        )
        prompt = f"{system_prompt}\n\n{schema_hint}" if system_prompt else schema_hint
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": _to_wire_messages(messages, system_prompt=prompt),
            "response_format": {"type": "json_object"},
        }
        message = await self._complete(payload)
        content = message.get("content")
        if not content:
            raise LlmOutputError("Empty structured response from LLM provider")
        try:
            return schema.model_validate_json(content)
        except ValidationError as exc:
            raise LlmOutputError(f"Structured output failed validation: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _complete(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            raise LlmTimeoutError(f"LLM request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LlmError(f"LLM request failed: {exc}") from exc

        if not response.is_success:
            raise LlmError(
                f"LLM provider returned HTTP {response.status_code}: {response.text[:500]}",
            )
        try:
            body = response.json()
            message = body["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LlmOutputError(f"Malformed LLM provider response: {exc}") from exc
        if not isinstance(message, dict):
            raise LlmOutputError("Malformed LLM provider response: message is not an object")
        usage = body.get("usage") or {}
        logger.debug(
            "LLM call model=%s prompt_tokens=%s completion_tokens=%s",
            body.get("model", self.model),
            usage.get("prompt_tokens"),
            usage.get("completion_tokens"),
        )
        return message


def _to_wire_messages(
    messages: Sequence[LlmMessage],
    *,
    system_prompt: str | None,
) -> list[dict[str, Any]]:
    wire: list[dict[str, Any]] = []
    if system_prompt:
        wire.append({"role": "system", "content": system_prompt})
    for message in messages:
        item: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            item["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id is not None:
            item["tool_call_id"] = message.tool_call_id
        wire.append(item)
    return wire


def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for raw in raw_calls:
        function = raw.get("function") or {}
        raw_arguments = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_arguments)
        except json.JSONDecodeError as exc:
            raise LlmOutputError(
                f"Tool call {function.get('name')!r} has malformed arguments: {exc}",
            ) from exc
        if not isinstance(arguments, dict):
            raise LlmOutputError(f"Tool call {function.get('name')!r} arguments must be an object")
        calls.append(
            ToolCall(
                call_id=str(raw.get("id") or ""),
                name=str(function.get("name") or ""),
                arguments=arguments,
            ),
        )
    return calls

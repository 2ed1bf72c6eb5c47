"""Deterministic offline LLM client for local runs and tests."""

from __future__ import annotations

from collections.abc import Sequence

from pydantic import ValidationError

from crew_runtime.agents.llm.base import (
    LlmMessage,
    LlmOutputError,
    LlmResponse,
    ModelT,
    ToolSpec,
)

ECHO_PREVIEW_CHARS = 200


class EchoLlmClient:
    """Echo the latest user turn; never calls tools.

    Structured output is the schema's all-defaults instance, so every
    decision schema used by the agent resolves to its conservative default
    (no briefing, nothing extracted).
    """

    def __init__(self, *, prefix: str = "Noted") -> None:
        self.prefix = prefix
        self.calls = 0

    async def generate(
        self,
        messages: Sequence[LlmMessage],
        *,
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] = (),
        max_tokens: int | None = None,
    ) -> LlmResponse:
        self.calls += 1
        last_user = next(
            (message.content for message in reversed(messages) if message.role == "user"),
            "",
        )
        preview = " ".join(last_user.split())[:ECHO_PREVIEW_CHARS]
        return LlmResponse(text=f"{self.prefix}: {preview}" if preview else f"{self.prefix}.")

    async def generate_object(
        self,
        messages: Sequence[LlmMessage],
        schema: type[ModelT],
        *,
        system_prompt: str | None = None,
    ) -> ModelT:
        self.calls += 1
        try:
            return schema.model_validate({})
        except ValidationError as exc:
            raise LlmOutputError(f"{schema.__name__} has no default instance: {exc}") from exc

    async def aclose(self) -> None:
        return None

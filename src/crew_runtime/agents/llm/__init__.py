"""LLM collaborator: provider-neutral contract and client implementations."""

from __future__ import annotations

from crew_runtime.agents.llm.base import (
    LlmClient,
    LlmError,
    LlmMessage,
    LlmOutputError,
    LlmResponse,
    LlmTimeoutError,
    ToolCall,
    ToolSpec,
)
from crew_runtime.agents.llm.echo import EchoLlmClient
from crew_runtime.agents.llm.openai_compatible import OpenAICompatibleClient
from crew_runtime.config import LlmSettings

__all__ = [
    "EchoLlmClient",
    "LlmClient",
    "LlmError",
    "LlmMessage",
    "LlmOutputError",
    "LlmResponse",
    "LlmTimeoutError",
    "OpenAICompatibleClient",
    "ToolCall",
    "ToolSpec",
    "build_llm_client",
]


def build_llm_client(settings: LlmSettings) -> LlmClient:
    """Instantiate the configured provider."""

    if settings.provider == "openai":
        return OpenAICompatibleClient(
            api_key=settings.api_key,
            base_url=settings.base_url,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
            max_retries=settings.max_retries,
        )
    if settings.provider == "echo":
        return EchoLlmClient()
    raise ValueError(f"Unsupported LLM provider: {settings.provider!r}")

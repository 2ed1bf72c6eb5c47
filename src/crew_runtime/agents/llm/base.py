"""LLM collaborator contract shared by every client implementation."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

ModelT = TypeVar("ModelT", bound=BaseModel)


class LlmError(RuntimeError):
    """Base error for LLM provider failures."""


class LlmTimeoutError(LlmError):
    """The provider did not answer within the configured timeout."""


class LlmOutputError(LlmError):
    """The provider answered, but the output could not be parsed or validated."""


@dataclass(slots=True)
class ToolCall:
    """One tool invocation requested by the model."""

    call_id: str
    name: str
    arguments: dict[str, Any]


@dataclass(slots=True)
class LlmMessage:
    """Chat message in provider-neutral form.

    ``role`` is ``user``, ``assistant``, ``system`` or ``tool``. Assistant
    messages may carry ``tool_calls``; tool messages answer one call via
    ``tool_call_id``.
    """

    role: str
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None


@dataclass(slots=True)
class ToolSpec:
    """Tool advertised to the model: name, description and JSON schema of arguments."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(slots=True)
class LlmResponse:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)


class LlmClient(Protocol):
    """Text generation with tools, plus schema-constrained structured output."""

    async def generate(
        self,
        messages: Sequence[LlmMessage],
        *,
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] = (),
        max_tokens: int | None = None,
    ) -> LlmResponse: ...

    async def generate_object(
        self,
        messages: Sequence[LlmMessage],
        schema: type[ModelT],
        *,
        system_prompt: str | None = None,
    ) -> ModelT: ...

    async def aclose(self) -> None: ...

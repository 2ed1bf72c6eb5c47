"""User-facing memories: foreground-context block and per-exchange extraction."""

from __future__ import annotations

from collections.abc import Sequence

from pydantic import BaseModel, Field

from crew_runtime.agents.llm import LlmClient, LlmMessage
from crew_runtime.agents.models import MemoryType, MemoryView
from crew_runtime.agents.prompts import MEMORY_EXTRACTION_PROMPT


class ExtractedMemory(BaseModel):
    type: MemoryType = Field(description="preference, insight or fact")
    content: str = Field(min_length=1, description="What to remember, in one sentence")


class MemoryExtraction(BaseModel):
    memories: list[ExtractedMemory] = Field(default_factory=list)


def build_memory_context_block(memories: Sequence[MemoryView]) -> str:
    if not memories:
        return ""
    lines = ["## What you know about the user"]
    lines.extend(f"- [{memory.type.value}] {memory.content}" for memory in memories)
    return "\n".join(lines)


async def extract_memories(
    llm: LlmClient,
    *,
    role: str,
    user_message: str,
    assistant_response: str,
) -> list[ExtractedMemory]:
    extraction = await llm.generate_object(
        [
            LlmMessage(role="user", content=user_message),
            LlmMessage(role="assistant", content=assistant_response),
        ],
        MemoryExtraction,
        system_prompt=MEMORY_EXTRACTION_PROMPT.format(role=role),
    )
    return extraction.memories

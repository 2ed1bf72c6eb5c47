"""Knowledge items: background-context block and end-of-session extraction."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import BaseModel, Field

from crew_runtime.agents.llm import LlmClient, LlmMessage
from crew_runtime.agents.models import (
    KnowledgeItemType,
    KnowledgeItemView,
    ThreadMessageView,
)
from crew_runtime.agents.prompts import KNOWLEDGE_EXTRACTION_PROMPT

logger = logging.getLogger(__name__)

TRANSCRIPT_MAX_CHARS = 24_000


class ExtractedKnowledge(BaseModel):
    type: KnowledgeItemType = Field(description="fact, technique, pattern or lesson")
    content: str = Field(min_length=1, description="One self-contained learning")
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class KnowledgeExtraction(BaseModel):
    items: list[ExtractedKnowledge] = Field(default_factory=list)


def build_knowledge_context_block(items: Sequence[KnowledgeItemView]) -> str:
    """Render knowledge items for the background system prompt; empty when none."""

    if not items:
        return ""
    lines = ["## Professional knowledge from previous sessions"]
    for item in items:
        suffix = f" (confidence {item.confidence:.2f})" if item.confidence is not None else ""
        lines.append(f"- [{item.type.value}] {item.content}{suffix}")
    return "\n".join(lines)


def format_transcript(
    messages: Sequence[ThreadMessageView],
    *,
    max_chars: int = TRANSCRIPT_MAX_CHARS,
) -> str:
    """Plain-text transcript, keeping the tail when it exceeds ``max_chars``.

    Dropping the head is logged; callers that must see every message should
    use ``chunk_transcript`` instead.
    """

    text = "\n\n".join(_format_line(message) for message in messages)
    if len(text) <= max_chars:
        return text
    logger.warning(
        "Transcript truncated to its last %d of %d chars (%d dropped)",
        max_chars,
        len(text),
        len(text) - max_chars,
    )
    return text[-max_chars:]


def chunk_transcript(
    messages: Sequence[ThreadMessageView],
    *,
    max_chars: int = TRANSCRIPT_MAX_CHARS,
) -> list[str]:
    """Split a transcript on message boundaries into chunks of at most ``max_chars``.

    A single message longer than ``max_chars`` becomes its own chunk, cut to
    its tail.
    """

    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for message in messages:
        line = _format_line(message)
        if len(line) > max_chars:
            logger.warning(
                "Message %s truncated to its last %d chars for the transcript",
                message.message_id,
                max_chars,
            )
            line = line[-max_chars:]
        added = len(line) + (2 if current else 0)
        if current and size + added > max_chars:
            chunks.append("\n\n".join(current))
            current, size = [], 0
            added = len(line)
        current.append(line)
        size += added
    if current:
        chunks.append("\n\n".join(current))
    return chunks


def _format_line(message: ThreadMessageView) -> str:
    return f"{message.role.value.upper()}: {message.content}"


async def extract_knowledge(
    llm: LlmClient,
    *,
    role: str,
    transcript: Sequence[ThreadMessageView],
) -> list[ExtractedKnowledge]:
    """Ask the model for durable learnings from a finished session."""

    if not transcript:
        return []
    extraction = await llm.generate_object(
        [LlmMessage(role="user", content=format_transcript(transcript))],
        KnowledgeExtraction,
        system_prompt=KNOWLEDGE_EXTRACTION_PROMPT.format(role=role),
    )
    logger.debug("Extracted %d knowledge items", len(extraction.items))
    return extraction.items

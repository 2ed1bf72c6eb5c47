"""Agent orchestration: foreground message handling and background work sessions."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Coroutine
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from crew_runtime.agents.knowledge import (
    TRANSCRIPT_MAX_CHARS,
    build_knowledge_context_block,
    chunk_transcript,
    extract_knowledge,
)
from crew_runtime.agents.llm import LlmClient, LlmError, LlmMessage
from crew_runtime.agents.memory import build_memory_context_block, extract_memories
from crew_runtime.agents.models import (
    AgentView,
    BriefingWrite,
    ConversationMode,
    MessageRole,
    SessionSummary,
    TaskCreate,
    TaskSource,
    TaskStatus,
    TaskView,
)
from crew_runtime.agents.prompts import (
    ACKNOWLEDGMENT_PROMPT,
    BRIEFING_DECISION_PROMPT,
    COMPACTION_PROMPT,
    DEFAULT_AGENT_PROMPT,
    LEAD_WORK_RULES,
    SUBORDINATE_WORK_RULES,
)
from crew_runtime.agents.repository import AgentRepository
from crew_runtime.agents.task_queue import TaskQueue
from crew_runtime.agents.threads import ThreadManager
from crew_runtime.agents.tools import ToolContext, ToolExecutor, tool_specs
from crew_runtime.config import RunnerSettings, SessionSettings
from crew_runtime.storage.common import utc_now

logger = logging.getLogger(__name__)

FALLBACK_ACKNOWLEDGMENT = "Got it. I'll work on this and get back to you."
_CHUNK_PATTERN = re.compile(r"\S+\s*|\s+")


class BriefingDecision(BaseModel):
    """Structured decision on whether a finished session deserves a user briefing."""

    should_brief: bool = Field(default=False, description="True only for significant findings")
    title: str | None = Field(default=None, description="Specific briefing title")
    summary: str | None = Field(default=None, description="One or two sentences for the inbox")
    full_message: str | None = Field(default=None, description="Full briefing content")


@dataclass(slots=True)
class Acknowledgment:
    """Persisted acknowledgment of a user message and the task it queued.

    ``stream()`` replays the already-stored text, so it may be consumed any
    number of times.
    """

    text: str
    task: TaskView

    async def stream(self) -> AsyncIterator[str]:
        for chunk in _CHUNK_PATTERN.findall(self.text):
            yield chunk
            await asyncio.sleep(0)


class Agent:
    """One agent's behaviour on top of the queue, thread and knowledge stores."""

    def __init__(  # noqa: PLR0913
        self,
        view: AgentView,
        *,
        repository: AgentRepository,
        queue: TaskQueue,
        threads: ThreadManager,
        llm: LlmClient,
        tools: ToolExecutor,
        session_settings: SessionSettings,
        runner_settings: RunnerSettings,
    ) -> None:
        self.view = view
        self.repository = repository
        self.queue = queue
        self.threads = threads
        self.llm = llm
        self.tools = tools
        self.session_settings = session_settings
        self.runner_settings = runner_settings
        self._background: set[asyncio.Task[Any]] = set()
        self._session_token: str | None = None

    @property
    def agent_id(self) -> str:
        return self.view.agent_id

    @property
    def is_lead(self) -> bool:
        return self.view.is_lead

    # Foreground

    async def handle_user_message(self, content: str) -> Acknowledgment:
        """Acknowledge a user message and queue the real work as a task.

        The acknowledgment is generated and persisted before anything is
        streamed. Memory extraction runs detached and never fails the request.
        """

        memories = self.repository.list_memories(
            self.agent_id,
            limit=self.session_settings.memory_context_limit,
        )
        self.repository.append_message(
            self.agent_id,
            ConversationMode.FOREGROUND,
            MessageRole.USER,
            content,
        )
        acknowledgment = await self._generate_acknowledgment(
            content,
            system_prompt=self._foreground_system_prompt(build_memory_context_block(memories)),
        )
        ack_message = self.repository.append_message(
            self.agent_id,
            ConversationMode.FOREGROUND,
            MessageRole.ASSISTANT,
            acknowledgment,
        )
        task = self.queue.enqueue(
            TaskCreate(
                assigned_to_id=self.agent_id,
                owner=self.view.owner,
                task=content,
                source=TaskSource.USER,
            ),
        )
        self._spawn_background(
            self._extract_and_store_memories(content, acknowledgment, ack_message.message_id),
            name=f"memory-extraction-{self.agent_id}",
        )
        return Acknowledgment(text=acknowledgment, task=task)

    async def wait_for_background(self) -> None:
        """Wait for detached work such as memory extraction; failures stay logged only."""

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # Background

    async def run_work_session(self) -> SessionSummary:
        """Drain this agent's queue inside one fresh thread.

        Returns immediately without side effects when the queue holds no open
        work or another session already holds this agent.
        """

        summary = SessionSummary(agent_id=self.agent_id)
        if not self.queue.queue_status(self.agent_id).has_open_work:
            return summary

        stale_before = utc_now() - timedelta(
            seconds=self.runner_settings.stale_session_after_seconds,
        )
        token = self.repository.try_begin_session(self.agent_id, stale_before=stale_before)
        if token is None:
            logger.debug("Agent %s already has a session running; skipping", self.agent_id)
            return summary

        self._session_token = token
        summary.started = True
        try:
            self._requeue_orphaned_task()
            thread = self.threads.start_session(self.agent_id)
            summary.thread_id = thread.thread_id
            knowledge = self.repository.list_knowledge_items(
                self.agent_id,
                limit=self.session_settings.knowledge_context_limit,
            )
            system_prompt = self._background_system_prompt(build_knowledge_context_block(knowledge))
            logger.info("Agent %s started work session %s", self.view.name, thread.thread_id)

            while self._heartbeat() and (task := self.queue.claim_next(self.agent_id)) is not None:
                summary.processed += 1
                try:
                    await self.process_task_in_thread(
                        thread.thread_id,
                        task,
                        system_prompt=system_prompt,
                    )
                except Exception as error:  # noqa: BLE001
                    message = f"{type(error).__name__}: {error}"
                    logger.warning(
                        "Task %s failed for agent %s: %s",
                        task.task_id,
                        self.agent_id,
                        message,
                    )
                    self.queue.fail(task.task_id, message)
                self._count_outcome(summary, task.task_id)

            summary.knowledge_items = await self._extract_and_store_knowledge(thread.thread_id)
            self.threads.end_session(thread.thread_id)
            if self.is_lead and self._heartbeat():
                summary.briefing_id = await self.decide_briefing(thread.thread_id)
                summary.next_run_at = self._schedule_next_run()
            logger.info(
                "Agent %s finished work session: processed=%d completed=%d failed=%d",
                self.view.name,
                summary.processed,
                summary.completed,
                summary.failed,
            )
        finally:
            self._session_token = None
            if not self.repository.finish_session(self.agent_id, token):
                logger.warning(
                    "Agent %s lost its session lock before finishing; left it to the new holder",
                    self.agent_id,
                )
        return summary

    async def process_task_in_thread(
        self,
        thread_id: str,
        task: TaskView,
        *,
        system_prompt: str | None = None,
    ) -> str:
        """Run one task through the model with tools; returns the result text."""

        self.threads.append(thread_id, MessageRole.USER, task.task)
        context = [
            LlmMessage(role=message.role.value, content=message.content)
            for message in self.threads.build_context(thread_id)
        ]
        tool_context = ToolContext(
            agent_id=self.agent_id,
            owner=self.view.owner,
            is_lead=self.is_lead,
            task_id=task.task_id,
            task_source=task.source,
        )
        specs = tool_specs(is_lead=self.is_lead)
        max_steps = self.session_settings.max_tool_steps
        tool_log: list[dict[str, Any]] = []
        text = ""

        for _ in range(max_steps):
            response = await self.llm.generate(context, system_prompt=system_prompt, tools=specs)
            self._heartbeat()
            text = response.text
            if not response.tool_calls:
                break
            context.append(
                LlmMessage(role="assistant", content=response.text, tool_calls=response.tool_calls),
            )
            for call in response.tool_calls:
                result = await self.tools.execute(call.name, call.arguments, tool_context)
                tool_log.append(
                    {
                        "name": call.name,
                        "arguments": call.arguments,
                        "success": result.success,
                        "error": result.error,
                    },
                )
                context.append(
                    LlmMessage(role="tool", content=result.to_content(), tool_call_id=call.call_id),
                )
        else:
            logger.warning(
                "Agent %s reached the tool step limit (%d) on task %s",
                self.agent_id,
                max_steps,
                task.task_id,
            )

        result_text = text.strip() or f"Stopped after {len(tool_log)} tool calls without a reply."
        self.threads.append(
            thread_id,
            MessageRole.ASSISTANT,
            result_text,
            tool_calls=tool_log or None,
        )
        if self.threads.should_compact(thread_id, self.session_settings.compaction_threshold):
            await self._compact(thread_id)
        if not self.queue.complete_with_result(task.task_id, result_text):
            logger.debug("Task %s was already finished by a tool call", task.task_id)
        return result_text

    async def decide_briefing(self, thread_id: str) -> str | None:
        """Let a lead decide whether the session's findings deserve a briefing.

        Returns the briefing id, or ``None`` when no briefing was published.
        """

        if not self.is_lead:
            return None
        produced = [
            message.content
            for message in self.threads.build_context(thread_id)
            if message.role == MessageRole.ASSISTANT
        ]
        if not produced:
            return None

        try:
            decision = await self.llm.generate_object(
                [LlmMessage(role="user", content="\n\n---\n\n".join(produced))],
                BriefingDecision,
                system_prompt=BRIEFING_DECISION_PROMPT.format(name=self.view.name),
            )
        except LlmError as error:
            logger.warning("Briefing decision failed for agent %s: %s", self.agent_id, error)
            return None
        if not decision.should_brief:
            return None
        if not (decision.title and decision.summary and decision.full_message):
            logger.warning("Agent %s chose to brief but left fields empty", self.agent_id)
            return None

        briefing = self.repository.create_briefing_with_inbox(
            agent_id=self.agent_id,
            owner=self.view.owner,
            briefing=BriefingWrite(
                title=decision.title,
                summary=decision.summary,
                content=decision.full_message,
            ),
        )
        self.repository.append_message(
            self.agent_id,
            ConversationMode.FOREGROUND,
            MessageRole.ASSISTANT,
            decision.full_message,
        )
        return briefing.briefing_id

    def _schedule_next_run(self) -> datetime:
        interval = timedelta(seconds=self.runner_settings.lead_rerun_interval_seconds)
        next_run_at = utc_now() + interval
        self.repository.set_next_run_at(self.agent_id, next_run_at)
        return next_run_at

    def _heartbeat(self) -> bool:
        """Refresh the session heartbeat; False once another session took the lock."""

        if self._session_token is None:
            return True
        if self.repository.touch_session(self.agent_id, self._session_token):
            return True
        logger.warning("Agent %s session lock was reclaimed; stopping work", self.agent_id)
        return False

    def _requeue_orphaned_task(self) -> None:
        # Holding the session lock, any in-progress task is left from a dead session.
        orphan = self.queue.current_task(self.agent_id)
        if orphan is None:
            return
        replacement = self.queue.abandon_and_requeue(
            orphan.task_id,
            reason="Abandoned: the session processing this task ended unexpectedly",
        )
        logger.warning(
            "Requeued orphaned task %s for agent %s as %s",
            orphan.task_id,
            self.agent_id,
            replacement.task_id if replacement else None,
        )

    def _count_outcome(self, summary: SessionSummary, task_id: int) -> None:
        task = self.queue.get_task(task_id)
        if task is not None and task.status == TaskStatus.COMPLETED:
            summary.completed += 1
        else:
            summary.failed += 1

    async def _compact(self, thread_id: str) -> None:
        messages = self.threads.build_context(thread_id)
        keep_recent = self.session_settings.compaction_keep_recent
        prefix = messages[: max(0, len(messages) - keep_recent)]
        summary_text = ""
        # Long prefixes are folded in chunk by chunk so no message is dropped.
        for chunk in chunk_transcript(prefix, max_chars=TRANSCRIPT_MAX_CHARS):
            content = (
                f"Summary so far:\n{summary_text}\n\nContinue with:\n{chunk}"
                if summary_text
                else chunk
            )
            try:
                response = await self.llm.generate(
                    [LlmMessage(role="user", content=content)],
                    system_prompt=COMPACTION_PROMPT,
                )
            except LlmError as error:
                logger.warning("Thread %s compaction skipped: %s", thread_id, error)
                return
            summary_text = response.text.strip() or summary_text
        if not summary_text:
            logger.warning("Thread %s compaction skipped: empty summary", thread_id)
            return
        self.threads.compact_with_summary(thread_id, summary_text, keep_recent=keep_recent)

    async def _extract_and_store_knowledge(self, thread_id: str) -> int:
        try:
            items = await extract_knowledge(
                self.llm,
                role=self.view.role,
                transcript=self.threads.build_context(thread_id),
            )
        except LlmError as error:
            logger.warning("Knowledge extraction failed for agent %s: %s", self.agent_id, error)
            return 0
        for item in items:
            self.repository.add_knowledge_item(
                self.agent_id,
                item.type,
                item.content,
                confidence=item.confidence,
                source_thread_id=thread_id,
            )
        return len(items)

    async def _generate_acknowledgment(self, content: str, *, system_prompt: str) -> str:
        try:
            response = await self.llm.generate(
                [LlmMessage(role="user", content=content)],
                system_prompt=f"{system_prompt}\n\n{ACKNOWLEDGMENT_PROMPT}",
                max_tokens=self.session_settings.acknowledgment_max_tokens,
            )
        except LlmError as error:
            logger.warning(
                "Acknowledgment generation failed for agent %s: %s",
                self.agent_id,
                error,
            )
            return FALLBACK_ACKNOWLEDGMENT
        return response.text.strip() or FALLBACK_ACKNOWLEDGMENT

    async def _extract_and_store_memories(
        self,
        user_message: str,
        assistant_response: str,
        source_message_id: int,
    ) -> None:
        memories = await extract_memories(
            self.llm,
            role=self.view.role,
            user_message=user_message,
            assistant_response=assistant_response,
        )
        for memory in memories:
            self.repository.add_memory(
                self.agent_id,
                memory.type,
                memory.content,
                source_message_id=source_message_id,
            )

    def _spawn_background(self, coroutine: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.create_task(coroutine, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Background job %s failed: %s", task.get_name(), error)

    def _base_prompt(self) -> str:
        return self.view.system_prompt or DEFAULT_AGENT_PROMPT.format(
            name=self.view.name,
            role=self.view.role,
        )

    def _foreground_system_prompt(self, memory_block: str) -> str:
        base = self._base_prompt()
        return f"{base}\n\n{memory_block}" if memory_block else base

    def _background_system_prompt(self, knowledge_block: str) -> str:
        rules = LEAD_WORK_RULES if self.is_lead else SUBORDINATE_WORK_RULES
        prompt = f"{self._base_prompt()}\n{rules}"
        return f"{prompt}\n{knowledge_block}" if knowledge_block else prompt

"""Process-wide scheduler that dispatches agent work sessions."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from crew_runtime.agents.agent import Agent
from crew_runtime.agents.models import (
    AgentStatus,
    AgentView,
    SessionSummary,
    TaskCreate,
    TaskSource,
)
from crew_runtime.agents.prompts import SCHEDULED_CHECK_IN_TASK
from crew_runtime.agents.repository import AgentRepository
from crew_runtime.agents.task_queue import TaskQueue
from crew_runtime.config import RunnerSettings
from crew_runtime.storage.common import utc_now

logger = logging.getLogger(__name__)

AgentFactory = Callable[[AgentView], Agent]


@dataclass(slots=True)
class RunnerSummary:
    """Aggregate scheduler counters for CLI reporting."""

    ticks: int = 0
    sessions: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    session_errors: int = 0
    check_ins: int = 0
    requeued: int = 0

    def add_session(self, summary: SessionSummary) -> None:
        self.sessions += 1
        self.processed += summary.processed
        self.completed += summary.completed
        self.failed += summary.failed


class Runner:
    """Polls for agents with due work and runs one session per agent at a time.

    The scheduler is advisory: the agent's persisted session lock is what
    prevents overlapping sessions, here or in another process.
    """

    def __init__(
        self,
        *,
        repository: AgentRepository,
        queue: TaskQueue,
        agent_factory: AgentFactory,
        settings: RunnerSettings,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.agent_factory = agent_factory
        self.settings = settings
        self.summary = RunnerSummary()
        self.queue.on_enqueued = self.notify_task_queued
        self._wake_signals: set[str] = set()
        self._wake_event = asyncio.Event()
        self._active: dict[str, asyncio.Task[SessionSummary | None]] = {}
        self._stop_requested = False

    def notify_task_queued(self, agent_id: str) -> None:
        """Immediate-wake signal: consider ``agent_id`` on the next tick, now."""

        self._wake_signals.add(agent_id)
        self._wake_event.set()

    def stop(self) -> None:
        self._stop_requested = True
        self._wake_event.set()

    @property
    def active_agent_ids(self) -> set[str]:
        return set(self._active)

    def recover(self) -> int:
        """Release session locks left behind by a crashed process."""

        released = self.repository.release_running_agents()
        if released:
            logger.warning("Released %d agents left running by a previous process", released)
        return released

    async def run_once(self) -> RunnerSummary:
        """Run one tick and wait for the sessions it dispatched."""

        dispatched = self.tick()
        if dispatched:
            await asyncio.gather(*dispatched)
        return self.summary

    async def run_forever(self) -> RunnerSummary:
        """Tick until ``stop()``; in-flight sessions are awaited before returning."""

        self.recover()
        logger.info(
            "Runner started: poll_interval=%.1fs lead_rerun=%ss",
            self.settings.poll_interval_seconds,
            self.settings.lead_rerun_interval_seconds,
        )
        with self._signal_handlers():
            try:
                while not self._stop_requested:
                    self.tick()
                    await self._sleep_until_woken()
            finally:
                if self._active:
                    logger.info("Waiting for %d running sessions", len(self._active))
                    await asyncio.gather(*self._active.values(), return_exceptions=True)
        logger.info("Runner stopped after %d ticks", self.summary.ticks)
        return self.summary

    def tick(self) -> list[asyncio.Task[SessionSummary | None]]:
        """Compute the due set and dispatch a session task per agent.

        Must be called from within a running event loop.
        """

        now = utc_now()
        self.summary.ticks += 1
        self.summary.requeued += self.requeue_stale_tasks(now=now)
        due = self.compute_due_agents(now=now)

        dispatched: list[asyncio.Task[SessionSummary | None]] = []
        for agent_id in sorted(due):
            if agent_id in self._active:
                logger.debug("Agent %s still has a session in this process", agent_id)
                continue
            view = self.repository.get_agent(agent_id)
            if view is None or view.status == AgentStatus.PAUSED:
                continue
            task = asyncio.create_task(self._run_session(view), name=f"work-session-{agent_id}")
            self._active[agent_id] = task
            task.add_done_callback(lambda _, key=agent_id: self._active.pop(key, None))
            dispatched.append(task)
        if dispatched:
            logger.info("Tick %d dispatched %d sessions", self.summary.ticks, len(dispatched))
        return dispatched

    def compute_due_agents(self, *, now: datetime) -> set[str]:
        """Union of agents with open work, due leads and woken agents.

        Agents in backoff are left out unless explicitly woken.
        """

        in_backoff = self.repository.agent_ids_in_backoff(now=now)
        due = self.queue.agent_ids_with_open_work() - in_backoff

        rerun_interval = timedelta(seconds=self.settings.lead_rerun_interval_seconds)
        for lead in self.repository.leads_due(now=now):
            due.add(lead.agent_id)
            # A lead mid-session still carries its old next_run_at until the session ends.
            busy = (
                lead.status == AgentStatus.RUNNING
                or lead.agent_id in self._active
                or self.queue.queue_status(lead.agent_id).has_open_work
            )
            if not busy:
                self.repository.set_next_run_at(lead.agent_id, now + rerun_interval)
                self.queue.enqueue(
                    TaskCreate(
                        assigned_to_id=lead.agent_id,
                        owner=lead.owner,
                        task=SCHEDULED_CHECK_IN_TASK,
                        source=TaskSource.SYSTEM,
                    ),
                )
                self.summary.check_ins += 1

        due |= self._wake_signals
        self._wake_signals.clear()
        if not self._stop_requested:
            self._wake_event.clear()
        return due

    def requeue_stale_tasks(self, *, now: datetime) -> int:
        """Fail and re-enqueue in-progress tasks whose session is gone."""

        started_before = now - timedelta(seconds=self.settings.stale_task_after_seconds)
        requeued = 0
        for task in self.queue.list_stale_in_progress(started_before=started_before):
            if task.assigned_to_id in self._active:
                continue
            agent = self.repository.get_agent(task.assigned_to_id)
            if agent is None or agent.status == AgentStatus.RUNNING:
                continue
            replacement = self.queue.abandon_and_requeue(
                task.task_id,
                reason=(
                    "Abandoned: in progress for more than "
                    f"{self.settings.stale_task_after_seconds}s without a running session"
                ),
            )
            if replacement is not None:
                requeued += 1
                logger.warning(
                    "Requeued stale task %s for agent %s as %s",
                    task.task_id,
                    task.assigned_to_id,
                    replacement.task_id,
                )
        return requeued

    def compute_backoff_delay(self, attempt: int) -> int:
        return min(
            self.settings.backoff_max_seconds,
            self.settings.backoff_base_seconds * (2 ** max(attempt - 1, 0)),
        )

    async def _run_session(self, view: AgentView) -> SessionSummary | None:
        try:
            agent = self.agent_factory(view)
            summary = await agent.run_work_session()
        except Exception:
            logger.exception("Work session for agent %s (%s) crashed", view.name, view.agent_id)
            self.summary.session_errors += 1
            self._record_failure(view.agent_id)
            return None

        if summary.started:
            self.summary.add_session(summary)
            if summary.completed > 0:
                self.repository.clear_backoff(view.agent_id)
            elif summary.failed > 0:
                self._record_failure(view.agent_id)
        return summary

    def _record_failure(self, agent_id: str) -> None:
        agent = self.repository.get_agent(agent_id)
        if agent is None:
            return
        attempt = agent.backoff_attempt_count + 1
        delay = self.compute_backoff_delay(attempt)
        self.repository.set_backoff(
            agent_id,
            attempt_count=attempt,
            next_run_at=utc_now() + timedelta(seconds=delay),
        )
        logger.warning(
            "Agent %s backing off for %ss after %d failed sessions",
            agent_id,
            delay,
            attempt,
        )

    async def _sleep_until_woken(self) -> None:
        try:
            await asyncio.wait_for(
                self._wake_event.wait(),
                timeout=self.settings.poll_interval_seconds,
            )
        except TimeoutError:
            pass
        self._wake_event.clear()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.stop)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform or outside the main thread.
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

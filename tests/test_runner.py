from __future__ import annotations

import asyncio
from datetime import timedelta

import allure
import pytest

from crew_runtime.agents.llm import LlmError
from crew_runtime.agents.models import (
    AgentStatus,
    AgentView,
    TaskCreate,
    TaskSource,
    TaskStatus,
)
from crew_runtime.agents.prompts import SCHEDULED_CHECK_IN_TASK
from crew_runtime.agents.services import CreateOwner, CrewServices
from crew_runtime.storage.common import utc_now

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Scheduler"),
]


def _lead(services: CrewServices) -> AgentView:
    return services.create_team(CreateOwner(name="Research", purpose="Track competitors")).lead


def _enqueue(services: CrewServices, agent: AgentView, task: str):
    return services.queue.enqueue(
        TaskCreate(
            assigned_to_id=agent.agent_id,
            owner=agent.owner,
            task=task,
            source=TaskSource.USER,
        ),
    )


def test_backoff_delay_doubles_up_to_the_cap(services: CrewServices) -> None:
    runner = services.build_runner()

    delays = [runner.compute_backoff_delay(attempt) for attempt in (1, 2, 3, 4, 10)]

    assert delays == [60, 120, 240, 480, 3600]


def test_due_set_includes_agents_with_open_work(services: CrewServices) -> None:
    lead = _lead(services)
    subordinate = services.add_subordinate(lead.agent_id, name="Bob", role="Analyst")
    runner = services.build_runner()

    due = runner.compute_due_agents(now=utc_now())

    assert due == {lead.agent_id}
    assert subordinate.agent_id not in due


def test_due_lead_without_work_gets_a_check_in_task(services: CrewServices) -> None:
    team = services.repository.create_team(name="Quiet team")
    lead = services.repository.create_agent(
        owner=team.owner,
        name="Ada",
        role="Team lead",
        next_run_at=utc_now() - timedelta(minutes=1),
    )
    runner = services.build_runner()

    due = runner.compute_due_agents(now=utc_now())

    assert due == {lead.agent_id}
    pending = services.queue.list_tasks(agent_id=lead.agent_id, status=TaskStatus.PENDING)
    assert [(task.task, task.source) for task in pending] == [
        (SCHEDULED_CHECK_IN_TASK, TaskSource.SYSTEM),
    ]
    assert runner.summary.check_ins == 1


def test_running_lead_does_not_get_a_second_check_in(services: CrewServices) -> None:
    team = services.repository.create_team(name="Quiet team")
    lead = services.repository.create_agent(
        owner=team.owner,
        name="Ada",
        role="Team lead",
        next_run_at=utc_now() - timedelta(minutes=1),
    )
    runner = services.build_runner()
    runner.compute_due_agents(now=utc_now())
    rescheduled = services.repository.require_agent(lead.agent_id).next_run_at
    assert rescheduled is not None
    assert rescheduled > utc_now()

    assert services.repository.try_begin_session(lead.agent_id)
    claimed = services.queue.claim_next(lead.agent_id)
    assert claimed is not None
    runner.compute_due_agents(now=utc_now())
    runner.compute_due_agents(now=utc_now())
    # Still overdue while its session runs, e.g. after a crash left next_run_at behind.
    services.repository.set_next_run_at(lead.agent_id, utc_now() - timedelta(minutes=1))
    due = runner.compute_due_agents(now=utc_now())

    assert lead.agent_id in due
    check_ins = [
        task
        for task in services.queue.list_tasks(agent_id=lead.agent_id)
        if task.task == SCHEDULED_CHECK_IN_TASK
    ]
    assert [task.task_id for task in check_ins] == [claimed.task_id]
    assert runner.summary.check_ins == 1


def test_backoff_suppresses_polling_but_not_wake_signals(services: CrewServices) -> None:
    lead = _lead(services)
    services.repository.set_backoff(
        lead.agent_id,
        attempt_count=1,
        next_run_at=utc_now() + timedelta(minutes=5),
    )
    runner = services.build_runner()

    assert runner.compute_due_agents(now=utc_now()) == set()

    _enqueue(services, lead, "Urgent request")
    assert runner.compute_due_agents(now=utc_now()) == {lead.agent_id}
    assert runner.compute_due_agents(now=utc_now()) == set()


def test_stale_tasks_are_requeued_only_without_a_running_session(
    services: CrewServices,
) -> None:
    lead = _lead(services)
    claimed = services.queue.claim_next(lead.agent_id)
    assert claimed is not None
    runner = services.build_runner()
    later = utc_now() + timedelta(hours=1)

    assert services.repository.try_begin_session(lead.agent_id)
    assert runner.requeue_stale_tasks(now=later) == 0

    services.repository.finish_session(lead.agent_id)
    assert runner.requeue_stale_tasks(now=later) == 1
    abandoned = services.queue.get_task(claimed.task_id)
    assert abandoned is not None
    assert abandoned.status == TaskStatus.FAILED
    replacement = services.queue.list_tasks(agent_id=lead.agent_id, status=TaskStatus.PENDING)
    assert [task.source for task in replacement] == [TaskSource.SYSTEM]


@pytest.mark.anyio
async def test_run_once_processes_due_agents(services: CrewServices) -> None:
    lead = _lead(services)
    runner = services.build_runner()

    summary = await runner.run_once()

    assert summary.ticks == 1
    assert summary.sessions == 1
    assert summary.completed == 1
    assert runner.active_agent_ids == set()
    stored = services.repository.require_agent(lead.agent_id)
    assert stored.status == AgentStatus.IDLE
    assert stored.next_run_at is not None


@pytest.mark.anyio
async def test_paused_agents_are_not_dispatched(services: CrewServices) -> None:
    lead = _lead(services)
    services.repository.set_agent_status(lead.agent_id, AgentStatus.PAUSED)
    runner = services.build_runner()

    summary = await runner.run_once()

    assert summary.sessions == 0
    assert services.queue.queue_status(lead.agent_id).pending_count == 1


@pytest.mark.anyio
async def test_failed_session_backs_off_and_success_clears_it(
    services: CrewServices,
    llm,
) -> None:
    lead = _lead(services)
    llm.script(LlmError("provider down"))
    runner = services.build_runner()

    await runner.run_once()

    backed_off = services.repository.require_agent(lead.agent_id)
    assert backed_off.backoff_attempt_count == 1
    assert backed_off.backoff_next_run_at is not None
    assert backed_off.backoff_next_run_at > utc_now() + timedelta(seconds=30)

    _enqueue(services, lead, "Try again")
    summary = await runner.run_once()

    assert summary.completed == 1
    recovered = services.repository.require_agent(lead.agent_id)
    assert recovered.backoff_attempt_count == 0
    assert recovered.backoff_next_run_at is None


@pytest.mark.anyio
async def test_crashing_session_is_isolated(services: CrewServices) -> None:
    lead = _lead(services)

    def _broken_factory(view: AgentView):
        raise RuntimeError("cannot build agent")

    runner = services.build_runner()
    runner.agent_factory = _broken_factory

    summary = await runner.run_once()

    assert summary.session_errors == 1
    assert services.repository.require_agent(lead.agent_id).backoff_attempt_count == 1


@pytest.mark.anyio
async def test_run_forever_until_stopped(services: CrewServices) -> None:
    lead = _lead(services)
    services.settings.runner.poll_interval_seconds = 0.05
    services.repository.try_begin_session(lead.agent_id)
    runner = services.build_runner()

    loop_task = asyncio.create_task(runner.run_forever())
    for _ in range(100):
        if not services.queue.queue_status(lead.agent_id).has_open_work:
            break
        await asyncio.sleep(0.05)
    runner.stop()
    summary = await asyncio.wait_for(loop_task, timeout=10)

    assert summary.completed == 1
    assert summary.ticks >= 1
    assert services.repository.require_agent(lead.agent_id).status == AgentStatus.IDLE

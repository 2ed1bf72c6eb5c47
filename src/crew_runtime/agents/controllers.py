"""Controllers for agent runtime CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from crew_runtime.agents.models import (
    AgentView,
    AideOwner,
    Owner,
    TaskCreate,
    TaskSource,
    TaskStatus,
    TeamOwner,
)
from crew_runtime.agents.services import CreateOwner, CrewServices
from crew_runtime.config import Settings

PREVIEW_CHARS = 160


@dataclass(slots=True)
class DbInitCommand:
    db_path: Path | None


@dataclass(slots=True)
class OwnerCreateCommand:
    """CLI input for team/aide creation."""

    db_path: Path | None
    kind: str
    name: str
    purpose: str | None
    lead_name: str | None
    lead_role: str


@dataclass(slots=True)
class AgentAddCommand:
    """CLI input for adding a subordinate to a lead."""

    db_path: Path | None
    lead_id: str
    name: str
    role: str
    system_prompt: str | None


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None
    owner_id: str | None


@dataclass(slots=True)
class MessageSendCommand:
    """CLI input for a foreground user message."""

    db_path: Path | None
    agent_id: str
    content: str


@dataclass(slots=True)
class TaskEnqueueCommand:
    """CLI input for a direct task enqueue."""

    db_path: Path | None
    agent_id: str
    task: str
    priority: int


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    agent_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class RunnerRunCommand:
    """CLI input for the scheduler."""

    db_path: Path | None
    once: bool


@dataclass(slots=True)
class BriefingsListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class InboxListCommand:
    db_path: Path | None
    unread_only: bool
    limit: int


@dataclass(slots=True)
class ThreadShowCommand:
    """CLI input for showing a work-session thread."""

    db_path: Path | None
    agent_id: str
    thread_id: str | None


class CrewCliController:
    """Coordinates owner bootstrap, messaging, queue inspection and the runner."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings):
            pass
        return [f"Database ready: {settings.db_path}"]

    def create_owner(self, command: OwnerCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload = CreateOwner(
            name=command.name,
            purpose=command.purpose,
            lead_name=command.lead_name,
            lead_role=command.lead_role,
        )
        with _services(settings) as services:
            if command.kind == "aide":
                bootstrap = services.create_aide(payload)
            else:
                bootstrap = services.create_team(payload)

        owner_id = _owner_id(bootstrap.owner.owner)
        return [
            f"Created {command.kind}: {owner_id} name={bootstrap.owner.name}",
            f"Lead agent: {bootstrap.lead.agent_id} name={bootstrap.lead.name}",
            f"Bootstrap task: {bootstrap.bootstrap_task.task_id}",
        ]

    def add_agent(self, command: AgentAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            agent = services.add_subordinate(
                command.lead_id,
                name=command.name,
                role=command.role,
                system_prompt=command.system_prompt,
            )
        return [f"Subordinate added: {agent.agent_id} name={agent.name} role={agent.role}"]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            agents = services.repository.list_agents()
            statuses = {
                agent.agent_id: services.queue.queue_status(agent.agent_id) for agent in agents
            }
        if command.owner_id is not None:
            agents = [agent for agent in agents if _owner_id(agent.owner) == command.owner_id]

        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            queue = statuses[agent.agent_id]
            lines.append(
                f"  {agent.agent_id} {_describe_agent(agent)} status={agent.status.value} "
                f"pending={queue.pending_count} in_progress={queue.in_progress_count} "
                f"next_run_at={agent.next_run_at.isoformat() if agent.next_run_at else '-'} "
                f"backoff={agent.backoff_attempt_count}",
            )
        return lines

    def send_message(self, command: MessageSendCommand) -> list[str]:
        settings = _settings(command.db_path)
        return asyncio.run(self._send_message(settings, command))

    def enqueue_task(self, command: TaskEnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            agent = services.repository.require_agent(command.agent_id)
            task = services.queue.enqueue(
                TaskCreate(
                    assigned_to_id=agent.agent_id,
                    owner=agent.owner,
                    task=command.task,
                    source=TaskSource.USER,
                    priority=command.priority,
                ),
            )
        return [
            f"Task enqueued: task_id={task.task_id} agent={agent.name} status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _services(settings) as services:
            tasks = services.queue.list_tasks(
                agent_id=command.agent_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} agent={task.assigned_to_id} status={task.status.value} "
                f"source={task.source.value} priority={task.priority} "
                f"created_at={task.created_at.isoformat()} task={_preview(task.task)}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            details = services.queue.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Agent: {task.assigned_to_id} (assigned by {task.assigned_by_id})",
            f"Status: {task.status.value}",
            f"Source: {task.source.value}",
            f"Priority: {task.priority}",
            f"Task: {task.task}",
            f"Result: {task.result or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def run_runner(self, command: RunnerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        return asyncio.run(self._run_runner(settings, once=command.once))

    def list_briefings(self, command: BriefingsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            briefings = services.repository.list_briefings(limit=command.limit)

        lines = [f"Briefings: {len(briefings)}"]
        for briefing in briefings:
            lines.append(
                f"  {briefing.briefing_id} {briefing.created_at.isoformat()} "
                f"{briefing.title}: {_preview(briefing.summary)}",
            )
        return lines

    def list_inbox(self, command: InboxListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            items = services.repository.list_inbox(
                unread_only=command.unread_only,
                limit=command.limit,
            )

        lines = [f"Inbox items: {len(items)}"]
        for item in items:
            lines.append(
                f"  {item.inbox_item_id} type={item.type.value} "
                f"read={'yes' if item.read_at else 'no'} {item.title}: {_preview(item.content)}",
            )
        return lines

    def show_thread(self, command: ThreadShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _services(settings) as services:
            if command.thread_id is not None:
                thread = services.threads.get_thread(command.thread_id)
            else:
                recent = services.threads.list_threads(command.agent_id, limit=1)
                thread = recent[0] if recent else None
            if thread is None or thread.agent_id != command.agent_id:
                return [f"No thread found for agent {command.agent_id}"]
            messages = services.threads.build_context(thread.thread_id)

        lines = [
            f"Thread: {thread.thread_id} status={thread.status.value} "
            f"created_at={thread.created_at.isoformat()}",
            f"Messages: {len(messages)}",
        ]
        for message in messages:
            tools = f" tools={len(message.tool_calls)}" if message.tool_calls else ""
            lines.append(
                f"  #{message.sequence_number} {message.role.value}{tools}: "
                f"{_preview(message.content)}",
            )
        return lines

    async def _send_message(self, settings: Settings, command: MessageSendCommand) -> list[str]:
        services = CrewServices.open(settings)
        try:
            agent = services.agent(command.agent_id)
            acknowledgment = await agent.handle_user_message(command.content)
            chunks = [chunk async for chunk in acknowledgment.stream()]
            await agent.wait_for_background()
        finally:
            await services.aclose()
        return [
            "".join(chunks),
            f"Task queued: task_id={acknowledgment.task.task_id}",
        ]

    async def _run_runner(self, settings: Settings, *, once: bool) -> list[str]:
        services = CrewServices.open(settings)
        try:
            runner = services.build_runner()
            summary = await runner.run_once() if once else await runner.run_forever()
        finally:
            await services.aclose()
        return [
            "Runner summary: "
            f"ticks={summary.ticks} sessions={summary.sessions} "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} session_errors={summary.session_errors} "
            f"check_ins={summary.check_ins} requeued={summary.requeued}",
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _owner_id(owner: Owner) -> str:
    if isinstance(owner, TeamOwner):
        return owner.team_id
    if isinstance(owner, AideOwner):
        return owner.aide_id
    raise TypeError(f"Unknown owner type: {owner!r}")


def _describe_agent(agent: AgentView) -> str:
    kind = "lead" if agent.is_lead else f"subordinate(of {agent.parent_agent_id})"
    return f"name={agent.name} role={agent.role} kind={kind}"


def _preview(text: str) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= PREVIEW_CHARS:
        return flattened
    return flattened[: PREVIEW_CHARS - 3] + "..."


@contextmanager
def _services(settings: Settings) -> Iterator[CrewServices]:
    services = CrewServices.open(settings)
    try:
        yield services
    finally:
        services.database.close()

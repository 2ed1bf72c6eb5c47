"""CLI entrypoint for crew-runtime."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from crew_runtime import __version__
from crew_runtime.agents.controllers import (
    AgentAddCommand,
    AgentListCommand,
    BriefingsListCommand,
    CrewCliController,
    DbInitCommand,
    InboxListCommand,
    MessageSendCommand,
    OwnerCreateCommand,
    RunnerRunCommand,
    TaskEnqueueCommand,
    TaskInspectCommand,
    TaskListCommand,
    ThreadShowCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CrewCliController()
TASK_STATUSES = ("pending", "in_progress", "completed", "failed")

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="crew-runtime")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for runtime diagnostics.",
)
def crew_runtime(log_level: str) -> None:
    """Autonomous agent teams: task queues, work sessions and a scheduler."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@crew_runtime.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@db_path_option
def db_init(db_path: Path | None) -> None:
    """Create the database and apply migrations."""

    _emit_lines(_invoke(CONTROLLER.init_db, DbInitCommand(db_path=db_path)))


@crew_runtime.group()
def team() -> None:
    """Team commands."""


@team.command("create")
@db_path_option
@click.argument("name")
@click.option("--purpose", default=None, help="What the team is for.")
@click.option("--lead-name", default=None, help="Lead agent name. Defaults to '<name> Lead'.")
@click.option("--lead-role", default="Team lead", show_default=True, help="Lead agent role.")
def team_create(
    db_path: Path | None,
    name: str,
    purpose: str | None,
    lead_name: str | None,
    lead_role: str,
) -> None:
    """Create a team with its lead agent and a bootstrap task."""

    _emit_lines(
        _invoke(
            CONTROLLER.create_owner,
            OwnerCreateCommand(
                db_path=db_path,
                kind="team",
                name=name,
                purpose=purpose,
                lead_name=lead_name,
                lead_role=lead_role,
            ),
        ),
    )


@crew_runtime.group()
def aide() -> None:
    """Aide commands."""


@aide.command("create")
@db_path_option
@click.argument("name")
@click.option("--purpose", default=None, help="What the aide helps with.")
@click.option("--lead-name", default=None, help="Lead agent name. Defaults to '<name> Lead'.")
@click.option("--lead-role", default="Personal aide", show_default=True, help="Lead agent role.")
def aide_create(
    db_path: Path | None,
    name: str,
    purpose: str | None,
    lead_name: str | None,
    lead_role: str,
) -> None:
    """Create a personal aide with its lead agent and a bootstrap task."""

    _emit_lines(
        _invoke(
            CONTROLLER.create_owner,
            OwnerCreateCommand(
                db_path=db_path,
                kind="aide",
                name=name,
                purpose=purpose,
                lead_name=lead_name,
                lead_role=lead_role,
            ),
        ),
    )


@crew_runtime.group()
def agent() -> None:
    """Agent commands."""


@agent.command("add")
@db_path_option
@click.option("--lead-id", required=True, help="Lead agent that will own the subordinate.")
@click.option("--name", required=True, help="Subordinate name.")
@click.option("--role", required=True, help="Subordinate role.")
@click.option("--system-prompt", default=None, help="Custom system prompt.")
def agent_add(
    db_path: Path | None,
    lead_id: str,
    name: str,
    role: str,
    system_prompt: str | None,
) -> None:
    """Add a subordinate agent under a lead."""

    _emit_lines(
        _invoke(
            CONTROLLER.add_agent,
            AgentAddCommand(
                db_path=db_path,
                lead_id=lead_id,
                name=name,
                role=role,
                system_prompt=system_prompt,
            ),
        ),
    )


@agent.command("list")
@db_path_option
@click.option("--owner-id", default=None, help="Only agents of this team or aide.")
def agent_list(db_path: Path | None, owner_id: str | None) -> None:
    """List agents with queue depth and scheduling state."""

    _emit_lines(
        _invoke(CONTROLLER.list_agents, AgentListCommand(db_path=db_path, owner_id=owner_id)),
    )


@crew_runtime.group()
def message() -> None:
    """Foreground conversation commands."""


@message.command("send")
@db_path_option
@click.argument("agent_id")
@click.argument("content")
def message_send(db_path: Path | None, agent_id: str, content: str) -> None:
    """Send a message to an agent; prints the acknowledgment and queues the work."""

    _emit_lines(
        _invoke(
            CONTROLLER.send_message,
            MessageSendCommand(db_path=db_path, agent_id=agent_id, content=content),
        ),
    )


@crew_runtime.group()
def task() -> None:
    """Task queue commands."""


@task.command("enqueue")
@db_path_option
@click.argument("agent_id")
@click.argument("description")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
def task_enqueue(db_path: Path | None, agent_id: str, description: str, priority: int) -> None:
    """Enqueue a task for an agent."""

    _emit_lines(
        _invoke(
            CONTROLLER.enqueue_task,
            TaskEnqueueCommand(
                db_path=db_path,
                agent_id=agent_id,
                task=description,
                priority=priority,
            ),
        ),
    )


@task.command("list")
@db_path_option
@click.option("--agent-id", default=None, help="Only tasks assigned to this agent.")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max tasks to show.",
)
def task_list(
    db_path: Path | None,
    agent_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _invoke(
            CONTROLLER.list_tasks,
            TaskListCommand(db_path=db_path, agent_id=agent_id, status=status, limit=limit),
        ),
    )


@task.command("inspect")
@db_path_option
@click.argument("task_id", type=int)
def task_inspect(db_path: Path | None, task_id: int) -> None:
    """Show one task with its event history."""

    _emit_lines(
        _invoke(CONTROLLER.inspect_task, TaskInspectCommand(db_path=db_path, task_id=task_id)),
    )


@crew_runtime.group()
def runner() -> None:
    """Scheduler commands."""


@runner.command("run")
@db_path_option
@click.option("--once", is_flag=True, default=False, help="Run one tick and exit.")
def runner_run(db_path: Path | None, once: bool) -> None:
    """Run the scheduler until interrupted (SIGINT/SIGTERM)."""

    _emit_lines(_invoke(CONTROLLER.run_runner, RunnerRunCommand(db_path=db_path, once=once)))


@crew_runtime.group()
def briefings() -> None:
    """Briefing commands."""


@briefings.command("list")
@db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max briefings to show.",
)
def briefings_list(db_path: Path | None, limit: int) -> None:
    """List briefings, newest first."""

    _emit_lines(
        _invoke(CONTROLLER.list_briefings, BriefingsListCommand(db_path=db_path, limit=limit)),
    )


@crew_runtime.group()
def inbox() -> None:
    """Inbox commands."""


@inbox.command("list")
@db_path_option
@click.option("--unread", is_flag=True, default=False, help="Only unread items.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max items to show.",
)
def inbox_list(db_path: Path | None, unread: bool, limit: int) -> None:
    """List inbox items, newest first."""

    _emit_lines(
        _invoke(
            CONTROLLER.list_inbox,
            InboxListCommand(db_path=db_path, unread_only=unread, limit=limit),
        ),
    )


@crew_runtime.group()
def thread() -> None:
    """Work-session thread commands."""


@thread.command("show")
@db_path_option
@click.argument("agent_id")
@click.option("--thread-id", default=None, help="Thread to show. Defaults to the latest.")
def thread_show(db_path: Path | None, agent_id: str, thread_id: str | None) -> None:
    """Show the messages of an agent's work-session thread."""

    _emit_lines(
        _invoke(
            CONTROLLER.show_thread,
            ThreadShowCommand(db_path=db_path, agent_id=agent_id, thread_id=thread_id),
        ),
    )


def _invoke(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    crew_runtime()

"""Persistent per-agent FIFO task queue with exactly-once-in-flight claims."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from crew_runtime.agents.models import (
    QueueStatus,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskSource,
    TaskStatus,
    TaskView,
    owner_from_columns,
)
from crew_runtime.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from crew_runtime.storage.database import Database
from crew_runtime.storage.sqlmodel_models import AgentTask, AgentTaskEvent

logger = logging.getLogger(__name__)

EnqueueListener = Callable[[str], None]


class TaskQueue:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every status change is a conditional update on the current status, so a
    transition either happens exactly once or reports ``False``/``None``.
    """

    def __init__(self, database: Database, *, on_enqueued: EnqueueListener | None = None) -> None:
        self.database = database
        self.on_enqueued = on_enqueued

    def enqueue(self, payload: TaskCreate) -> TaskView:
        """Insert a pending task and wake the scheduler for its agent."""

        now = utc_now()
        with Session(self.database.engine) as session:
            row = AgentTask(
                **payload.owner.columns(),
                assigned_to_id=payload.assigned_to_id,
                assigned_by_id=payload.assigned_by_id or payload.assigned_to_id,
                task=payload.task,
                status=TaskStatus.PENDING.value,
                source=payload.source.value,
                priority=payload.priority,
                created_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=_task_id(row),
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"source": payload.source.value, "priority": payload.priority},
            )
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)

        logger.debug(
            "Enqueued task %s for agent %s (source=%s)",
            view.task_id,
            view.assigned_to_id,
            view.source.value,
        )
        if self.on_enqueued is not None:
            self.on_enqueued(view.assigned_to_id)
        return view

    def claim_next(self, agent_id: str) -> TaskView | None:
        """Atomically move the agent's next pending task to ``in_progress``.

        Returns ``None`` when nothing is pending, when another caller won the
        race for the last task, or when the agent already has a task in flight.
        """

        while True:
            now = utc_now()
            with Session(self.database.engine) as session:
                candidate = session.exec(
                    select(AgentTask)
                    .where(
                        AgentTask.assigned_to_id == agent_id,
                        AgentTask.status == TaskStatus.PENDING.value,
                    )
                    .order_by(
                        col(AgentTask.priority).desc(),
                        col(AgentTask.created_at).asc(),
                        col(AgentTask.id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                candidate_id = _task_id(candidate)

                try:
                    result = session.exec(
                        sa_update(AgentTask)
                        .where(
                            col(AgentTask.id) == candidate_id,
                            col(AgentTask.status) == TaskStatus.PENDING.value,
                        )
                        .values(
                            status=TaskStatus.IN_PROGRESS.value,
                            started_at=to_db_datetime(now),
                        ),
                    )
                except IntegrityError:
                    session.rollback()
                    logger.debug("Agent %s already has a task in progress", agent_id)
                    return None
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_id=candidate_id,
                    event_type="claimed",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.IN_PROGRESS,
                    details={},
                )
                session.commit()
                claimed = session.exec(select(AgentTask).where(AgentTask.id == candidate_id)).one()
                return _to_task_view(claimed)

    def complete_with_result(self, task_id: int, result: str) -> bool:
        """Mark an in-progress task as completed; ``False`` if it was not in progress."""

        return self._finish(
            task_id=task_id,
            status=TaskStatus.COMPLETED,
            result=result,
            event_type="completed",
        )

    def fail(self, task_id: int, error_message: str) -> bool:
        """Mark an in-progress task as failed; the error text becomes its result."""

        return self._finish(
            task_id=task_id,
            status=TaskStatus.FAILED,
            result=error_message,
            event_type="failed",
        )

    def queue_status(self, agent_id: str) -> QueueStatus:
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(AgentTask.status, func.count())
                .where(
                    AgentTask.assigned_to_id == agent_id,
                    col(AgentTask.status).in_(
                        (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value),
                    ),
                )
                .group_by(AgentTask.status),
            ).all()
        counts = {status: int(count) for status, count in rows}
        return QueueStatus(
            pending_count=counts.get(TaskStatus.PENDING.value, 0),
            in_progress_count=counts.get(TaskStatus.IN_PROGRESS.value, 0),
        )

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.database.engine) as session:
            row = session.exec(select(AgentTask).where(AgentTask.id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def current_task(self, agent_id: str) -> TaskView | None:
        """Return the agent's in-progress task, if any."""

        with Session(self.database.engine) as session:
            row = session.exec(
                select(AgentTask)
                .where(
                    AgentTask.assigned_to_id == agent_id,
                    AgentTask.status == TaskStatus.IN_PROGRESS.value,
                )
                .order_by(col(AgentTask.started_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        agent_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, newest first."""

        with Session(self.database.engine) as session:
            statement = select(AgentTask).order_by(col(AgentTask.id).desc()).limit(limit)
            if agent_id is not None:
                statement = statement.where(AgentTask.assigned_to_id == agent_id)
            if status is not None:
                statement = statement.where(AgentTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: int) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.database.engine) as session:
            task = session.exec(select(AgentTask).where(AgentTask.id == task_id)).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(AgentTaskEvent)
                .where(AgentTaskEvent.task_id == task_id)
                .order_by(col(AgentTaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=_to_task_view(task), events=events)

    def agent_ids_with_open_work(self) -> set[str]:
        """Agents holding at least one pending or in-progress task."""

        with Session(self.database.engine) as session:
            rows = session.exec(
                select(AgentTask.assigned_to_id)
                .where(
                    col(AgentTask.status).in_(
                        (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value),
                    ),
                )
                .distinct(),
            ).all()
        return set(rows)

    def list_stale_in_progress(self, *, started_before: datetime) -> list[TaskView]:
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(AgentTask).where(
                    AgentTask.status == TaskStatus.IN_PROGRESS.value,
                    col(AgentTask.started_at) < to_db_datetime(started_before),
                ),
            ).all()
        return [_to_task_view(row) for row in rows]

    def abandon_and_requeue(self, task_id: int, *, reason: str) -> TaskView | None:
        """Fail an orphaned in-progress task and enqueue a fresh copy of it.

        Both writes share one transaction. Returns the replacement task, or
        ``None`` when the task was no longer in progress.
        """

        now = utc_now()
        with Session(self.database.engine) as session:
            original = session.exec(select(AgentTask).where(AgentTask.id == task_id)).one_or_none()
            if original is None:
                return None
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.id) == task_id,
                    col(AgentTask.status) == TaskStatus.IN_PROGRESS.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    result=reason,
                    completed_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="abandoned",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.FAILED,
                details={"reason": reason},
            )
            replacement = AgentTask(
                team_id=original.team_id,
                aide_id=original.aide_id,
                assigned_to_id=original.assigned_to_id,
                assigned_by_id=original.assigned_by_id,
                task=original.task,
                status=TaskStatus.PENDING.value,
                source=TaskSource.SYSTEM.value,
                priority=original.priority,
                created_at=now,
            )
            session.add(replacement)
            session.flush()
            self._add_event(
                session=session,
                task_id=_task_id(replacement),
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"source": TaskSource.SYSTEM.value, "requeued_from": task_id},
            )
            session.commit()
            session.refresh(replacement)
            view = _to_task_view(replacement)

        if self.on_enqueued is not None:
            self.on_enqueued(view.assigned_to_id)
        return view

    def _finish(
        self,
        *,
        task_id: int,
        status: TaskStatus,
        result: str,
        event_type: str,
    ) -> bool:
        now = utc_now()
        with Session(self.database.engine) as session:
            outcome = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.id) == task_id,
                    col(AgentTask.status) == TaskStatus.IN_PROGRESS.value,
                )
                .values(
                    status=status.value,
                    result=result,
                    completed_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                logger.debug("Task %s is not in progress; %s ignored", task_id, event_type)
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=TaskStatus.IN_PROGRESS,
                status_to=status,
                details={},
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: int,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AgentTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _task_id(row: AgentTask) -> int:
    if row.id is None:
        raise RuntimeError("Task row has no id; flush the session first.")
    return row.id


def _to_task_view(row: AgentTask) -> TaskView:
    return TaskView(
        task_id=_task_id(row),
        owner=owner_from_columns(team_id=row.team_id, aide_id=row.aide_id),
        assigned_to_id=row.assigned_to_id,
        assigned_by_id=row.assigned_by_id,
        task=row.task,
        result=row.result,
        status=TaskStatus(row.status),
        source=TaskSource(row.source),
        priority=row.priority,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )

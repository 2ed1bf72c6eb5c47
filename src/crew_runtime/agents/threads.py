"""Work-session threads: the agent's disposable background scratchpad."""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from crew_runtime.agents.models import (
    MessageRole,
    ThreadMessageView,
    ThreadStatus,
    ThreadView,
)
from crew_runtime.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from crew_runtime.storage.database import Database
from crew_runtime.storage.sqlmodel_models import WorkThread, WorkThreadMessage

logger = logging.getLogger(__name__)

DEFAULT_COMPACTION_THRESHOLD = 50
DEFAULT_KEEP_RECENT = 10


class ThreadManager:
    """Ordered, gapless message buffer for one work session."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def start_session(self, agent_id: str) -> ThreadView:
        """Always create a fresh active thread; prior threads are never resumed."""

        row = WorkThread(
            id=uuid4().hex,
            agent_id=agent_id,
            status=ThreadStatus.ACTIVE.value,
            created_at=utc_now(),
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_thread_view(row)
        logger.debug("Started thread %s for agent %s", view.thread_id, agent_id)
        return view

    def append(
        self,
        thread_id: str,
        role: MessageRole,
        content: str,
        *,
        tool_calls: list[dict[str, Any]] | None = None,
    ) -> ThreadMessageView:
        """Append one message with the next sequence number."""

        with Session(self.database.engine) as session:
            thread = self._require_thread(session, thread_id)
            if thread.status == ThreadStatus.COMPLETED.value:
                raise RuntimeError(f"Thread {thread_id} is completed; append rejected.")
            row = WorkThreadMessage(
                thread_id=thread_id,
                role=role.value,
                content=content,
                tool_calls_json=json.dumps(tool_calls, ensure_ascii=False) if tool_calls else None,
                sequence_number=self._next_sequence(session, thread_id),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def build_context(self, thread_id: str) -> list[ThreadMessageView]:
        """Full ordered history; after compaction this starts with the summary."""

        with Session(self.database.engine) as session:
            rows = session.exec(
                select(WorkThreadMessage)
                .where(WorkThreadMessage.thread_id == thread_id)
                .order_by(col(WorkThreadMessage.sequence_number).asc()),
            ).all()
        return [_to_message_view(row) for row in rows]

    def message_count(self, thread_id: str) -> int:
        with Session(self.database.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(WorkThreadMessage)
                .where(WorkThreadMessage.thread_id == thread_id),
            ).one()
        return int(count)

    def should_compact(
        self,
        thread_id: str,
        threshold: int = DEFAULT_COMPACTION_THRESHOLD,
    ) -> bool:
        return self.message_count(thread_id) > threshold

    def compact_with_summary(
        self,
        thread_id: str,
        summary: str,
        *,
        keep_recent: int = DEFAULT_KEEP_RECENT,
    ) -> int:
        """Replace all but the newest ``keep_recent`` messages with one summary.

        The summary takes sequence number 1 and the kept messages are
        renumbered from 2, all in one transaction. Returns the number of
        messages removed.
        """

        with Session(self.database.engine) as session:
            thread = self._require_thread(session, thread_id)
            if thread.status == ThreadStatus.COMPLETED.value:
                raise RuntimeError(f"Thread {thread_id} is completed; compaction rejected.")
            rows = session.exec(
                select(WorkThreadMessage)
                .where(WorkThreadMessage.thread_id == thread_id)
                .order_by(col(WorkThreadMessage.sequence_number).asc()),
            ).all()
            cutoff = max(0, len(rows) - max(0, keep_recent))
            removed = rows[:cutoff]
            kept = rows[cutoff:]
            removed_ids = [row.id for row in removed]
            kept_ids = [row.id for row in kept]

            if removed_ids:
                session.exec(
                    sa_delete(WorkThreadMessage).where(col(WorkThreadMessage.id).in_(removed_ids)),
                )
            # Two passes keep (thread_id, sequence_number) unique at every statement.
            for offset, message_id in enumerate(kept_ids, start=1):
                session.exec(
                    sa_update(WorkThreadMessage)
                    .where(col(WorkThreadMessage.id) == message_id)
                    .values(sequence_number=-offset),
                )
            for offset, message_id in enumerate(kept_ids, start=2):
                session.exec(
                    sa_update(WorkThreadMessage)
                    .where(col(WorkThreadMessage.id) == message_id)
                    .values(sequence_number=offset),
                )
            session.add(
                WorkThreadMessage(
                    thread_id=thread_id,
                    role=MessageRole.SYSTEM.value,
                    content=summary,
                    sequence_number=1,
                    created_at=utc_now(),
                ),
            )
            session.exec(
                sa_update(WorkThread)
                .where(col(WorkThread.id) == thread_id)
                .values(status=ThreadStatus.COMPACTED.value),
            )
            session.commit()

        logger.info(
            "Compacted thread %s: %d messages summarized, %d kept",
            thread_id,
            len(removed_ids),
            len(kept_ids),
        )
        return len(removed_ids)

    def end_session(self, thread_id: str) -> bool:
        """Mark the thread completed; a second call is a no-op returning ``False``."""

        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(WorkThread)
                .where(
                    col(WorkThread.id) == thread_id,
                    col(WorkThread.status) != ThreadStatus.COMPLETED.value,
                )
                .values(
                    status=ThreadStatus.COMPLETED.value,
                    completed_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def get_thread(self, thread_id: str) -> ThreadView | None:
        with Session(self.database.engine) as session:
            row = session.exec(select(WorkThread).where(WorkThread.id == thread_id)).one_or_none()
            return _to_thread_view(row) if row is not None else None

    def list_threads(self, agent_id: str, *, limit: int = 20) -> list[ThreadView]:
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(WorkThread)
                .where(WorkThread.agent_id == agent_id)
                .order_by(col(WorkThread.created_at).desc())
                .limit(limit),
            ).all()
        return [_to_thread_view(row) for row in rows]

    def _require_thread(self, session: Session, thread_id: str) -> WorkThread:
        thread = session.exec(select(WorkThread).where(WorkThread.id == thread_id)).one_or_none()
        if thread is None:
            raise RuntimeError(f"Thread {thread_id} not found.")
        return thread

    def _next_sequence(self, session: Session, thread_id: str) -> int:
        current = session.exec(
            select(func.max(WorkThreadMessage.sequence_number)).where(
                WorkThreadMessage.thread_id == thread_id,
            ),
        ).one()
        return int(current or 0) + 1


def _to_thread_view(row: WorkThread) -> ThreadView:
    return ThreadView(
        thread_id=row.id,
        agent_id=row.agent_id,
        status=ThreadStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_message_view(row: WorkThreadMessage) -> ThreadMessageView:
    tool_calls = json.loads(row.tool_calls_json) if row.tool_calls_json else None
    return ThreadMessageView(
        message_id=row.id or 0,
        thread_id=row.thread_id,
        role=MessageRole(row.role),
        content=row.content,
        tool_calls=tool_calls,
        sequence_number=row.sequence_number,
        created_at=to_utc_aware_datetime(row.created_at),
    )

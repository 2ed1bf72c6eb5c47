"""Persistence for owners, agents and the records agents produce."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from crew_runtime.agents.models import (
    AgentStatus,
    AgentView,
    AideOwner,
    BriefingView,
    BriefingWrite,
    ConversationMode,
    InboxItemType,
    InboxItemView,
    KnowledgeItemType,
    KnowledgeItemView,
    MemoryType,
    MemoryView,
    MessageRole,
    MessageView,
    Owner,
    OwnerStatus,
    OwnerView,
    TeamOwner,
    owner_from_columns,
)
from crew_runtime.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from crew_runtime.storage.database import Database
from crew_runtime.storage.sqlmodel_models import (
    Aide,
    Briefing,
    Conversation,
    ConversationMessage,
    CrewAgent,
    InboxItem,
    KnowledgeItem,
    Memory,
    Team,
)

logger = logging.getLogger(__name__)


class AgentRepository:
    """SQLModel-backed store for everything except the task queue and threads."""

    def __init__(self, database: Database) -> None:
        self.database = database

    @property
    def user_id(self) -> str:
        return self.database.user_id

    # Owners

    def create_team(self, *, name: str, purpose: str | None = None) -> OwnerView:
        now = utc_now()
        row = Team(
            id=uuid4().hex,
            user_id=self.user_id,
            name=name,
            purpose=purpose,
            status=OwnerStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_owner_view(row, TeamOwner(team_id=row.id))

    def create_aide(self, *, name: str, purpose: str | None = None) -> OwnerView:
        now = utc_now()
        row = Aide(
            id=uuid4().hex,
            user_id=self.user_id,
            name=name,
            purpose=purpose,
            status=OwnerStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_owner_view(row, AideOwner(aide_id=row.id))

    def get_owner(self, owner: Owner) -> OwnerView | None:
        with Session(self.database.engine) as session:
            match owner:
                case TeamOwner(team_id=team_id):
                    team = session.exec(select(Team).where(Team.id == team_id)).one_or_none()
                    return _to_owner_view(team, owner) if team is not None else None
                case AideOwner(aide_id=aide_id):
                    aide = session.exec(select(Aide).where(Aide.id == aide_id)).one_or_none()
                    return _to_owner_view(aide, owner) if aide is not None else None

    def list_owners(self) -> list[OwnerView]:
        with Session(self.database.engine) as session:
            teams = session.exec(
                select(Team)
                .where(Team.user_id == self.user_id)
                .order_by(col(Team.created_at).asc()),
            ).all()
            aides = session.exec(
                select(Aide)
                .where(Aide.user_id == self.user_id)
                .order_by(col(Aide.created_at).asc()),
            ).all()
        views = [_to_owner_view(team, TeamOwner(team_id=team.id)) for team in teams]
        views.extend(_to_owner_view(aide, AideOwner(aide_id=aide.id)) for aide in aides)
        return views

    def set_owner_status(self, owner: Owner, status: OwnerStatus) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.database.engine) as session:
            match owner:
                case TeamOwner(team_id=team_id):
                    statement = (
                        sa_update(Team)
                        .where(col(Team.id) == team_id)
                        .values(status=status.value, updated_at=now)
                    )
                case AideOwner(aide_id=aide_id):
                    statement = (
                        sa_update(Aide)
                        .where(col(Aide.id) == aide_id)
                        .values(status=status.value, updated_at=now)
                    )
            result = session.exec(statement)
            session.commit()
            return result.rowcount == 1

    def resolve_owner_user_id(self, owner: Owner) -> str:
        """Return the human behind a team or aide."""

        view = self.get_owner(owner)
        if view is None:
            raise RuntimeError(f"Owner {owner} not found.")
        return view.user_id

    # Agents

    def create_agent(  # noqa: PLR0913
        self,
        *,
        owner: Owner,
        name: str,
        role: str,
        system_prompt: str | None = None,
        parent_agent_id: str | None = None,
        next_run_at: datetime | None = None,
    ) -> AgentView:
        now = utc_now()
        row = CrewAgent(
            id=uuid4().hex,
            **owner.columns(),
            parent_agent_id=parent_agent_id,
            name=name,
            role=role,
            system_prompt=system_prompt,
            status=AgentStatus.IDLE.value,
            next_run_at=to_db_datetime(next_run_at) if next_run_at is not None else None,
            backoff_attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_view(row)

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.database.engine) as session:
            row = session.exec(select(CrewAgent).where(CrewAgent.id == agent_id)).one_or_none()
            return _to_agent_view(row) if row is not None else None

    def require_agent(self, agent_id: str) -> AgentView:
        agent = self.get_agent(agent_id)
        if agent is None:
            raise RuntimeError(f"Agent {agent_id} not found.")
        return agent

    def list_agents(self, *, owner: Owner | None = None) -> list[AgentView]:
        with Session(self.database.engine) as session:
            statement = select(CrewAgent).order_by(col(CrewAgent.created_at).asc())
            if owner is not None:
                for column, value in owner.columns().items():
                    if value is not None:
                        statement = statement.where(getattr(CrewAgent, column) == value)
            rows = session.exec(statement).all()
        return [_to_agent_view(row) for row in rows]

    def list_children(self, parent_agent_id: str) -> list[AgentView]:
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(CrewAgent)
                .where(CrewAgent.parent_agent_id == parent_agent_id)
                .order_by(col(CrewAgent.created_at).asc()),
            ).all()
        return [_to_agent_view(row) for row in rows]

    def get_lead(self, owner: Owner) -> AgentView | None:
        leads = [agent for agent in self.list_agents(owner=owner) if agent.is_lead]
        return leads[0] if leads else None

    def try_begin_session(
        self,
        agent_id: str,
        *,
        stale_before: datetime | None = None,
    ) -> str | None:
        """Take the per-agent session lock: ``idle -> running`` as a conditional update.

        Returns the session token that proves ownership, or ``None`` when the
        lock is held. A ``running`` row whose last heartbeat is older than
        ``stale_before`` is treated as left over from a crashed process and may
        be reclaimed; the previous holder's token stops matching from then on.
        """

        now = utc_now()
        token = uuid4().hex
        claimable = col(CrewAgent.status) == AgentStatus.IDLE.value
        if stale_before is not None:
            last_seen = func.coalesce(
                col(CrewAgent.session_heartbeat_at),
                col(CrewAgent.session_started_at),
            )
            claimable = or_(
                claimable,
                (col(CrewAgent.status) == AgentStatus.RUNNING.value)
                & (last_seen < to_db_datetime(stale_before)),
            )
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(CrewAgent)
                .where(col(CrewAgent.id) == agent_id, claimable)
                .values(
                    status=AgentStatus.RUNNING.value,
                    session_token=token,
                    session_started_at=to_db_datetime(now),
                    session_heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return token if result.rowcount == 1 else None

    def touch_session(self, agent_id: str, token: str) -> bool:
        """Refresh the heartbeat of the session holding ``token``; False once it lost the lock."""

        now = to_db_datetime(utc_now())
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(CrewAgent)
                .where(
                    col(CrewAgent.id) == agent_id,
                    col(CrewAgent.status) == AgentStatus.RUNNING.value,
                    col(CrewAgent.session_token) == token,
                )
                .values(session_heartbeat_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def finish_session(self, agent_id: str, token: str | None = None) -> bool:
        """Release the lock; with ``token`` only if that session still holds it."""

        now = to_db_datetime(utc_now())
        conditions = [
            col(CrewAgent.id) == agent_id,
            col(CrewAgent.status) == AgentStatus.RUNNING.value,
        ]
        if token is not None:
            conditions.append(col(CrewAgent.session_token) == token)
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(CrewAgent).where(*conditions).values(**_released_session_values(now)),
            )
            session.commit()
            return result.rowcount == 1

    def release_running_agents(self) -> int:
        """Reset every ``running`` agent to ``idle``; used on scheduler start."""

        now = to_db_datetime(utc_now())
        with Session(self.database.engine) as session:
            result = session.exec(
                sa_update(CrewAgent)
                .where(col(CrewAgent.status) == AgentStatus.RUNNING.value)
                .values(**_released_session_values(now)),
            )
            session.commit()
            return int(result.rowcount or 0)

    def set_agent_status(self, agent_id: str, status: AgentStatus) -> None:
        with Session(self.database.engine) as session:
            session.exec(
                sa_update(CrewAgent)
                .where(col(CrewAgent.id) == agent_id)
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def set_next_run_at(self, agent_id: str, next_run_at: datetime | None) -> None:
        with Session(self.database.engine) as session:
            session.exec(
                sa_update(CrewAgent)
                .where(col(CrewAgent.id) == agent_id)
                .values(
                    next_run_at=to_db_datetime(next_run_at) if next_run_at is not None else None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def set_backoff(self, agent_id: str, *, attempt_count: int, next_run_at: datetime) -> None:
        with Session(self.database.engine) as session:
            session.exec(
                sa_update(CrewAgent)
                .where(col(CrewAgent.id) == agent_id)
                .values(
                    backoff_attempt_count=attempt_count,
                    backoff_next_run_at=to_db_datetime(next_run_at),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def clear_backoff(self, agent_id: str) -> None:
        with Session(self.database.engine) as session:
            session.exec(
                sa_update(CrewAgent)
                .where(col(CrewAgent.id) == agent_id, col(CrewAgent.backoff_attempt_count) > 0)
                .values(
                    backoff_attempt_count=0,
                    backoff_next_run_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def agent_ids_in_backoff(self, *, now: datetime) -> set[str]:
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(CrewAgent.id).where(
                    col(CrewAgent.backoff_next_run_at).is_not(None),
                    col(CrewAgent.backoff_next_run_at) > to_db_datetime(now),
                ),
            ).all()
        return set(rows)

    def leads_due(self, *, now: datetime) -> list[AgentView]:
        """Leads whose proactive run time has passed and whose owner is active."""

        db_now = to_db_datetime(now)
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(CrewAgent)
                .outerjoin(Team, col(Team.id) == col(CrewAgent.team_id))
                .outerjoin(Aide, col(Aide.id) == col(CrewAgent.aide_id))
                .where(
                    col(CrewAgent.parent_agent_id).is_(None),
                    col(CrewAgent.status) != AgentStatus.PAUSED.value,
                    col(CrewAgent.next_run_at).is_not(None),
                    col(CrewAgent.next_run_at) <= db_now,
                    or_(
                        col(Team.status) == OwnerStatus.ACTIVE.value,
                        col(Aide.status) == OwnerStatus.ACTIVE.value,
                    ),
                    or_(
                        col(CrewAgent.backoff_next_run_at).is_(None),
                        col(CrewAgent.backoff_next_run_at) <= db_now,
                    ),
                )
                .order_by(col(CrewAgent.next_run_at).asc()),
            ).all()
        return [_to_agent_view(row) for row in rows]

    # Conversations

    def get_or_create_conversation(self, agent_id: str, mode: ConversationMode) -> str:
        """Return the conversation id for ``(agent, mode)``, creating it once."""

        with Session(self.database.engine) as session:
            existing = session.exec(
                select(Conversation).where(
                    Conversation.agent_id == agent_id,
                    Conversation.mode == mode.value,
                ),
            ).one_or_none()
            if existing is not None:
                return existing.id
            row = Conversation(
                id=uuid4().hex,
                agent_id=agent_id,
                mode=mode.value,
                created_at=utc_now(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return session.exec(
                    select(Conversation).where(
                        Conversation.agent_id == agent_id,
                        Conversation.mode == mode.value,
                    ),
                ).one().id
            return row.id

    def append_message(
        self,
        agent_id: str,
        mode: ConversationMode,
        role: MessageRole,
        content: str,
    ) -> MessageView:
        conversation_id = self.get_or_create_conversation(agent_id, mode)
        row = ConversationMessage(
            conversation_id=conversation_id,
            role=role.value,
            content=content,
            created_at=utc_now(),
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def list_messages(
        self,
        agent_id: str,
        mode: ConversationMode,
        *,
        limit: int = 50,
    ) -> list[MessageView]:
        """Most recent messages, returned oldest first."""

        with Session(self.database.engine) as session:
            rows = session.exec(
                select(ConversationMessage)
                .join(
                    Conversation,
                    col(Conversation.id) == col(ConversationMessage.conversation_id),
                )
                .where(Conversation.agent_id == agent_id, Conversation.mode == mode.value)
                .order_by(col(ConversationMessage.id).desc())
                .limit(limit),
            ).all()
        return [_to_message_view(row) for row in reversed(rows)]

    # Memories

    def add_memory(
        self,
        agent_id: str,
        memory_type: MemoryType,
        content: str,
        *,
        source_message_id: int | None = None,
    ) -> MemoryView:
        row = Memory(
            id=uuid4().hex,
            agent_id=agent_id,
            type=memory_type.value,
            content=content,
            source_message_id=source_message_id,
            created_at=utc_now(),
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_memory_view(row)

    def list_memories(self, agent_id: str, *, limit: int = 50) -> list[MemoryView]:
        with Session(self.database.engine) as session:
            rows = session.exec(
                select(Memory)
                .where(Memory.agent_id == agent_id)
                .order_by(col(Memory.created_at).desc())
                .limit(limit),
            ).all()
        return [_to_memory_view(row) for row in rows]

    # Knowledge items

    def add_knowledge_item(  # noqa: PLR0913
        self,
        agent_id: str,
        item_type: KnowledgeItemType,
        content: str,
        *,
        confidence: float | None = None,
        source_thread_id: str | None = None,
    ) -> KnowledgeItemView:
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {confidence}")
        row = KnowledgeItem(
            id=uuid4().hex,
            agent_id=agent_id,
            type=item_type.value,
            content=content,
            confidence=confidence,
            source_thread_id=source_thread_id,
            created_at=utc_now(),
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_knowledge_view(row)

    def list_knowledge_items(
        self,
        agent_id: str,
        *,
        item_type: KnowledgeItemType | None = None,
        limit: int | None = None,
    ) -> list[KnowledgeItemView]:
        with Session(self.database.engine) as session:
            statement = (
                select(KnowledgeItem)
                .where(KnowledgeItem.agent_id == agent_id)
                .order_by(col(KnowledgeItem.created_at).desc())
            )
            if item_type is not None:
                statement = statement.where(KnowledgeItem.type == item_type.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_knowledge_view(row) for row in rows]

    def remove_knowledge_item(self, agent_id: str, knowledge_item_id: str) -> bool:
        """Delete one of the agent's own items; ``False`` when it does not exist."""

        with Session(self.database.engine) as session:
            row = session.exec(
                select(KnowledgeItem).where(
                    KnowledgeItem.id == knowledge_item_id,
                    KnowledgeItem.agent_id == agent_id,
                ),
            ).one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    # Briefings and inbox

    def create_briefing_with_inbox(
        self,
        *,
        agent_id: str,
        owner: Owner,
        briefing: BriefingWrite,
    ) -> BriefingView:
        """Persist a briefing and its summary-only inbox item in one transaction."""

        user_id = self.resolve_owner_user_id(owner)
        now = utc_now()
        row = Briefing(
            id=uuid4().hex,
            user_id=user_id,
            **owner.columns(),
            agent_id=agent_id,
            title=briefing.title,
            summary=briefing.summary,
            content=briefing.content,
            created_at=now,
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.flush()
            session.add(
                InboxItem(
                    id=uuid4().hex,
                    user_id=user_id,
                    agent_id=agent_id,
                    briefing_id=row.id,
                    type=InboxItemType.BRIEFING.value,
                    title=briefing.title,
                    content=briefing.summary,
                    created_at=now,
                ),
            )
            session.commit()
            session.refresh(row)
            view = _to_briefing_view(row)
        logger.info("Agent %s published briefing %s: %s", agent_id, view.briefing_id, view.title)
        return view

    def create_feedback_request(
        self,
        *,
        agent_id: str,
        owner: Owner,
        title: str,
        content: str,
    ) -> InboxItemView:
        row = InboxItem(
            id=uuid4().hex,
            user_id=self.resolve_owner_user_id(owner),
            agent_id=agent_id,
            type=InboxItemType.FEEDBACK.value,
            title=title,
            content=content,
            created_at=utc_now(),
        )
        with Session(self.database.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_inbox_view(row)

    def list_briefings(
        self,
        *,
        owner: Owner | None = None,
        query: str | None = None,
        limit: int = 20,
    ) -> list[BriefingView]:
        with Session(self.database.engine) as session:
            statement = (
                select(Briefing)
                .where(Briefing.user_id == self.user_id)
                .order_by(col(Briefing.created_at).desc())
                .limit(limit)
            )
            if owner is not None:
                for column, value in owner.columns().items():
                    if value is not None:
                        statement = statement.where(getattr(Briefing, column) == value)
            if query:
                pattern = f"%{query.strip()}%"
                statement = statement.where(
                    or_(col(Briefing.title).ilike(pattern), col(Briefing.summary).ilike(pattern)),
                )
            rows = session.exec(statement).all()
        return [_to_briefing_view(row) for row in rows]

    def get_briefing(self, briefing_id: str) -> BriefingView | None:
        with Session(self.database.engine) as session:
            row = session.exec(select(Briefing).where(Briefing.id == briefing_id)).one_or_none()
            return _to_briefing_view(row) if row is not None else None

    def list_inbox(self, *, unread_only: bool = False, limit: int = 50) -> list[InboxItemView]:
        with Session(self.database.engine) as session:
            statement = (
                select(InboxItem)
                .where(InboxItem.user_id == self.user_id)
                .order_by(col(InboxItem.created_at).desc())
                .limit(limit)
            )
            if unread_only:
                statement = statement.where(col(InboxItem.read_at).is_(None))
            rows = session.exec(statement).all()
        return [_to_inbox_view(row) for row in rows]


def _released_session_values(now: datetime) -> dict[str, object]:
    return {
        "status": AgentStatus.IDLE.value,
        "session_token": None,
        "session_started_at": None,
        "session_heartbeat_at": None,
        "updated_at": now,
    }


def _to_owner_view(row: Team | Aide, owner: Owner) -> OwnerView:
    return OwnerView(
        owner=owner,
        user_id=row.user_id,
        name=row.name,
        purpose=row.purpose,
        status=OwnerStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_agent_view(row: CrewAgent) -> AgentView:
    return AgentView(
        agent_id=row.id,
        owner=owner_from_columns(team_id=row.team_id, aide_id=row.aide_id),
        parent_agent_id=row.parent_agent_id,
        name=row.name,
        role=row.role,
        system_prompt=row.system_prompt,
        status=AgentStatus(row.status),
        session_started_at=optional_utc(row.session_started_at),
        session_heartbeat_at=optional_utc(row.session_heartbeat_at),
        next_run_at=optional_utc(row.next_run_at),
        backoff_next_run_at=optional_utc(row.backoff_next_run_at),
        backoff_attempt_count=row.backoff_attempt_count,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_message_view(row: ConversationMessage) -> MessageView:
    return MessageView(
        message_id=row.id or 0,
        conversation_id=row.conversation_id,
        role=MessageRole(row.role),
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_memory_view(row: Memory) -> MemoryView:
    return MemoryView(
        memory_id=row.id,
        agent_id=row.agent_id,
        type=MemoryType(row.type),
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_knowledge_view(row: KnowledgeItem) -> KnowledgeItemView:
    return KnowledgeItemView(
        knowledge_item_id=row.id,
        agent_id=row.agent_id,
        type=KnowledgeItemType(row.type),
        content=row.content,
        confidence=row.confidence,
        source_thread_id=row.source_thread_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_briefing_view(row: Briefing) -> BriefingView:
    return BriefingView(
        briefing_id=row.id,
        user_id=row.user_id,
        owner=owner_from_columns(team_id=row.team_id, aide_id=row.aide_id),
        agent_id=row.agent_id,
        title=row.title,
        summary=row.summary,
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_inbox_view(row: InboxItem) -> InboxItemView:
    return InboxItemView(
        inbox_item_id=row.id,
        user_id=row.user_id,
        agent_id=row.agent_id,
        briefing_id=row.briefing_id,
        type=InboxItemType(row.type),
        title=row.title,
        content=row.content,
        read_at=optional_utc(row.read_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )

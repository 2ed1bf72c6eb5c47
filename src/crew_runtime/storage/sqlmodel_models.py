"""SQLModel ORM tables for agents, task queue, threads and user-facing records."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"

SINGLE_OWNER_CHECK = (
    "(team_id IS NOT NULL AND aide_id IS NULL) OR (team_id IS NULL AND aide_id IS NOT NULL)"
)


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Team(SQLModel, table=True):
    __tablename__ = "teams"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    purpose: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(default="active", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Aide(SQLModel, table=True):
    __tablename__ = "aides"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    purpose: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(default="active", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CrewAgent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]
    __table_args__ = (CheckConstraint(SINGLE_OWNER_CHECK, name="ck_agents_single_owner"),)

    id: str = Field(primary_key=True)
    team_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    aide_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("aides.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    parent_agent_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    name: str
    role: str
    system_prompt: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(default="idle", index=True)
    session_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    session_token: str | None = Field(default=None)
    session_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    next_run_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    backoff_next_run_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    backoff_attempt_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentTask(SQLModel, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(SINGLE_OWNER_CHECK, name="ck_agent_tasks_single_owner"),
        Index(
            "uq_agent_tasks_one_in_progress",
            "assigned_to_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
        ),
        Index("idx_agent_tasks_queue", "assigned_to_id", "status", "priority", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    team_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    aide_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("aides.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    assigned_to_id: str = Field(
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False),
    )
    assigned_by_id: str = Field(
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False),
    )
    task: str = Field(sa_column=Column(Text, nullable=False))
    result: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(default="pending")
    source: str = Field(default="user")
    priority: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class AgentTaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkThread(SQLModel, table=True):
    __tablename__ = "threads"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    agent_id: str = Field(
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True),
    )
    status: str = Field(default="active", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class WorkThreadMessage(SQLModel, table=True):
    __tablename__ = "thread_messages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "thread_id",
            "sequence_number",
            name="uq_thread_messages_thread_sequence",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    thread_id: str = Field(
        sa_column=Column(ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True),
    )
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    tool_calls_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    sequence_number: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class KnowledgeItem(SQLModel, table=True):
    __tablename__ = "knowledge_items"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    agent_id: str = Field(
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True),
    )
    type: str = Field(index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    confidence: float | None = None
    source_thread_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("threads.id", ondelete="SET NULL"), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("agent_id", "mode", name="uq_conversations_agent_mode"),
    )

    id: str = Field(primary_key=True)
    agent_id: str = Field(
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True),
    )
    mode: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ConversationMessage(SQLModel, table=True):
    __tablename__ = "messages"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    conversation_id: str = Field(
        sa_column=Column(
            ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Memory(SQLModel, table=True):
    __tablename__ = "memories"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    agent_id: str = Field(
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True),
    )
    type: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    source_message_id: int | None = Field(
        default=None,
        sa_column=Column(ForeignKey("messages.id", ondelete="SET NULL"), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Briefing(SQLModel, table=True):
    __tablename__ = "briefings"  # type: ignore[bad-override]
    __table_args__ = (CheckConstraint(SINGLE_OWNER_CHECK, name="ck_briefings_single_owner"),)

    id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    team_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    aide_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("aides.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    agent_id: str = Field(
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False, index=True),
    )
    title: str
    summary: str = Field(sa_column=Column(Text, nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class InboxItem(SQLModel, table=True):
    __tablename__ = "inbox_items"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    agent_id: str = Field(
        sa_column=Column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False),
    )
    briefing_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("briefings.id", ondelete="SET NULL"), nullable=True),
    )
    type: str
    title: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    read_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

"""Domain models for agents, the task queue and work-session threads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentStatus(str, Enum):
    """Session lock states persisted on the agent row."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class OwnerStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class TaskStatus(str, Enum):
    """Durable task lifecycle states.

    ``pending -> in_progress -> completed | failed``; no other transition exists.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskSource(str, Enum):
    DELEGATION = "delegation"
    USER = "user"
    SYSTEM = "system"
    SELF = "self"


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    COMPACTED = "compacted"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationMode(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class KnowledgeItemType(str, Enum):
    FACT = "fact"
    TECHNIQUE = "technique"
    PATTERN = "pattern"
    LESSON = "lesson"


class MemoryType(str, Enum):
    PREFERENCE = "preference"
    INSIGHT = "insight"
    FACT = "fact"


class InboxItemType(str, Enum):
    BRIEFING = "briefing"
    FEEDBACK = "feedback"


@dataclass(frozen=True, slots=True)
class TeamOwner:
    """Agent/task ownership by a team."""

    team_id: str

    def columns(self) -> dict[str, str | None]:
        return {"team_id": self.team_id, "aide_id": None}


@dataclass(frozen=True, slots=True)
class AideOwner:
    """Agent/task ownership by a personal aide."""

    aide_id: str

    def columns(self) -> dict[str, str | None]:
        return {"team_id": None, "aide_id": self.aide_id}


Owner = TeamOwner | AideOwner


def owner_from_columns(*, team_id: str | None, aide_id: str | None) -> Owner:
    """Rebuild the owner from the two storage columns.

    The database CHECK constraint guarantees exactly one is set.
    """

    if team_id is not None and aide_id is None:
        return TeamOwner(team_id=team_id)
    if aide_id is not None and team_id is None:
        return AideOwner(aide_id=aide_id)
    raise ValueError(f"Row must have exactly one owner, got team_id={team_id} aide_id={aide_id}")


@dataclass(slots=True)
class OwnerView:
    """Team or aide record."""

    owner: Owner
    user_id: str
    name: str
    purpose: str | None
    status: OwnerStatus
    created_at: datetime


@dataclass(slots=True)
class AgentView:
    """Readable agent record."""

    agent_id: str
    owner: Owner
    parent_agent_id: str | None
    name: str
    role: str
    system_prompt: str | None
    status: AgentStatus
    session_started_at: datetime | None
    session_heartbeat_at: datetime | None
    next_run_at: datetime | None
    backoff_next_run_at: datetime | None
    backoff_attempt_count: int
    created_at: datetime

    @property
    def is_lead(self) -> bool:
        return self.parent_agent_id is None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    assigned_to_id: str
    owner: Owner
    task: str
    source: TaskSource
    assigned_by_id: str | None = None
    priority: int = 0


@dataclass(slots=True)
class TaskView:
    """Readable task view for the agent, scheduler and CLI."""

    task_id: int
    owner: Owner
    assigned_to_id: str
    assigned_by_id: str
    task: str
    result: str | None
    status: TaskStatus
    source: TaskSource
    priority: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: int
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class QueueStatus:
    """Read-only snapshot of one agent's queue."""

    pending_count: int
    in_progress_count: int

    @property
    def has_pending_work(self) -> bool:
        return self.pending_count > 0

    @property
    def has_open_work(self) -> bool:
        return self.pending_count > 0 or self.in_progress_count > 0


@dataclass(slots=True)
class ThreadView:
    thread_id: str
    agent_id: str
    status: ThreadStatus
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class ThreadMessageView:
    """One ordered turn of a work-session thread."""

    message_id: int
    thread_id: str
    role: MessageRole
    content: str
    tool_calls: list[dict[str, Any]] | None
    sequence_number: int
    created_at: datetime


@dataclass(slots=True)
class KnowledgeItemView:
    knowledge_item_id: str
    agent_id: str
    type: KnowledgeItemType
    content: str
    confidence: float | None
    source_thread_id: str | None
    created_at: datetime


@dataclass(slots=True)
class MemoryView:
    memory_id: str
    agent_id: str
    type: MemoryType
    content: str
    created_at: datetime


@dataclass(slots=True)
class MessageView:
    """Durable foreground/background conversation message."""

    message_id: int
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime


@dataclass(slots=True)
class BriefingWrite:
    title: str
    summary: str
    content: str


@dataclass(slots=True)
class BriefingView:
    briefing_id: str
    user_id: str
    owner: Owner
    agent_id: str
    title: str
    summary: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class InboxItemView:
    inbox_item_id: str
    user_id: str
    agent_id: str
    briefing_id: str | None
    type: InboxItemType
    title: str
    content: str
    read_at: datetime | None
    created_at: datetime


@dataclass(slots=True)
class SessionSummary:
    """Aggregate counters for one ``run_work_session`` invocation."""

    agent_id: str
    started: bool = False
    thread_id: str | None = None
    processed: int = 0
    completed: int = 0
    failed: int = 0
    knowledge_items: int = 0
    briefing_id: str | None = None
    next_run_at: datetime | None = None

"""Closed tool catalog for lead and subordinate agents, with typed arguments."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypeVar, assert_never

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from crew_runtime.agents.llm import ToolSpec
from crew_runtime.agents.models import (
    AgentStatus,
    BriefingView,
    BriefingWrite,
    ConversationMode,
    KnowledgeItemType,
    MessageRole,
    Owner,
    TaskCreate,
    TaskSource,
    TeamOwner,
)
from crew_runtime.agents.repository import AgentRepository
from crew_runtime.agents.task_queue import TaskQueue

logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    DELEGATE_TO_AGENT = "delegateToAgent"
    GET_TEAM_STATUS = "getTeamStatus"
    CREATE_BRIEFING = "createBriefing"
    REQUEST_USER_INPUT = "requestUserInput"
    LIST_BRIEFINGS = "listBriefings"
    GET_BRIEFING = "getBriefing"
    QUEUE_TASK_FOR_SELF = "queueTaskForSelf"
    REPORT_TO_LEAD = "reportToLead"
    REQUEST_INPUT = "requestInput"
    ADD_KNOWLEDGE_ITEM = "addKnowledgeItem"
    LIST_KNOWLEDGE_ITEMS = "listKnowledgeItems"
    REMOVE_KNOWLEDGE_ITEM = "removeKnowledgeItem"


KNOWLEDGE_TOOLS = frozenset(
    {
        ToolName.ADD_KNOWLEDGE_ITEM,
        ToolName.LIST_KNOWLEDGE_ITEMS,
        ToolName.REMOVE_KNOWLEDGE_ITEM,
    },
)
LEAD_ONLY_TOOLS = frozenset(
    {
        ToolName.DELEGATE_TO_AGENT,
        ToolName.GET_TEAM_STATUS,
        ToolName.CREATE_BRIEFING,
        ToolName.REQUEST_USER_INPUT,
        ToolName.LIST_BRIEFINGS,
        ToolName.GET_BRIEFING,
        ToolName.QUEUE_TASK_FOR_SELF,
    },
)
SUBORDINATE_ONLY_TOOLS = frozenset({ToolName.REPORT_TO_LEAD, ToolName.REQUEST_INPUT})
LEAD_TOOLS = LEAD_ONLY_TOOLS | KNOWLEDGE_TOOLS
SUBORDINATE_TOOLS = SUBORDINATE_ONLY_TOOLS | KNOWLEDGE_TOOLS


class ToolArgs(BaseModel):
    """Base for tool argument schemas; the model sees camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


ArgsT = TypeVar("ArgsT", bound=ToolArgs)


class DelegateToAgentArgs(ToolArgs):
    agent_id: str = Field(
        min_length=1,
        description="The ID of the subordinate agent to delegate the task to",
    )
    task: str = Field(
        min_length=1,
        description="A clear description of the task, including expected output",
    )


class GetTeamStatusArgs(ToolArgs):
    pass


class CreateBriefingArgs(ToolArgs):
    title: str = Field(min_length=1, description="A concise, specific title for the briefing")
    summary: str = Field(
        min_length=1,
        description="A brief summary for the inbox notification (1-2 sentences)",
    )
    full_message: str = Field(min_length=1, description="The full briefing content for the user")


class RequestUserInputArgs(ToolArgs):
    title: str = Field(min_length=1, description="A concise title for the feedback request")
    summary: str = Field(
        min_length=1,
        description="A brief summary for the inbox notification (1-2 sentences)",
    )
    full_message: str = Field(
        min_length=1,
        description="The full message content to be added to the conversation",
    )


class ListBriefingsArgs(ToolArgs):
    query: str | None = Field(
        default=None,
        description="Optional search query for briefing title or summary",
    )
    limit: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Maximum number of briefings to return",
    )


class GetBriefingArgs(ToolArgs):
    briefing_id: str = Field(min_length=1, description="The briefing ID to retrieve")


class QueueTaskForSelfArgs(ToolArgs):
    task: str = Field(min_length=1, description="Follow-up work to do in a later step")
    priority: int = Field(default=0, description="Higher runs earlier among pending tasks")


class ReportToLeadArgs(ToolArgs):
    result: str = Field(
        min_length=1,
        description="The result of the task, including findings or why it failed",
    )
    status: Literal["success", "failure"] = Field(
        description="Whether the task was completed successfully or failed",
    )


class RequestInputArgs(ToolArgs):
    question: str = Field(
        min_length=1,
        description="The question or clarification you need from the team lead",
    )


class AddKnowledgeItemArgs(ToolArgs):
    type: KnowledgeItemType = Field(
        description=(
            "fact (domain knowledge), technique (how to do something), "
            "pattern (observed trend), lesson (learning from experience)"
        ),
    )
    content: str = Field(min_length=1, description="The knowledge item content to store")
    confidence: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Confidence level from 0 to 1",
    )


class ListKnowledgeItemsArgs(ToolArgs):
    type: KnowledgeItemType | None = Field(
        default=None,
        description="Filter by knowledge item type",
    )
    limit: int = Field(
        default=20,
        ge=1,
        le=50,
        description="Maximum number of knowledge items to return",
    )


class RemoveKnowledgeItemArgs(ToolArgs):
    knowledge_item_id: str = Field(
        min_length=1,
        description="The ID of the knowledge item to remove",
    )


TOOL_DEFINITIONS: dict[ToolName, tuple[str, type[ToolArgs]]] = {
    ToolName.DELEGATE_TO_AGENT: (
        "Delegate a task to one of your subordinate agents. "
        "The task is queued and processed in the agent's next work session.",
        DelegateToAgentArgs,
    ),
    ToolName.GET_TEAM_STATUS: (
        "Get the current status of all subordinate agents, including queued tasks.",
        GetTeamStatusArgs,
    ),
    ToolName.CREATE_BRIEFING: (
        "Create a briefing for the user and notify their inbox.",
        CreateBriefingArgs,
    ),
    ToolName.REQUEST_USER_INPUT: (
        "Ask the user for feedback via an inbox notification and a conversation message.",
        RequestUserInputArgs,
    ),
    ToolName.LIST_BRIEFINGS: (
        "List past briefings for this team or aide, newest first.",
        ListBriefingsArgs,
    ),
    ToolName.GET_BRIEFING: (
        "Retrieve a single briefing by ID, including full content.",
        GetBriefingArgs,
    ),
    ToolName.QUEUE_TASK_FOR_SELF: (
        "Queue a follow-up task for yourself.",
        QueueTaskForSelfArgs,
    ),
    ToolName.REPORT_TO_LEAD: (
        "Report the result of your current task to your team lead.",
        ReportToLeadArgs,
    ),
    ToolName.REQUEST_INPUT: (
        "Ask your team lead a question or request clarification.",
        RequestInputArgs,
    ),
    ToolName.ADD_KNOWLEDGE_ITEM: (
        "Store a piece of professional knowledge for future sessions.",
        AddKnowledgeItemArgs,
    ),
    ToolName.LIST_KNOWLEDGE_ITEMS: (
        "List your stored knowledge items, optionally filtered by type.",
        ListKnowledgeItemsArgs,
    ),
    ToolName.REMOVE_KNOWLEDGE_ITEM: (
        "Remove one of your knowledge items that is outdated or wrong.",
        RemoveKnowledgeItemArgs,
    ),
}


@dataclass(slots=True)
class ToolContext:
    """Who is calling a tool, and for which task."""

    agent_id: str
    owner: Owner
    is_lead: bool
    task_id: int | None = None
    task_source: TaskSource | None = None


@dataclass(slots=True)
class ToolResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def ok(cls, **data: Any) -> ToolResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    def to_content(self) -> str:
        """Serialize for the tool-result message fed back to the model."""

        if self.success:
            return json.dumps({"success": True, "data": self.data}, ensure_ascii=False, default=str)
        return json.dumps({"success": False, "error": self.error}, ensure_ascii=False)


def catalog_for(*, is_lead: bool) -> frozenset[ToolName]:
    return LEAD_TOOLS if is_lead else SUBORDINATE_TOOLS


def tool_specs(*, is_lead: bool) -> list[ToolSpec]:
    """Tool specs advertised to the model, in a stable order."""

    specs: list[ToolSpec] = []
    for name in sorted(catalog_for(is_lead=is_lead), key=lambda item: item.value):
        description, args_model = TOOL_DEFINITIONS[name]
        schema = args_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        specs.append(ToolSpec(name=name.value, description=description, parameters=schema))
    return specs


class ToolExecutor:
    """Validate and run one tool call on behalf of an agent."""

    def __init__(self, *, repository: AgentRepository, queue: TaskQueue) -> None:
        self.repository = repository
        self.queue = queue

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Never raises: every rejection or failure becomes ``ToolResult.error``."""

        try:
            tool = ToolName(name)
        except ValueError:
            return ToolResult.fail(f"Unknown tool: {name}")

        if tool not in catalog_for(is_lead=context.is_lead):
            if tool in SUBORDINATE_ONLY_TOOLS:
                return ToolResult.fail("Team leads cannot use this tool")
            return ToolResult.fail(f"Only leads can use {tool.value}")

        _, args_model = TOOL_DEFINITIONS[tool]
        try:
            args = args_model.model_validate(arguments)
        except ValidationError as exc:
            return ToolResult.fail(f"Invalid parameters: {exc}")

        try:
            return self._dispatch(tool, args, context)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Tool %s failed for agent %s: %s",
                tool.value,
                context.agent_id,
                error,
            )
            return ToolResult.fail(f"{type(error).__name__}: {error}")

    def _dispatch(  # noqa: PLR0911
        self,
        tool: ToolName,
        args: ToolArgs,
        context: ToolContext,
    ) -> ToolResult:
        match tool:
            case ToolName.DELEGATE_TO_AGENT:
                return self._delegate(_as(args, DelegateToAgentArgs), context)
            case ToolName.GET_TEAM_STATUS:
                return self._team_status(context)
            case ToolName.CREATE_BRIEFING:
                return self._create_briefing(_as(args, CreateBriefingArgs), context)
            case ToolName.REQUEST_USER_INPUT:
                return self._request_user_input(_as(args, RequestUserInputArgs), context)
            case ToolName.LIST_BRIEFINGS:
                return self._list_briefings(_as(args, ListBriefingsArgs), context)
            case ToolName.GET_BRIEFING:
                return self._get_briefing(_as(args, GetBriefingArgs), context)
            case ToolName.QUEUE_TASK_FOR_SELF:
                return self._queue_for_self(_as(args, QueueTaskForSelfArgs), context)
            case ToolName.REPORT_TO_LEAD:
                return self._report_to_lead(_as(args, ReportToLeadArgs), context)
            case ToolName.REQUEST_INPUT:
                return self._request_input(_as(args, RequestInputArgs), context)
            case ToolName.ADD_KNOWLEDGE_ITEM:
                return self._add_knowledge(_as(args, AddKnowledgeItemArgs), context)
            case ToolName.LIST_KNOWLEDGE_ITEMS:
                return self._list_knowledge(_as(args, ListKnowledgeItemsArgs), context)
            case ToolName.REMOVE_KNOWLEDGE_ITEM:
                return self._remove_knowledge(_as(args, RemoveKnowledgeItemArgs), context)
        assert_never(tool)

    def _delegate(self, args: DelegateToAgentArgs, context: ToolContext) -> ToolResult:
        target = self.repository.get_agent(args.agent_id)
        if target is None or target.parent_agent_id != context.agent_id:
            return ToolResult.fail("Can only delegate to agents on your team")
        task = self.queue.enqueue(
            TaskCreate(
                assigned_to_id=target.agent_id,
                owner=target.owner,
                task=args.task,
                source=TaskSource.DELEGATION,
                assigned_by_id=context.agent_id,
            ),
        )
        logger.info("Agent %s delegated task %s to %s", context.agent_id, task.task_id, target.name)
        return ToolResult.ok(
            task_id=task.task_id,
            delegated_to=target.agent_id,
            message=f"Task delegated to {target.name}",
        )

    def _team_status(self, context: ToolContext) -> ToolResult:
        agents = []
        for child in self.repository.list_children(context.agent_id):
            status = self.queue.queue_status(child.agent_id)
            agents.append(
                {
                    "agentId": child.agent_id,
                    "name": child.name,
                    "role": child.role,
                    "status": child.status.value,
                    "pendingTasks": status.pending_count,
                    "inProgressTasks": status.in_progress_count,
                },
            )
        return ToolResult.ok(
            owner=_owner_data(context.owner),
            agents=agents,
            summary={
                "totalAgents": len(agents),
                "idleAgents": sum(1 for item in agents if item["status"] == AgentStatus.IDLE.value),
                "runningAgents": sum(
                    1 for item in agents if item["status"] == AgentStatus.RUNNING.value
                ),
            },
        )

    def _create_briefing(self, args: CreateBriefingArgs, context: ToolContext) -> ToolResult:
        briefing = self.repository.create_briefing_with_inbox(
            agent_id=context.agent_id,
            owner=context.owner,
            briefing=BriefingWrite(
                title=args.title,
                summary=args.summary,
                content=args.full_message,
            ),
        )
        return ToolResult.ok(
            briefing_id=briefing.briefing_id,
            message=f"Created briefing and inbox notification: {args.title}",
        )

    def _request_user_input(self, args: RequestUserInputArgs, context: ToolContext) -> ToolResult:
        item = self.repository.create_feedback_request(
            agent_id=context.agent_id,
            owner=context.owner,
            title=args.title,
            content=args.summary,
        )
        self.repository.append_message(
            context.agent_id,
            ConversationMode.FOREGROUND,
            MessageRole.ASSISTANT,
            args.full_message,
        )
        return ToolResult.ok(
            inbox_item_id=item.inbox_item_id,
            message=f"Requested user feedback and added message to conversation: {args.title}",
        )

    def _list_briefings(self, args: ListBriefingsArgs, context: ToolContext) -> ToolResult:
        briefings = self.repository.list_briefings(
            owner=context.owner,
            query=args.query,
            limit=args.limit,
        )
        return ToolResult.ok(
            query=args.query,
            count=len(briefings),
            briefings=[_briefing_metadata(item) for item in briefings],
        )

    def _get_briefing(self, args: GetBriefingArgs, context: ToolContext) -> ToolResult:
        briefing = self.repository.get_briefing(args.briefing_id)
        if briefing is None or briefing.owner != context.owner:
            return ToolResult.fail("Briefing not found")
        return ToolResult.ok(briefing={**_briefing_metadata(briefing), "content": briefing.content})

    def _queue_for_self(self, args: QueueTaskForSelfArgs, context: ToolContext) -> ToolResult:
        if context.task_source == TaskSource.SELF:
            return ToolResult.fail("Cannot queue a self task while processing a self task")
        task = self.queue.enqueue(
            TaskCreate(
                assigned_to_id=context.agent_id,
                owner=context.owner,
                task=args.task,
                source=TaskSource.SELF,
                priority=args.priority,
            ),
        )
        return ToolResult.ok(task_id=task.task_id, message="Task queued for a later step")

    def _report_to_lead(self, args: ReportToLeadArgs, context: ToolContext) -> ToolResult:
        task = (
            self.queue.get_task(context.task_id)
            if context.task_id is not None
            else self.queue.current_task(context.agent_id)
        )
        if task is None:
            return ToolResult.fail("No in-progress task found to report on")
        if args.status == "success":
            changed = self.queue.complete_with_result(task.task_id, args.result)
        else:
            changed = self.queue.fail(task.task_id, args.result)
        if not changed:
            return ToolResult.fail("No in-progress task found to report on")

        agent = self.repository.require_agent(context.agent_id)
        if agent.parent_agent_id is not None:
            self.repository.append_message(
                agent.parent_agent_id,
                ConversationMode.BACKGROUND,
                MessageRole.USER,
                f"Subordinate {agent.name} reports: {args.result}",
            )
        outcome = "completed" if args.status == "success" else "failed"
        return ToolResult.ok(
            task_id=task.task_id,
            reported_to=agent.parent_agent_id,
            message=f"Task {outcome}. Result reported to team lead.",
        )

    def _request_input(self, args: RequestInputArgs, context: ToolContext) -> ToolResult:
        agent = self.repository.require_agent(context.agent_id)
        if agent.parent_agent_id is None:
            return ToolResult.fail("Could not find team lead")
        message = self.repository.append_message(
            agent.parent_agent_id,
            ConversationMode.BACKGROUND,
            MessageRole.USER,
            f"Subordinate {agent.name} asks: {args.question}",
        )
        return ToolResult.ok(
            question_id=message.message_id,
            message="Question sent to team lead. Awaiting response.",
        )

    def _add_knowledge(self, args: AddKnowledgeItemArgs, context: ToolContext) -> ToolResult:
        item = self.repository.add_knowledge_item(
            context.agent_id,
            args.type,
            args.content,
            confidence=args.confidence,
        )
        return ToolResult.ok(
            knowledge_item_id=item.knowledge_item_id,
            message=f"Stored {item.type.value} knowledge item",
        )

    def _list_knowledge(self, args: ListKnowledgeItemsArgs, context: ToolContext) -> ToolResult:
        items = self.repository.list_knowledge_items(
            context.agent_id,
            item_type=args.type,
            limit=args.limit,
        )
        return ToolResult.ok(
            count=len(items),
            knowledge_items=[
                {
                    "id": item.knowledge_item_id,
                    "type": item.type.value,
                    "content": item.content,
                    "confidence": item.confidence,
                }
                for item in items
            ],
        )

    def _remove_knowledge(self, args: RemoveKnowledgeItemArgs, context: ToolContext) -> ToolResult:
        if not self.repository.remove_knowledge_item(context.agent_id, args.knowledge_item_id):
            return ToolResult.fail("Knowledge item not found")
        return ToolResult.ok(message="Knowledge item removed")


def _as(args: ToolArgs, model: type[ArgsT]) -> ArgsT:
    if not isinstance(args, model):
        raise TypeError(f"Expected {model.__name__}, got {type(args).__name__}")
    return args


def _owner_data(owner: Owner) -> dict[str, str]:
    if isinstance(owner, TeamOwner):
        return {"teamId": owner.team_id}
    return {"aideId": owner.aide_id}


def _briefing_metadata(briefing: BriefingView) -> dict[str, Any]:
    return {
        "id": briefing.briefing_id,
        "title": briefing.title,
        "summary": briefing.summary,
        "createdAt": briefing.created_at.isoformat(),
    }

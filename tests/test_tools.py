from __future__ import annotations

import json

import allure
import pytest

from crew_runtime.agents.models import (
    AgentView,
    ConversationMode,
    InboxItemType,
    MessageRole,
    OwnerView,
    TaskCreate,
    TaskSource,
    TaskStatus,
)
from crew_runtime.agents.repository import AgentRepository
from crew_runtime.agents.task_queue import TaskQueue
from crew_runtime.agents.tools import (
    LEAD_TOOLS,
    SUBORDINATE_TOOLS,
    ToolContext,
    ToolExecutor,
    ToolName,
    ToolResult,
    tool_specs,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Agent Tools"),
]


@pytest.fixture()
def executor(repository: AgentRepository, queue: TaskQueue) -> ToolExecutor:
    return ToolExecutor(repository=repository, queue=queue)


def _context(agent: AgentView, **overrides) -> ToolContext:
    return ToolContext(
        agent_id=agent.agent_id,
        owner=agent.owner,
        is_lead=agent.is_lead,
        **overrides,
    )


def test_tool_specs_follow_the_role_catalog() -> None:
    lead_names = {spec.name for spec in tool_specs(is_lead=True)}
    subordinate_names = {spec.name for spec in tool_specs(is_lead=False)}

    assert lead_names == {tool.value for tool in LEAD_TOOLS}
    assert subordinate_names == {tool.value for tool in SUBORDINATE_TOOLS}
    assert "delegateToAgent" not in subordinate_names
    assert "reportToLead" not in lead_names

    delegate = next(spec for spec in tool_specs(is_lead=True) if spec.name == "delegateToAgent")
    assert set(delegate.parameters["properties"]) == {"agentId", "task"}
    assert delegate.parameters["required"] == ["agentId", "task"]


def test_tool_result_serializes_for_the_model() -> None:
    ok = json.loads(ToolResult.ok(count=2).to_content())
    assert ok == {"success": True, "data": {"count": 2}}
    assert json.loads(ToolResult.fail("nope").to_content()) == {"success": False, "error": "nope"}


@pytest.mark.anyio
async def test_lead_delegates_to_own_subordinate(
    executor: ToolExecutor,
    queue: TaskQueue,
    lead: AgentView,
    subordinate: AgentView,
) -> None:
    result = await executor.execute(
        "delegateToAgent",
        {"agentId": subordinate.agent_id, "task": "Collect pricing pages"},
        _context(lead),
    )

    assert result.success, result.error
    task = queue.get_task(result.data["task_id"])
    assert task is not None
    assert task.assigned_to_id == subordinate.agent_id
    assert task.assigned_by_id == lead.agent_id
    assert task.source == TaskSource.DELEGATION
    assert task.status == TaskStatus.PENDING


@pytest.mark.anyio
async def test_delegation_outside_the_team_is_rejected(
    executor: ToolExecutor,
    repository: AgentRepository,
    queue: TaskQueue,
    lead: AgentView,
) -> None:
    other_team = repository.create_team(name="Other")
    other_lead = repository.create_agent(owner=other_team.owner, name="Eve", role="Lead")
    stranger = repository.create_agent(
        owner=other_team.owner,
        name="Mallory",
        role="Analyst",
        parent_agent_id=other_lead.agent_id,
    )

    result = await executor.execute(
        "delegateToAgent",
        {"agentId": stranger.agent_id, "task": "Do my work"},
        _context(lead),
    )

    assert not result.success
    assert result.error == "Can only delegate to agents on your team"
    assert queue.queue_status(stranger.agent_id).pending_count == 0


@pytest.mark.anyio
async def test_catalog_is_enforced_per_role(
    executor: ToolExecutor,
    lead: AgentView,
    subordinate: AgentView,
) -> None:
    as_subordinate = await executor.execute(
        "delegateToAgent",
        {"agentId": lead.agent_id, "task": "x"},
        _context(subordinate),
    )
    as_lead = await executor.execute(
        "reportToLead",
        {"result": "done", "status": "success"},
        _context(lead),
    )
    unknown = await executor.execute("launchRockets", {}, _context(lead))

    assert as_subordinate.error == "Only leads can use delegateToAgent"
    assert as_lead.error == "Team leads cannot use this tool"
    assert unknown.error == "Unknown tool: launchRockets"


@pytest.mark.anyio
async def test_invalid_parameters_are_reported_not_raised(
    executor: ToolExecutor,
    lead: AgentView,
) -> None:
    missing = await executor.execute("delegateToAgent", {"agentId": "x"}, _context(lead))
    extra = await executor.execute("getTeamStatus", {"verbose": True}, _context(lead))
    out_of_range = await executor.execute(
        "addKnowledgeItem",
        {"type": "fact", "content": "x", "confidence": 2},
        _context(lead),
    )

    for result in (missing, extra, out_of_range):
        assert not result.success
        assert result.error is not None
        assert result.error.startswith("Invalid parameters")


@pytest.mark.anyio
async def test_queue_task_for_self_is_not_recursive(
    executor: ToolExecutor,
    queue: TaskQueue,
    lead: AgentView,
) -> None:
    from_user = await executor.execute(
        "queueTaskForSelf",
        {"task": "Follow up tomorrow", "priority": 1},
        _context(lead, task_source=TaskSource.USER),
    )
    from_self = await executor.execute(
        "queueTaskForSelf",
        {"task": "Follow up again"},
        _context(lead, task_source=TaskSource.SELF),
    )

    assert from_user.success
    queued = queue.get_task(from_user.data["task_id"])
    assert queued is not None
    assert queued.source == TaskSource.SELF
    assert queued.priority == 1
    assert from_self.error == "Cannot queue a self task while processing a self task"


@pytest.mark.anyio
async def test_report_to_lead_finishes_task_and_notifies_lead(
    executor: ToolExecutor,
    repository: AgentRepository,
    queue: TaskQueue,
    lead: AgentView,
    subordinate: AgentView,
) -> None:
    queue.enqueue(
        TaskCreate(
            assigned_to_id=subordinate.agent_id,
            owner=subordinate.owner,
            task="Collect pricing pages",
            source=TaskSource.DELEGATION,
            assigned_by_id=lead.agent_id,
        ),
    )
    claimed = queue.claim_next(subordinate.agent_id)
    assert claimed is not None

    result = await executor.execute(
        "reportToLead",
        {"result": "Found 3 pricing pages", "status": "success"},
        _context(subordinate, task_id=claimed.task_id, task_source=claimed.source),
    )

    assert result.success, result.error
    finished = queue.get_task(claimed.task_id)
    assert finished is not None
    assert finished.status == TaskStatus.COMPLETED
    assert finished.result == "Found 3 pricing pages"
    messages = repository.list_messages(lead.agent_id, ConversationMode.BACKGROUND)
    assert [(message.role, message.content) for message in messages] == [
        (MessageRole.USER, "Subordinate Bob reports: Found 3 pricing pages"),
    ]

    again = await executor.execute(
        "reportToLead",
        {"result": "again", "status": "failure"},
        _context(subordinate, task_id=claimed.task_id),
    )
    assert again.error == "No in-progress task found to report on"


@pytest.mark.anyio
async def test_request_input_reaches_lead_background_conversation(
    executor: ToolExecutor,
    repository: AgentRepository,
    lead: AgentView,
    subordinate: AgentView,
) -> None:
    result = await executor.execute(
        "requestInput",
        {"question": "Which region first?"},
        _context(subordinate),
    )

    assert result.success
    messages = repository.list_messages(lead.agent_id, ConversationMode.BACKGROUND)
    assert messages[-1].content == "Subordinate Bob asks: Which region first?"
    assert result.data["question_id"] == messages[-1].message_id


@pytest.mark.anyio
async def test_briefing_tools_scope_to_owner(
    executor: ToolExecutor,
    repository: AgentRepository,
    team: OwnerView,
    lead: AgentView,
) -> None:
    created = await executor.execute(
        "createBriefing",
        {
            "title": "Weekly digest",
            "summary": "Two launches this week.",
            "fullMessage": "Launch A and launch B, details follow.",
        },
        _context(lead),
    )
    assert created.success
    assert created.data["message"] == "Created briefing and inbox notification: Weekly digest"

    listed = await executor.execute("listBriefings", {"query": "weekly"}, _context(lead))
    assert listed.data["count"] == 1
    fetched = await executor.execute(
        "getBriefing",
        {"briefingId": created.data["briefing_id"]},
        _context(lead),
    )
    assert fetched.data["briefing"]["content"] == "Launch A and launch B, details follow."

    other_team = repository.create_team(name="Other")
    other_lead = repository.create_agent(owner=other_team.owner, name="Eve", role="Lead")
    hidden = await executor.execute(
        "getBriefing",
        {"briefingId": created.data["briefing_id"]},
        _context(other_lead),
    )
    assert hidden.error == "Briefing not found"


@pytest.mark.anyio
async def test_request_user_input_writes_inbox_and_conversation(
    executor: ToolExecutor,
    repository: AgentRepository,
    lead: AgentView,
) -> None:
    result = await executor.execute(
        "requestUserInput",
        {
            "title": "Scope question",
            "summary": "Should APAC be included?",
            "fullMessage": "I can cover APAC too, but it doubles the work. Include it?",
        },
        _context(lead),
    )

    assert result.success
    inbox = repository.list_inbox()
    assert [(item.type, item.content) for item in inbox] == [
        (InboxItemType.FEEDBACK, "Should APAC be included?"),
    ]
    foreground = repository.list_messages(lead.agent_id, ConversationMode.FOREGROUND)
    assert foreground[-1].role == MessageRole.ASSISTANT
    assert foreground[-1].content.startswith("I can cover APAC too")


@pytest.mark.anyio
async def test_team_status_reports_children_queues(
    executor: ToolExecutor,
    queue: TaskQueue,
    lead: AgentView,
    subordinate: AgentView,
) -> None:
    queue.enqueue(
        TaskCreate(
            assigned_to_id=subordinate.agent_id,
            owner=subordinate.owner,
            task="x",
            source=TaskSource.DELEGATION,
            assigned_by_id=lead.agent_id,
        ),
    )

    result = await executor.execute("getTeamStatus", {}, _context(lead))

    assert result.success
    assert result.data["agents"] == [
        {
            "agentId": subordinate.agent_id,
            "name": "Bob",
            "role": "Analyst",
            "status": "idle",
            "pendingTasks": 1,
            "inProgressTasks": 0,
        },
    ]
    assert result.data["summary"]["totalAgents"] == 1


@pytest.mark.anyio
async def test_knowledge_tools_manage_own_items(
    executor: ToolExecutor,
    lead: AgentView,
    subordinate: AgentView,
) -> None:
    added = await executor.execute(
        "addKnowledgeItem",
        {"type": "technique", "content": "Use the sitemap", "confidence": 0.7},
        _context(subordinate),
    )
    assert added.success
    item_id = added.data["knowledge_item_id"]

    listed = await executor.execute(
        "listKnowledgeItems",
        {"type": "technique"},
        _context(subordinate),
    )
    assert [item["content"] for item in listed.data["knowledge_items"]] == ["Use the sitemap"]

    foreign = await executor.execute(
        "removeKnowledgeItem",
        {"knowledgeItemId": item_id},
        _context(lead),
    )
    assert foreign.error == "Knowledge item not found"
    removed = await executor.execute(
        "removeKnowledgeItem",
        {"knowledgeItemId": item_id},
        _context(subordinate),
    )
    assert removed.success
    assert ToolName.REMOVE_KNOWLEDGE_ITEM in SUBORDINATE_TOOLS

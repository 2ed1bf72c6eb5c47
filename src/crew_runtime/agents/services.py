"""Use-case services: wiring plus team, aide and subordinate bootstrap."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from crew_runtime.agents.agent import Agent
from crew_runtime.agents.llm import LlmClient, build_llm_client
from crew_runtime.agents.models import (
    AgentView,
    ConversationMode,
    OwnerView,
    TaskCreate,
    TaskSource,
    TaskView,
)
from crew_runtime.agents.prompts import BOOTSTRAP_TASK
from crew_runtime.agents.repository import AgentRepository
from crew_runtime.agents.runner import Runner
from crew_runtime.agents.task_queue import TaskQueue
from crew_runtime.agents.threads import ThreadManager
from crew_runtime.agents.tools import ToolExecutor
from crew_runtime.config import Settings
from crew_runtime.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CreateOwner:
    """High-level command to create a team or aide with its lead agent."""

    name: str
    purpose: str | None = None
    lead_name: str | None = None
    lead_role: str = "Team lead"
    lead_system_prompt: str | None = None


@dataclass(slots=True)
class OwnerBootstrap:
    owner: OwnerView
    lead: AgentView
    bootstrap_task: TaskView


class CrewServices:
    """Owns the database handle and builds agents and the runner on top of it."""

    def __init__(
        self,
        *,
        settings: Settings,
        database: Database,
        llm: LlmClient | None = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self._llm = llm
        self.repository = AgentRepository(database)
        self.queue = TaskQueue(database)
        self.threads = ThreadManager(database)
        self.tools = ToolExecutor(repository=self.repository, queue=self.queue)

    @classmethod
    def open(cls, settings: Settings, *, llm: LlmClient | None = None) -> CrewServices:
        """Open the database and migrate it to head."""

        database = Database(
            settings.db_path,
            user_id=settings.user_context.user_id,
            user_name=settings.user_context.user_name,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        database.init_schema()
        return cls(settings=settings, database=database, llm=llm)

    @property
    def llm(self) -> LlmClient:
        """LLM client, built from settings on first use."""

        if self._llm is None:
            self._llm = build_llm_client(self.settings.llm)
        return self._llm

    async def aclose(self) -> None:
        if self._llm is not None:
            await self._llm.aclose()
        self.database.close()

    def build_agent(self, view: AgentView) -> Agent:
        return Agent(
            view,
            repository=self.repository,
            queue=self.queue,
            threads=self.threads,
            llm=self.llm,
            tools=self.tools,
            session_settings=self.settings.session,
            runner_settings=self.settings.runner,
        )

    def agent(self, agent_id: str) -> Agent:
        return self.build_agent(self.repository.require_agent(agent_id))

    def build_runner(self) -> Runner:
        return Runner(
            repository=self.repository,
            queue=self.queue,
            agent_factory=self.build_agent,
            settings=self.settings.runner,
        )

    def create_team(self, command: CreateOwner) -> OwnerBootstrap:
        owner = self.repository.create_team(name=command.name, purpose=command.purpose)
        return self._bootstrap_lead(owner, command)

    def create_aide(self, command: CreateOwner) -> OwnerBootstrap:
        owner = self.repository.create_aide(name=command.name, purpose=command.purpose)
        return self._bootstrap_lead(owner, command)

    def add_subordinate(
        self,
        lead_id: str,
        *,
        name: str,
        role: str,
        system_prompt: str | None = None,
    ) -> AgentView:
        """Attach a new subordinate under a lead, sharing the lead's owner."""

        lead = self.repository.require_agent(lead_id)
        if not lead.is_lead:
            raise RuntimeError(f"Agent {lead_id} is not a lead; subordinates need a lead parent.")
        subordinate = self.repository.create_agent(
            owner=lead.owner,
            name=name,
            role=role,
            system_prompt=system_prompt,
            parent_agent_id=lead.agent_id,
        )
        logger.info("Added subordinate %s (%s) under %s", name, subordinate.agent_id, lead.name)
        return subordinate

    def _bootstrap_lead(self, owner: OwnerView, command: CreateOwner) -> OwnerBootstrap:
        lead = self.repository.create_agent(
            owner=owner.owner,
            name=command.lead_name or f"{command.name} Lead",
            role=command.lead_role,
            system_prompt=command.lead_system_prompt,
        )
        self.repository.get_or_create_conversation(lead.agent_id, ConversationMode.FOREGROUND)
        task = self.queue.enqueue(
            TaskCreate(
                assigned_to_id=lead.agent_id,
                owner=owner.owner,
                task=BOOTSTRAP_TASK.format(purpose=command.purpose or command.name),
                source=TaskSource.SYSTEM,
            ),
        )
        logger.info("Created %s with lead %s", owner.name, lead.agent_id)
        return OwnerBootstrap(owner=owner, lead=lead, bootstrap_task=task)

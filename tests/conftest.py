"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest
from pydantic import BaseModel

from crew_runtime.agents.llm import EchoLlmClient, LlmMessage, LlmResponse, ToolSpec
from crew_runtime.agents.models import AgentView, OwnerView
from crew_runtime.agents.repository import AgentRepository
from crew_runtime.agents.services import CrewServices
from crew_runtime.agents.task_queue import TaskQueue
from crew_runtime.config import Settings
from crew_runtime.storage.database import Database


class ScriptedLlm:
    """LLM fake: replays queued responses, then falls back to echo behaviour."""

    def __init__(self) -> None:
        self.responses: list[LlmResponse | Exception] = []
        self.objects: dict[type[BaseModel], list[BaseModel | Exception]] = {}
        self.calls: list[dict[str, Any]] = []
        self._echo = EchoLlmClient()

    def script(self, *items: LlmResponse | Exception) -> None:
        self.responses.extend(items)

    def script_object(self, schema: type[BaseModel], *items: BaseModel | Exception) -> None:
        self.objects.setdefault(schema, []).extend(items)

    async def generate(
        self,
        messages: Sequence[LlmMessage],
        *,
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] = (),
        max_tokens: int | None = None,
    ) -> LlmResponse:
        self.calls.append(
            {
                "kind": "generate",
                "messages": list(messages),
                "system_prompt": system_prompt,
                "tools": [spec.name for spec in tools],
            },
        )
        if not self.responses:
            return await self._echo.generate(messages)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate_object(self, messages, schema, *, system_prompt=None):
        self.calls.append({"kind": "object", "schema": schema, "system_prompt": system_prompt})
        queued = self.objects.get(schema)
        if not queued:
            return schema.model_validate({})
        item = queued.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self) -> None:
        return None


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(db_path=tmp_path / "crew.db")


@pytest.fixture()
def database(settings: Settings) -> Iterator[Database]:
    database = Database(settings.db_path)
    database.init_schema()
    yield database
    database.close()


@pytest.fixture()
def repository(database: Database) -> AgentRepository:
    return AgentRepository(database)


@pytest.fixture()
def queue(database: Database) -> TaskQueue:
    return TaskQueue(database)


@pytest.fixture()
def team(repository: AgentRepository) -> OwnerView:
    return repository.create_team(name="Research", purpose="Track competitors")


@pytest.fixture()
def lead(repository: AgentRepository, team: OwnerView) -> AgentView:
    return repository.create_agent(owner=team.owner, name="Ada", role="Team lead")


@pytest.fixture()
def subordinate(repository: AgentRepository, lead: AgentView) -> AgentView:
    return repository.create_agent(
        owner=lead.owner,
        name="Bob",
        role="Analyst",
        parent_agent_id=lead.agent_id,
    )


@pytest.fixture()
def llm() -> ScriptedLlm:
    return ScriptedLlm()


@pytest.fixture()
def services(settings: Settings, llm: ScriptedLlm) -> Iterator[CrewServices]:
    services = CrewServices.open(settings, llm=llm)
    yield services
    services.database.close()

from __future__ import annotations

import json

import allure
import httpx
import pytest

from crew_runtime.agents.knowledge import KnowledgeExtraction
from crew_runtime.agents.llm import (
    EchoLlmClient,
    LlmError,
    LlmMessage,
    LlmOutputError,
    LlmTimeoutError,
    OpenAICompatibleClient,
    ToolCall,
    ToolSpec,
    build_llm_client,
)
from crew_runtime.agents.memory import MemoryExtraction
from crew_runtime.config import LlmSettings

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("LLM Providers"),
]


def _completion(message: dict) -> dict:
    return {
        "model": "test-model",
        "choices": [{"index": 0, "message": message}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5},
    }


def _client(handler, requests: list[dict] | None = None) -> OpenAICompatibleClient:
    def _record(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(json.loads(request.content))
        return handler(request)

    return OpenAICompatibleClient(
        api_key="sk-test",
        base_url="https://llm.example.com/v1/",
        model="test-model",
        transport=httpx.MockTransport(_record),
    )


@pytest.mark.anyio
async def test_generate_sends_system_prompt_and_tools() -> None:
    requests: list[dict] = []
    seen_urls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen_urls.append(str(request.url))
        assert request.headers["Authorization"] == "Bearer sk-test"
        return httpx.Response(200, json=_completion({"role": "assistant", "content": "Hi"}))

    client = _client(_handler, requests)
    response = await client.generate(
        [LlmMessage(role="user", content="Hello")],
        system_prompt="You are Ada.",
        tools=[
            ToolSpec(
                name="getTeamStatus",
                description="Team status",
                parameters={"type": "object", "properties": {}},
            ),
        ],
        max_tokens=50,
    )
    await client.aclose()

    assert response.text == "Hi"
    assert response.tool_calls == []
    assert seen_urls == ["https://llm.example.com/v1/chat/completions"]
    payload = requests[0]
    assert payload["model"] == "test-model"
    assert payload["max_tokens"] == 50
    assert payload["messages"] == [
        {"role": "system", "content": "You are Ada."},
        {"role": "user", "content": "Hello"},
    ]
    assert payload["tools"][0]["function"]["name"] == "getTeamStatus"


@pytest.mark.anyio
async def test_generate_parses_tool_calls_and_replays_them() -> None:
    requests: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=_completion(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {
                                "name": "delegateToAgent",
                                "arguments": '{"agentId": "a1", "task": "Research"}',
                            },
                        },
                    ],
                },
            ),
        )

    client = _client(_handler, requests)
    response = await client.generate([LlmMessage(role="user", content="Go")])
    await client.generate(
        [
            LlmMessage(role="user", content="Go"),
            LlmMessage(role="assistant", content="", tool_calls=response.tool_calls),
            LlmMessage(role="tool", content='{"success": true}', tool_call_id="call_1"),
        ],
    )
    await client.aclose()

    assert response.text == ""
    assert response.tool_calls == [
        ToolCall(
            call_id="call_1",
            name="delegateToAgent",
            arguments={"agentId": "a1", "task": "Research"},
        ),
    ]
    replayed = requests[1]["messages"]
    assert "tools" not in requests[1]
    assert replayed[1]["tool_calls"][0]["function"]["name"] == "delegateToAgent"
    assert json.loads(replayed[1]["tool_calls"][0]["function"]["arguments"]) == {
        "agentId": "a1",
        "task": "Research",
    }
    assert replayed[2]["tool_call_id"] == "call_1"


@pytest.mark.anyio
async def test_generate_object_validates_json_content() -> None:
    requests: list[dict] = []
    content = json.dumps(
        {"items": [{"type": "fact", "content": "Prices rose 5%", "confidence": 0.8}]},
    )

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion({"role": "assistant", "content": content}))

    client = _client(_handler, requests)
    extraction = await client.generate_object(
        [LlmMessage(role="user", content="Extract")],
        KnowledgeExtraction,
        system_prompt="Extract learnings.",
    )
    await client.aclose()

    assert [item.content for item in extraction.items] == ["Prices rose 5%"]
    assert requests[0]["response_format"] == {"type": "json_object"}
    system_message = requests[0]["messages"][0]
    assert system_message["role"] == "system"
    assert system_message["content"].startswith("Extract learnings.")
    assert "JSON schema" in system_message["content"]


@pytest.mark.anyio
async def test_generate_object_rejects_invalid_output() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=_completion({"role": "assistant", "content": '{"items": [{"type": "rumor"}]}'}),
        )

    client = _client(_handler)
    with pytest.raises(LlmOutputError, match="failed validation"):
        await client.generate_object([LlmMessage(role="user", content="x")], KnowledgeExtraction)
    await client.aclose()


@pytest.mark.anyio
async def test_http_errors_become_llm_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    client = _client(_handler)
    with pytest.raises(LlmError, match="HTTP 500"):
        await client.generate([LlmMessage(role="user", content="x")])
    await client.aclose()


@pytest.mark.anyio
async def test_timeouts_become_llm_timeout_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    client = _client(_handler)
    with pytest.raises(LlmTimeoutError):
        await client.generate([LlmMessage(role="user", content="x")])
    await client.aclose()


@pytest.mark.anyio
async def test_malformed_responses_become_output_errors() -> None:
    def _no_choices(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    def _bad_arguments(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=_completion(
                {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [
                        {"id": "c1", "function": {"name": "getTeamStatus", "arguments": "{oops"}},
                    ],
                },
            ),
        )

    for handler, match in ((_no_choices, "Malformed"), (_bad_arguments, "malformed arguments")):
        client = _client(handler)
        with pytest.raises(LlmOutputError, match=match):
            await client.generate([LlmMessage(role="user", content="x")])
        await client.aclose()


@pytest.mark.anyio
async def test_echo_client_repeats_last_user_turn() -> None:
    client = EchoLlmClient()

    response = await client.generate(
        [
            LlmMessage(role="user", content="first"),
            LlmMessage(role="assistant", content="reply"),
            LlmMessage(role="user", content="  track   the\nlaunch  "),
        ],
    )
    empty = await client.generate([])
    memories = await client.generate_object([], MemoryExtraction)

    assert response.text == "Noted: track the launch"
    assert response.tool_calls == []
    assert empty.text == "Noted."
    assert memories.memories == []
    assert client.calls == 3


def test_build_llm_client_selects_provider() -> None:
    assert isinstance(build_llm_client(LlmSettings()), EchoLlmClient)
    assert isinstance(
        build_llm_client(LlmSettings(provider="openai", api_key="sk-test")),
        OpenAICompatibleClient,
    )
    with pytest.raises(ValueError, match="Unsupported LLM provider"):
        build_llm_client(LlmSettings(provider="carrier-pigeon"))

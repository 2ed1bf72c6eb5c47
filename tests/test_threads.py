from __future__ import annotations

import logging

import allure
import pytest

from crew_runtime.agents.knowledge import chunk_transcript, format_transcript
from crew_runtime.agents.models import AgentView, MessageRole, ThreadStatus
from crew_runtime.agents.threads import ThreadManager
from crew_runtime.storage.database import Database

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Work-Session Threads"),
]


def test_start_session_always_creates_a_fresh_thread(database: Database, lead: AgentView) -> None:
    threads = ThreadManager(database)

    first = threads.start_session(lead.agent_id)
    second = threads.start_session(lead.agent_id)

    assert first.thread_id != second.thread_id
    assert first.status == ThreadStatus.ACTIVE
    assert threads.build_context(second.thread_id) == []


def test_append_assigns_gapless_sequence_numbers(database: Database, lead: AgentView) -> None:
    threads = ThreadManager(database)
    thread = threads.start_session(lead.agent_id)

    threads.append(thread.thread_id, MessageRole.USER, "task")
    threads.append(
        thread.thread_id,
        MessageRole.ASSISTANT,
        "answer",
        tool_calls=[{"name": "getTeamStatus", "success": True}],
    )
    threads.append(thread.thread_id, MessageRole.USER, "next task")

    context = threads.build_context(thread.thread_id)
    assert [message.sequence_number for message in context] == [1, 2, 3]
    assert [message.content for message in context] == ["task", "answer", "next task"]
    assert context[1].tool_calls == [{"name": "getTeamStatus", "success": True}]
    assert context[0].tool_calls is None


def test_should_compact_only_above_threshold(database: Database, lead: AgentView) -> None:
    threads = ThreadManager(database)
    thread = threads.start_session(lead.agent_id)
    for index in range(4):
        threads.append(thread.thread_id, MessageRole.USER, f"message {index}")

    assert threads.message_count(thread.thread_id) == 4
    assert threads.should_compact(thread.thread_id, threshold=4) is False
    assert threads.should_compact(thread.thread_id, threshold=3) is True


def test_compaction_keeps_recent_messages_behind_summary(
    database: Database,
    lead: AgentView,
) -> None:
    threads = ThreadManager(database)
    thread = threads.start_session(lead.agent_id)
    for index in range(12):
        threads.append(thread.thread_id, MessageRole.USER, f"message {index}")

    removed = threads.compact_with_summary(thread.thread_id, "Summary of 0-8", keep_recent=3)

    assert removed == 9
    context = threads.build_context(thread.thread_id)
    assert [message.sequence_number for message in context] == [1, 2, 3, 4]
    assert context[0].role == MessageRole.SYSTEM
    assert context[0].content == "Summary of 0-8"
    assert [message.content for message in context[1:]] == [
        "message 9",
        "message 10",
        "message 11",
    ]
    compacted = threads.get_thread(thread.thread_id)
    assert compacted is not None
    assert compacted.status == ThreadStatus.COMPACTED

    appended = threads.append(thread.thread_id, MessageRole.USER, "after compaction")
    assert appended.sequence_number == 5


def test_end_session_is_idempotent_and_closes_thread(database: Database, lead: AgentView) -> None:
    threads = ThreadManager(database)
    thread = threads.start_session(lead.agent_id)
    threads.append(thread.thread_id, MessageRole.USER, "task")

    assert threads.end_session(thread.thread_id) is True
    assert threads.end_session(thread.thread_id) is False

    ended = threads.get_thread(thread.thread_id)
    assert ended is not None
    assert ended.status == ThreadStatus.COMPLETED
    assert ended.completed_at is not None
    with pytest.raises(RuntimeError, match="completed"):
        threads.append(thread.thread_id, MessageRole.USER, "too late")


def test_append_to_unknown_thread_fails(database: Database) -> None:
    with pytest.raises(RuntimeError, match="not found"):
        ThreadManager(database).append("missing", MessageRole.USER, "hello")


def test_list_threads_newest_first(database: Database, lead: AgentView) -> None:
    threads = ThreadManager(database)
    older = threads.start_session(lead.agent_id)
    newer = threads.start_session(lead.agent_id)

    listed = threads.list_threads(lead.agent_id)
    assert [thread.thread_id for thread in listed] == [newer.thread_id, older.thread_id]


def _transcript_thread(database: Database, lead: AgentView):
    threads = ThreadManager(database)
    thread = threads.start_session(lead.agent_id)
    threads.append(thread.thread_id, MessageRole.USER, "first task")
    threads.append(thread.thread_id, MessageRole.ASSISTANT, "first answer")
    threads.append(thread.thread_id, MessageRole.USER, "second task")
    return threads.build_context(thread.thread_id)


def test_truncated_transcript_keeps_the_tail_and_logs(
    database: Database,
    lead: AgentView,
    caplog: pytest.LogCaptureFixture,
) -> None:
    messages = _transcript_thread(database, lead)

    with caplog.at_level(logging.WARNING, logger="crew_runtime.agents.knowledge"):
        text = format_transcript(messages, max_chars=20)

    assert text == "r\n\nUSER: second task"
    assert "Transcript truncated" in caplog.text
    assert "(40 dropped)" in caplog.text


def test_transcript_chunks_keep_every_message(
    database: Database,
    lead: AgentView,
    caplog: pytest.LogCaptureFixture,
) -> None:
    messages = _transcript_thread(database, lead)

    assert chunk_transcript(messages, max_chars=45) == [
        "USER: first task\n\nASSISTANT: first answer",
        "USER: second task",
    ]
    assert caplog.text == ""
    with caplog.at_level(logging.WARNING, logger="crew_runtime.agents.knowledge"):
        assert chunk_transcript(messages[1:2], max_chars=10) == ["rst answer"]
    assert "truncated" in caplog.text

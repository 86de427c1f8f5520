from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from run_engine.context.window import SUMMARY_END, ContextWindowManager, ContextWindowSettings, truncate_content
from run_engine.core.contracts import Message, MessageType
from run_engine.state.persistence import InMemoryPersistence, ThreadStore

T0 = datetime(2026, 2, 7, tzinfo=timezone.utc)


def _msg(i: int, type_: MessageType, content: object) -> Message:
    return Message(
        id=f"m{i}",
        thread_id="t1",
        type=type_,
        content=content,  # type: ignore[arg-type]
        is_llm_message=True,
        created_at=T0 + timedelta(seconds=i),
    )


def _manager(max_tokens: int) -> tuple[ContextWindowManager, ThreadStore]:
    threads = ThreadStore(InMemoryPersistence())
    return ContextWindowManager(threads, ContextWindowSettings(max_context_tokens=max_tokens)), threads


def _small(start: int) -> List[Message]:
    return [_msg(start + i, MessageType.USER if i % 2 == 0 else MessageType.ASSISTANT, "abcd" * 10) for i in range(3)]


def test_estimate_tokens() -> None:
    manager, _ = _manager(8000)
    assert manager.estimate_tokens("") == 0
    assert manager.estimate_tokens(None) == 0
    assert manager.estimate_tokens("abc") == 1
    assert manager.estimate_tokens("a" * 41) == 10


def test_history_that_fits_is_returned_unchanged() -> None:
    manager, threads = _manager(8000)
    history = _small(0)

    result = manager.apply("t1", history)

    assert [m.id for m in result] == ["m0", "m1", "m2"]
    assert threads.list_messages("t1") == []


def test_older_messages_are_summarized() -> None:
    manager, threads = _manager(200)
    older = [
        _msg(0, MessageType.USER, "word " * 400),
        _msg(1, MessageType.ASSISTANT, "reply " * 400),
        _msg(2, MessageType.TOOL_RESULT, {"tool_name": "files", "call_id": "c", "result": {"output": "x " * 1000}}),
    ]
    history = older + _small(3)

    result = manager.apply("t1", history)

    summary = result[0]
    assert summary.type == "summary"
    assert [m.id for m in result[1:]] == ["m3", "m4", "m5"]
    text = summary.text()
    assert text.startswith("CONVERSATION SUMMARY:\nThis is a summary of 3 earlier messages in this conversation.\n\n")
    assert text.endswith(SUMMARY_END)
    lines = text.splitlines()
    assert lines[3].startswith("User: word word") and lines[3].endswith("...")
    assert len(lines[3]) <= len("User: ") + 100 + 3
    assert lines[4].startswith("Assistant: reply")
    assert lines[5].startswith("Tool Result: {")
    assert len(lines[5]) <= len("Tool Result: ") + 50 + 3
    assert summary.created_at == older[0].created_at
    assert summary.metadata["compacted_count"] == 3
    assert summary.metadata["degraded"] is False
    assert summary.is_llm_message is False

    stored = threads.list_messages("t1", types=["summary"])
    assert [m.id for m in stored] == [summary.id]


def test_summary_id_is_stable_and_persisted_once() -> None:
    manager, threads = _manager(200)
    history = [_msg(0, MessageType.USER, "word " * 400)] + _small(1)

    first = manager.apply("t1", history)
    second = manager.apply("t1", history)

    assert first[0].id == second[0].id
    assert len(threads.list_messages("t1", types=["summary"])) == 1
    assert manager.store_summary(first[0]) is False


def test_overflowing_summary_is_truncated_but_keeps_header(caplog: pytest.LogCaptureFixture) -> None:
    manager, _ = _manager(60)
    history = [_msg(0, MessageType.USER, "word " * 400)] + _small(1)

    result = manager.apply("t1", history)

    summary = result[0]
    assert [m.id for m in result[1:]] == ["m1", "m2", "m3"]
    assert summary.metadata["degraded"] is True
    assert summary.text().startswith("CONVERSATION SUMMARY:\nThis is a summary of 1 earlier messages")
    recent_tokens = sum(manager.estimate_tokens(m.text()) for m in result[1:])
    assert manager.estimate_tokens(summary.text()) + recent_tokens <= 60
    assert "too large" in caplog.text


def test_walk_stops_at_first_overflow() -> None:
    manager, _ = _manager(30)
    history = [
        _msg(0, MessageType.USER, "a" * 40),
        _msg(1, MessageType.USER, "b" * 400),
        _msg(2, MessageType.USER, "c" * 40),
    ]
    older, recent, tokens = manager.split(history)

    # m0 would fit on its own but sits before the first overflow
    assert [m.id for m in older] == ["m0", "m1"]
    assert [m.id for m in recent] == ["m2"]
    assert tokens == 10


@pytest.mark.parametrize(
    "content,limit,expected",
    [
        ("short", 10, "short"),
        ("hello world again", 8, "hello..."),
        ("abcdefghij", 4, "abcd..."),
        ("hello world", 5, "hello..."),
    ],
)
def test_truncate_content(content: str, limit: int, expected: str) -> None:
    assert truncate_content(content, limit) == expected


@pytest.mark.parametrize("cap,expected_text", [(10, ""), (11, "C...")])
def test_nearly_full_budget_never_overflows(cap: int, expected_text: str) -> None:
    manager, _ = _manager(cap)
    history = [_msg(0, MessageType.USER, "x" * 100), _msg(1, MessageType.USER, "y" * 40)]

    result = manager.apply("t1", history)

    summary = result[0]
    assert [m.id for m in result[1:]] == ["m1"]
    assert summary.metadata["degraded"] is True
    assert summary.text() == expected_text
    total = sum(manager.estimate_tokens(m.text()) for m in result)
    assert total <= cap

from __future__ import annotations

import asyncio

import pytest

from run_engine.core.cancellation import CancellationToken
from run_engine.core.contracts import Message, MessageType
from run_engine.core.tool_execution import ExecutedToolCall, execute_tool_calls, strongest_signal, tool_result_message
from run_engine.llm.fake import FakeModelCall, FakeModelProvider
from run_engine.llm.protocol import ModelRequest, build_chat_messages, build_tools_payload, validate_model_provider
from run_engine.tools.protocol import CallingConvention, TerminalSignal, ToolCall, ToolResult, ToolSchema
from run_engine.tools.registry import ToolRegistry


class _NoCall:
    pass


class _ExtraRequired:
    async def call(self, request, model):  # type: ignore[no-untyped-def]
        return None


class _NoParams:
    async def call(self):  # type: ignore[no-untyped-def]
        return None


class _Flexible:
    async def call(self, request, *args, retries=3, **kwargs):  # type: ignore[no-untyped-def]
        return None


@pytest.mark.parametrize("provider", [_NoCall(), _ExtraRequired(), _NoParams()])
def test_validate_model_provider_rejects(provider: object) -> None:
    with pytest.raises(ValueError):
        validate_model_provider(provider)


def test_validate_model_provider_accepts() -> None:
    validate_model_provider(_Flexible())
    validate_model_provider(FakeModelProvider(calls=[]))


def test_build_chat_messages_maps_roles() -> None:
    history = [
        Message(thread_id="t1", type=MessageType.SUMMARY, content="CONVERSATION SUMMARY:", is_llm_message=True),
        Message(thread_id="t1", type=MessageType.USER, content="hi", is_llm_message=True),
        Message(thread_id="t1", type=MessageType.ASSISTANT, content="hello", is_llm_message=True),
        Message(
            thread_id="t1",
            type=MessageType.TOOL_RESULT,
            content={"tool_name": "read_file", "call_id": "c1", "result": {"ok": True, "output": "x"}},
            is_llm_message=True,
        ),
    ]
    ephemeral = Message(thread_id="t1", type=MessageType.USER, content=[{"type": "text", "text": "page state"}])
    request = ModelRequest(system_prompt="sys", history=history, model="m", ephemeral_context=ephemeral)

    out = build_chat_messages(request)
    assert [m["role"] for m in out] == ["system", "system", "user", "assistant", "user", "user"]
    assert out[0]["content"] == "sys"
    assert out[4]["content"] == 'Tool result (read_file): {"ok": true, "output": "x"}'
    assert out[5]["content"] == [{"type": "text", "text": "page state"}]


def test_build_tools_payload() -> None:
    schema = ToolSchema(
        name="read_file",
        calling_convention=CallingConvention.FUNCTION,
        description="Read a file",
        parameters={"type": "object", "properties": {"file_path": {"type": "string"}}},
    )
    request = ModelRequest(system_prompt="", history=[], model="m", tool_schemas=[schema])
    assert build_tools_payload(request) == [
        {
            "type": "function",
            "function": {
                "name": "read_file",
                "description": "Read a file",
                "parameters": {"type": "object", "properties": {"file_path": {"type": "string"}}},
            },
        }
    ]


def test_fake_provider_scripts_and_exhaustion() -> None:
    provider = FakeModelProvider(calls=[FakeModelCall(text="one", extra_messages=[{"content": {"status_type": "note"}}])])
    request = ModelRequest(system_prompt="", history=[], model="m", thread_id="t9")

    response = asyncio.run(provider.call(request))
    assert [m.type for m in response.messages] == ["assistant", "status"]
    assert response.messages[0].thread_id == "t9"
    assert response.messages[0].metadata == {"model": "m"}
    assert provider.call_count == 1

    with pytest.raises(ValueError):
        asyncio.run(provider.call(request))

    looping = FakeModelProvider(calls=[FakeModelCall(text="again")], repeat_last=True)
    for _ in range(3):
        assert asyncio.run(looping.call(request)).messages[0].content == "again"


def _executed(name: str, signal: TerminalSignal | None) -> ExecutedToolCall:
    return ExecutedToolCall(
        call=ToolCall(call_id=name, name=name, xml_tag_name=name),
        result=ToolResult.ok_payload(output=name, terminal_signal=signal),
    )


def test_strongest_signal_prefers_pause() -> None:
    assert strongest_signal([_executed("noop", None)]) is None
    picked = strongest_signal([_executed("complete", TerminalSignal.COMPLETED), _executed("ask", TerminalSignal.PAUSED)])
    assert picked is not None and picked.terminating_tool == "ask"
    only = strongest_signal([_executed("noop", None), _executed("complete", TerminalSignal.COMPLETED)])
    assert only is not None and only.terminating_tool == "complete"


def test_tool_result_message_metadata() -> None:
    message = tool_result_message("t1", _executed("complete", TerminalSignal.COMPLETED), assistant_message_id="a1")
    assert message.type == "tool_result" and message.is_llm_message
    assert message.content["tool_name"] == "complete"
    assert message.metadata == {
        "ok": True,
        "calling_convention": "xml",
        "terminal_signal": "completed",
        "assistant_message_id": "a1",
    }


def test_execute_tool_calls_rejects_unknown_strategy() -> None:
    registry = ToolRegistry()
    calls = [ToolCall(call_id="c1", name="anything")]
    assert asyncio.run(execute_tool_calls(registry, [], token=CancellationToken(), strategy="random")) == []
    with pytest.raises(ValueError):
        asyncio.run(execute_tool_calls(registry, calls, token=CancellationToken(), strategy="random"))

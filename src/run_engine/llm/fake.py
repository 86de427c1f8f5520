"""
Fake ModelProvider（离线回归夹具）。

用途：
- 在不依赖真实模型/外网的情况下，回归 orchestrator 的编排逻辑（模型输出 → 控制标记 → 工具执行 → 回注 → 继续）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from run_engine.core.contracts import Message, MessageType
from run_engine.llm.protocol import ModelRequest, ModelResponse
from run_engine.tools.protocol import TerminalSignal, ToolCall


@dataclass(frozen=True)
class FakeModelCall:
    """
    一次模型调用的预期输出。

    字段：
    - text：assistant 消息文本（None 表示不产出 assistant 消息）
    - tool_calls：原生函数调用
    - terminal_signal：provider 级终止信号
    - extra_messages：额外产出的消息（`{"type": ..., "content": ..., "metadata": ...}`）
    - error：非 None 时本次调用直接抛出该异常
    """

    text: Optional[str] = None
    tool_calls: Sequence[ToolCall] = ()
    terminal_signal: Optional[TerminalSignal] = None
    extra_messages: Sequence[Dict[str, Any]] = ()
    error: Optional[BaseException] = None


@dataclass
class FakeModelProvider:
    """
    用脚本化调用序列模拟模型。

    说明：
    - 每次 `call(...)` 消耗一个 `FakeModelCall`；耗尽后 `repeat_last=True` 时重复最后一个，否则抛 ValueError
    - `requests` 记录每次收到的 ModelRequest（用于断言历史/上下文）
    - `on_call(n)` 在第 n 次调用（1-based）开始时回调（例如在测试中触发取消）
    """

    calls: Sequence[FakeModelCall]
    repeat_last: bool = False
    on_call: Optional[Callable[[int], None]] = None
    requests: List[ModelRequest] = field(default_factory=list, init=False)

    @property
    def call_count(self) -> int:
        """已发生的调用次数。"""

        return len(self.requests)

    async def call(self, request: ModelRequest) -> ModelResponse:
        """按脚本返回一次模型响应。"""

        self.requests.append(request)
        idx = len(self.requests) - 1
        if self.on_call is not None:
            self.on_call(idx + 1)
        if idx >= len(self.calls):
            if not (self.repeat_last and self.calls):
                raise ValueError("FakeModelProvider calls exhausted")
            idx = len(self.calls) - 1
        scripted = self.calls[idx]
        if scripted.error is not None:
            raise scripted.error

        messages: List[Message] = []
        if scripted.text is not None:
            messages.append(
                Message(
                    thread_id=request.thread_id,
                    type=MessageType.ASSISTANT,
                    content=scripted.text,
                    is_llm_message=True,
                    metadata={"model": request.model},
                )
            )
        for extra in scripted.extra_messages:
            messages.append(
                Message(
                    thread_id=request.thread_id,
                    type=extra.get("type", MessageType.STATUS.value),
                    content=extra.get("content", ""),
                    is_llm_message=bool(extra.get("is_llm_message", False)),
                    metadata=dict(extra.get("metadata") or {}),
                )
            )
        return ModelResponse(
            messages=messages,
            tool_calls=list(scripted.tool_calls),
            terminal_signal=scripted.terminal_signal,
            usage={"fake": True},
        )

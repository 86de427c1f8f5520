"""
工具调用编排（从 orchestrator 拆出）。

包含：
- 执行策略：sequential（逐个执行，每个调用前检查取消）/ parallel（asyncio.gather）
- 工具层错误规范化为失败的 tool_result（由 registry.dispatch 完成），不会中止 run
- tool_result 消息构造（回注给模型）
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from run_engine.core.cancellation import CancellationToken
from run_engine.core.contracts import Message, MessageType
from run_engine.tools.protocol import TerminalSignal, ToolCall, ToolResult
from run_engine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

SEQUENTIAL = "sequential"
PARALLEL = "parallel"
EXECUTION_STRATEGIES = (SEQUENTIAL, PARALLEL)


@dataclass(frozen=True)
class ExecutedToolCall:
    """一次工具调用及其结果。"""

    call: ToolCall
    result: ToolResult

    @property
    def terminating_tool(self) -> Optional[str]:
        """终止信号对应的控制名（例如 ask / complete）；工具没有给出终止信号时为 None。"""

        if self.result.terminal_signal is None:
            return None
        data = (self.result.details or {}).get("data") or {}
        return str(data.get("tool") or self.call.xml_tag_name or self.call.name)


async def execute_tool_calls(
    registry: ToolRegistry,
    calls: Sequence[ToolCall],
    *,
    token: CancellationToken,
    strategy: str = SEQUENTIAL,
) -> List[ExecutedToolCall]:
    """
    按策略执行一批工具调用。

    参数：
    - registry：本 run 的工具注册表
    - calls：待执行调用（顺序即结果顺序）
    - token：取消令牌（传入声明接收 token 的工具）
    - strategy：sequential / parallel

    异常：
    - CancellationObserved：调用开始前观察到取消（已在执行的调用允许跑完）
    """

    if not calls:
        return []
    if strategy not in EXECUTION_STRATEGIES:
        raise ValueError(f"unknown tool execution strategy: {strategy!r}")

    if strategy == PARALLEL:
        token.raise_if_cancelled("before parallel tool execution")
        results = await asyncio.gather(*(registry.dispatch(c, token=token) for c in calls))
        return [ExecutedToolCall(call=c, result=r) for c, r in zip(calls, results)]

    executed: List[ExecutedToolCall] = []
    for call in calls:
        token.raise_if_cancelled(f"before tool {call.name}")
        result = await registry.dispatch(call, token=token)
        executed.append(ExecutedToolCall(call=call, result=result))
        if result.terminal_signal is not None:
            logger.debug("tool %s returned terminal signal %s", call.name, result.terminal_signal.value)
    return executed


def tool_result_message(thread_id: str, executed: ExecutedToolCall, *, assistant_message_id: Optional[str] = None) -> Message:
    """把一次工具调用结果构造为 tool_result 消息（模型可见）。"""

    call, result = executed.call, executed.result
    metadata = {
        "ok": result.ok,
        "calling_convention": "xml" if call.xml_tag_name else "function",
    }
    if result.error_kind:
        metadata["error_kind"] = result.error_kind
    if result.terminal_signal is not None:
        metadata["terminal_signal"] = result.terminal_signal.value
    if assistant_message_id:
        metadata["assistant_message_id"] = assistant_message_id
    return Message(
        thread_id=thread_id,
        type=MessageType.TOOL_RESULT,
        content={"tool_name": call.name, "call_id": call.call_id, "result": result.details or {"ok": result.ok}},
        is_llm_message=True,
        metadata=metadata,
    )


def strongest_signal(executed: Sequence[ExecutedToolCall]) -> Optional[ExecutedToolCall]:
    """多个终止信号时取第一个 PAUSED（暂停优先于完成），否则第一个 COMPLETED。"""

    signalled = [e for e in executed if e.result.terminal_signal is not None]
    for e in signalled:
        if e.result.terminal_signal is TerminalSignal.PAUSED:
            return e
    return signalled[0] if signalled else None

"""
模型提供方协议：ModelRequest / ModelResponse / ModelProvider。

设计目标：
- 用单一参数对象承载一次模型调用的全部输入，避免关键字参数不断膨胀；
- 线上格式（HTTP、流式分片解码）是 provider 实现方的事情，本包只约定形状；
- 允许通过 `extra` 承载 provider 特有选项（保持协议签名稳定）。
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from run_engine.core.contracts import Message, MessageType
from run_engine.tools.protocol import TerminalSignal, ToolCall, ToolSchema, tool_schema_to_openai_tool


@dataclass(frozen=True)
class SamplingParams:
    """采样参数（None 表示交给 provider 默认值）。"""

    temperature: Optional[float] = 0.1
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None


@dataclass(frozen=True)
class ModelRequest:
    """
    ModelRequest：一次模型调用的参数包。

    字段：
    - system_prompt：静态系统提示（已附加 XML 工具示例）
    - history：经过上下文窗口管理的线程历史（时间顺序）
    - ephemeral_context：本轮临时上下文（不持久化；可为 None）
    - tool_schemas：函数调用约定的工具 schema
    - model：已解析别名后的模型名
    - sampling：采样参数
    - run_id/thread_id：用于链路追踪与生成消息归属
    - xml_examples：tag -> 用法示例
    - extra：provider 特有扩展字段
    """

    system_prompt: str
    history: List[Message]
    model: str
    ephemeral_context: Optional[Message] = None
    tool_schemas: List[ToolSchema] = field(default_factory=list)
    sampling: SamplingParams = field(default_factory=SamplingParams)
    run_id: str = ""
    thread_id: str = ""
    xml_examples: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """
    ModelResponse：一次模型调用的产出。

    字段：
    - messages：模型产出的消息（通常一条 assistant 消息；也可能包含 status 消息）
    - tool_calls：provider 解析出的原生函数调用
    - terminal_signal：provider 直接给出的终止信号（可选）
    - usage：token 用量等统计（可选）
    """

    messages: List[Message] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    terminal_signal: Optional[TerminalSignal] = None
    usage: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ModelProvider(Protocol):
    """模型提供方抽象：唯一入口 `call(request)`。"""

    async def call(self, request: ModelRequest) -> ModelResponse:
        """执行一次模型调用（网络错误以异常抛出，由 orchestrator 分类）。"""

        ...


def validate_model_provider(provider: Any) -> None:
    """
    校验 ModelProvider 协议（fail-fast）。

    约束：
    - provider 必须实现 `call(request)`，且除 request 外没有无默认值的参数。

    异常：
    - ValueError：协议不匹配（run 失败时被分类为 `config_error`）
    """

    fn = getattr(provider, "call", None)
    if not callable(fn):
        raise ValueError("ModelProvider protocol mismatch: missing call(request: ModelRequest)")

    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        # 无法 introspect 时只保证可调用；实际调用失败会被分类
        return

    params = [p for p in sig.parameters.values() if p.name not in ("self", "cls")]
    if not params:
        raise ValueError("ModelProvider.call must accept a `request` parameter")
    for p in params[1:]:
        if p.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if p.default is inspect.Parameter.empty:
            raise ValueError("ModelProvider.call must accept only `request` (additional required params are not supported)")


def _chat_role(message: Message) -> str:
    """Message.type -> OpenAI-compatible role。"""

    if message.type == MessageType.ASSISTANT.value:
        return "assistant"
    if message.type in (MessageType.SUMMARY.value, MessageType.SYSTEM.value):
        return "system"
    return "user"


def build_chat_messages(request: ModelRequest) -> List[Dict[str, Any]]:
    """
    把 ModelRequest 组装为 OpenAI-compatible messages（供 provider 实现复用）。

    规则：
    - 第一条为 system prompt
    - 历史按顺序映射：assistant -> assistant；summary/system -> system；其它 -> user
    - tool_result 以 `Tool result (<tool>): <json>` 文本呈现（与调用约定无关）
    - ephemeral_context（若有）作为最后一条 user 消息（保留多模态 parts）
    """

    out: List[Dict[str, Any]] = [{"role": "system", "content": request.system_prompt}]
    for m in request.history:
        if m.type == MessageType.TOOL_RESULT.value and isinstance(m.content, dict):
            tool = m.content.get("tool_name", "")
            text = f"Tool result ({tool}): {json.dumps(m.content.get('result'), ensure_ascii=False, default=str)}"
            out.append({"role": "user", "content": text})
            continue
        content = m.content if isinstance(m.content, (str, list)) else m.text()
        out.append({"role": _chat_role(m), "content": content})
    if request.ephemeral_context is not None:
        out.append({"role": "user", "content": request.ephemeral_context.content})
    return out


def build_tools_payload(request: ModelRequest) -> List[Dict[str, Any]]:
    """tool_schemas -> OpenAI `tools` 列表。"""

    return [tool_schema_to_openai_tool(s) for s in request.tool_schemas]

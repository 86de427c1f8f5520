"""
Tool 协议（ToolSchema / ToolCall / ToolResult）。

本模块只定义“可实现级”的最小协议：
- CallingConvention：工具操作暴露给模型的三种方式（function / xml / custom）
- XmlNodeMapping / XmlTagSchema：XML 标签调用的参数映射
- ToolSchema：注册时由操作声明派生的 schema（名字已规范化）
- ToolCall：执行输入（call_id/name/args）
- ToolResultPayload / ToolResult：执行输出（含可选的终止信号）
- tool_schema_to_openai_tool：将 function 风格 ToolSchema 映射为 chat.completions tools[] 形状
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CallingConvention(str, Enum):
    """工具操作的调用约定。"""

    FUNCTION = "function"
    XML = "xml"
    CUSTOM = "custom"


class TerminalSignal(str, Enum):
    """工具返回的终止信号（映射到 run 的 COMPLETED / STOPPED）。"""

    COMPLETED = "completed"
    PAUSED = "paused"


class XmlNodeMapping(BaseModel):
    """
    XML 节点到操作参数的映射。

    字段：
    - param_name：参数名
    - node_type：attribute（根元素属性）/ element（子元素文本）/ text（根元素文本）/ content（根元素内部原文）
    - path：attribute 的属性名或 element 的子元素路径；`.` 表示使用 param_name
    - required：是否必填（缺失时记录日志，由工具自行校验）
    - value_type：string / int / float / boolean / json
    """

    model_config = ConfigDict(extra="forbid")

    param_name: str
    node_type: Literal["attribute", "element", "text", "content"] = "element"
    path: str = "."
    required: bool = True
    value_type: Literal["string", "int", "float", "boolean", "json"] = "string"


class XmlTagSchema(BaseModel):
    """XML 标签调用约定：根标签 + 参数映射 + 可选的用法示例。"""

    model_config = ConfigDict(extra="forbid")

    tag_name: str
    mappings: List[XmlNodeMapping] = Field(default_factory=list)
    example: Optional[str] = None


class ToolSchema(BaseModel):
    """
    暴露给模型的工具 schema（注册时派生一次）。

    字段：
    - name：规范化后的名字（`^[A-Za-z0-9_-]{1,64}$`；同一调用约定内唯一）
    - calling_convention：function / xml / custom
    - description：工具说明
    - parameters：JSON Schema（object schema）
    - xml_tag：XML 约定下的规范化标签名
    - xml_schema：XML 参数映射
    - custom_schema：custom 约定下的不透明参数描述
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    calling_convention: CallingConvention
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    xml_tag: Optional[str] = None
    xml_schema: Optional[XmlTagSchema] = None
    custom_schema: Optional[Dict[str, Any]] = None


class ToolCall(BaseModel):
    """
    Tool 调用（内部表示）。

    字段：
    - call_id：本次调用的唯一 id（用于关联 tool_result）
    - name：函数名或 XML 标签名
    - args：参数 bag（松散类型；由 registry 绑定到操作签名）
    - raw_arguments：原始 arguments 字符串（可选；用于 debug）
    - xml_tag_name：来自 XML 解析时记录原始标签
    """

    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    raw_arguments: Optional[str] = None
    xml_tag_name: Optional[str] = None


class ToolResultPayload(BaseModel):
    """
    Tool 执行结果 payload（统一输出封装）。

    说明：
    - 作为 JSON 写入 tool_result 消息的 content，模型可以看到自己的工具失败并调整策略。
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    output: Any = None
    error: str = ""
    duration_ms: int = Field(default=0, ge=0)
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    terminal_signal: Optional[TerminalSignal] = None


class ToolResult(BaseModel):
    """
    Tool 执行结果（统一 envelope）。

    字段（最小集合）：
    - ok：是否成功
    - content：回注给模型的内容（JSON 字符串）
    - error_kind：错误分类（not_found/execution_failed/validation/...）
    - message：面向开发者的一句话说明
    - details：结构化结果
    - terminal_signal：可选；工具要求结束（COMPLETED）或暂停（PAUSED）本次 run
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    content: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    terminal_signal: Optional[TerminalSignal] = None

    @classmethod
    def from_payload(cls, payload: ToolResultPayload, *, message: Optional[str] = None) -> "ToolResult":
        """从 ToolResultPayload 构造 ToolResult（payload 序列化为 content）。"""

        obj = payload.model_dump(mode="json", exclude_none=True)
        return cls(
            ok=payload.ok,
            content=json.dumps(obj, ensure_ascii=False, default=str),
            error_kind=payload.error_kind,
            message=message,
            details=obj,
            terminal_signal=payload.terminal_signal,
        )

    @classmethod
    def ok_payload(
        cls,
        *,
        output: Any = None,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
        terminal_signal: Optional[TerminalSignal] = None,
    ) -> "ToolResult":
        """便捷构造：成功结果。"""

        return cls.from_payload(
            ToolResultPayload(ok=True, output=output, duration_ms=duration_ms, data=data, terminal_signal=terminal_signal)
        )

    @classmethod
    def error_payload(
        cls,
        *,
        error_kind: str,
        error: str,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
    ) -> "ToolResult":
        """便捷构造：失败结果（错误信息放入 error）。"""

        return cls.from_payload(
            ToolResultPayload(ok=False, error=error, duration_ms=duration_ms, data=data, error_kind=error_kind),
            message=error,
        )


def tool_schema_to_openai_tool(schema: ToolSchema) -> Dict[str, Any]:
    """
    将 function 风格 `ToolSchema` 映射为 OpenAI chat.completions 的 tools[] entry。

    返回形状：
    {
      "type": "function",
      "function": { "name": "...", "description": "...", "parameters": {...} }
    }
    """

    return {
        "type": "function",
        "function": {
            "name": schema.name,
            "description": schema.description,
            "parameters": schema.parameters,
        },
    }

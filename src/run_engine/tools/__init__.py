"""Tool System（协议 + 能力声明 + 注册表 + 内置工具）。"""

from __future__ import annotations

from run_engine.tools.capability import OperationSet, ToolCapability
from run_engine.tools.protocol import CallingConvention, TerminalSignal, ToolCall, ToolResult, ToolSchema
from run_engine.tools.registry import ToolRegistry

__all__ = [
    "CallingConvention",
    "OperationSet",
    "TerminalSignal",
    "ToolCall",
    "ToolCapability",
    "ToolRegistry",
    "ToolResult",
    "ToolSchema",
]

"""
运行引擎内部错误分类（异常类型）。

说明：
- 工具层错误对模型可见：由 `ToolRegistry.dispatch` 转换为失败的 tool_result，不会中止 run。
- 只有 orchestrator 层未捕获的异常才会把 run 置为 FAILED。
- `CancellationObserved` 不是错误，仅用于协作式取消的控制流退出。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class RunEngineError(Exception):
    """运行引擎错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """框架结构化问题对象（可序列化到 run_failed payload / 日志）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(RunEngineError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """调用方输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`（默认错误码 `USER_ERROR`）。"""

        super().__init__(code=code, message=message, details=details or {})


class DispatchErrorKind(str, Enum):
    """工具派发失败分类（值同时用作 ToolResult.error_kind）。"""

    NOT_FOUND = "not_found"
    EXECUTION_FAILED = "execution_failed"


class DispatchError(RunEngineError):
    """
    工具派发错误。

    字段：
    - kind：NOT_FOUND（未注册的工具名）/ EXECUTION_FAILED（操作抛出异常）
    - tool_name：模型请求的工具名
    - cause：EXECUTION_FAILED 时的原始异常
    """

    def __init__(self, kind: DispatchErrorKind, *, tool_name: str, message: str, cause: Optional[BaseException] = None) -> None:
        """创建派发错误。"""

        super().__init__(message)
        self.kind = kind
        self.tool_name = tool_name
        self.message = message
        self.cause = cause

    @classmethod
    def not_found(cls, tool_name: str) -> "DispatchError":
        """便捷构造：未注册的工具名。"""

        return cls(DispatchErrorKind.NOT_FOUND, tool_name=tool_name, message=f"Tool not found: {tool_name}")

    @classmethod
    def execution_failed(cls, tool_name: str, cause: BaseException) -> "DispatchError":
        """便捷构造：工具操作执行时抛出异常。"""

        return cls(
            DispatchErrorKind.EXECUTION_FAILED,
            tool_name=tool_name,
            message=f"Tool {tool_name} failed: {type(cause).__name__}: {cause}",
            cause=cause,
        )


class PersistenceFailure(RunEngineError):
    """消息/状态写入失败（始终 best-effort：记录日志，不中止 run）。"""


class CancellationObserved(RunEngineError):
    """在某个挂起点观察到取消信号（正常控制流退出，不是错误）。"""

    def __init__(self, where: str = "", *, reason: str = "") -> None:
        """记录观察到取消的位置与原因（用于日志）。"""

        super().__init__(f"cancellation observed at {where or 'unknown'}")
        self.where = where
        self.reason = reason


class RunFailure(RunEngineError):
    """run 循环中未捕获的异常（orchestrator 层），会把 run 置为 FAILED。"""

    def __init__(self, run_id: str, cause: BaseException) -> None:
        """包装原始异常并关联 run_id。"""

        super().__init__(str(cause))
        self.run_id = run_id
        self.cause = cause


class StateError(RunEngineError):
    """run 状态机非法迁移等状态错误。"""


class LlmError(RunEngineError):
    """模型提供方通信/协议错误（网络、限流、响应解析等）。"""

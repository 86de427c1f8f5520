"""
核心数据契约：Run / Message / 状态与信号枚举。

说明：
- 记录形状只定义 orchestrator 依赖的最小集合；存储引擎与 schema 由 `Persistence` 实现方决定。
- Message 创建后不可变（metadata 富化除外）；线程内顺序即投喂给模型的权威顺序。
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from run_engine.core.utils import utc_now


class RunStatus(str, Enum):
    """run 生命周期状态；`RUNNING` 之外均为终态。"""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        """是否为终态（终态之后状态不再变化）。"""

        return self is not RunStatus.RUNNING


class StreamSignal(str, Enum):
    """控制通道的 payload（单个 token 字符串）。"""

    STOP = "STOP"
    PAUSE = "PAUSE"
    END_STREAM = "END_STREAM"
    ERROR = "ERROR"


class MessageType(str, Enum):
    """已知的 Message.type；存储层允许出现其它字符串。"""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    SUMMARY = "summary"
    STATUS = "status"
    BROWSER_STATE = "browser_state"
    IMAGE_CONTEXT = "image_context"
    SYSTEM = "system"


MessageContent = Union[str, List[Dict[str, Any]], Dict[str, Any]]


def new_id() -> str:
    """生成记录 id（uuid4 字符串）。"""

    return str(uuid.uuid4())


class Message(BaseModel):
    """
    线程中的一条消息。

    字段：
    - id：消息 id
    - thread_id：所属线程
    - type：消息类型（见 MessageType；允许其它字符串）
    - content：文本，或多模态 part 列表，或结构化对象（例如 browser_state）
    - is_llm_message：是否属于投喂给模型的对话历史
    - metadata：可富化的附加信息
    - created_at：创建时间（UTC）
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    thread_id: str
    type: str
    content: MessageContent = ""
    is_llm_message: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("type", mode="before")
    @classmethod
    def _plain_type(cls, value: Any) -> Any:
        """枚举成员统一存为其字符串值。"""

        return value.value if isinstance(value, Enum) else value

    def text(self) -> str:
        """
        返回消息的文本表示（用于 token 估算、摘要与控制标记扫描）。

        规则：
        - str：原样
        - part 列表：拼接所有 text part
        - dict：若含字符串 `content` 字段则取之，否则 JSON 序列化
        """

        content = self.content
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            texts = []
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str):
                    texts.append(part["text"])
            return "\n".join(texts)
        inner = content.get("content")
        if isinstance(inner, str):
            return inner
        return json.dumps(content, ensure_ascii=False)

    def to_record(self) -> Dict[str, Any]:
        """转换为持久化记录（JSON 兼容）。"""

        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Message":
        """从持久化记录恢复 Message。"""

        return cls.model_validate(record)


class Run(BaseModel):
    """一次 run 的记录（只由 orchestrator / status store 修改）。"""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    thread_id: str
    project_id: str
    status: RunStatus = RunStatus.RUNNING
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        """转换为持久化记录（JSON 兼容）。"""

        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Run":
        """从持久化记录恢复 Run。"""

        return cls.model_validate(record)

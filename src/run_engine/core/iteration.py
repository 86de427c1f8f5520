"""
单次迭代的产出分析：控制标记、任务状态（todo）更新块、错误状态消息。

控制标记（按优先级）：
- `ask`：暂停，等待用户输入
- `complete`：结束
- `web-browser-takeover`：暂停，等待用户接管浏览器

标记按开/闭标签识别（`<ask>`、`</ask>`、`<ask attachments="...">` 均命中）。
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from run_engine.core.contracts import Message, MessageType
from run_engine.tools.protocol import TerminalSignal

logger = logging.getLogger(__name__)

ASK_MARKER = "ask"
COMPLETE_MARKER = "complete"
TAKEOVER_MARKER = "web-browser-takeover"

CONTROL_MARKERS = (ASK_MARKER, COMPLETE_MARKER, TAKEOVER_MARKER)
PAUSE_MARKERS = frozenset({ASK_MARKER, TAKEOVER_MARKER})

TODO_UPDATE_OPEN = "<todo_update>"
TODO_UPDATE_CLOSE = "</todo_update>"

_MARKER_PATTERNS = {m: re.compile(r"</?" + re.escape(m) + r"(?=[\s>/])") for m in CONTROL_MARKERS}


@dataclass
class IterationOutcome:
    """
    一次迭代的结论。

    字段：
    - messages：本次迭代产出并已持久化/推送的消息（顺序即产出顺序）
    - terminating_tool：命中的控制标记（ask / complete / web-browser-takeover）
    - has_error：是否出现错误状态消息
    - terminal_signal：provider 或工具给出的终止信号
    """

    messages: List[Message] = field(default_factory=list)
    terminating_tool: Optional[str] = None
    has_error: bool = False
    terminal_signal: Optional[TerminalSignal] = None

    @property
    def should_continue(self) -> bool:
        """没有错误、没有控制标记、没有终止信号时继续下一轮。"""

        return not self.has_error and self.terminating_tool is None and self.terminal_signal is None


def find_control_marker(text: Optional[str]) -> Optional[str]:
    """返回文本中命中的第一个控制标记（按 ask → complete → web-browser-takeover 的优先级）。"""

    if not text:
        return None
    for marker in CONTROL_MARKERS:
        if _MARKER_PATTERNS[marker].search(text):
            return marker
    return None


def extract_todo_update(text: Optional[str]) -> Optional[str]:
    """提取第一个 `<todo_update>...</todo_update>` 块的内容（去首尾空白）；没有完整块时返回 None。"""

    if not text or TODO_UPDATE_OPEN not in text:
        return None
    start = text.index(TODO_UPDATE_OPEN) + len(TODO_UPDATE_OPEN)
    end = text.find(TODO_UPDATE_CLOSE, start)
    if end == -1:
        return None
    return text[start:end].strip()


def _status_fields(message: Message) -> Mapping[str, Any]:
    """status 消息的结构化字段（content dict，或可解析为 dict 的 JSON 文本）。"""

    content = message.content
    if isinstance(content, dict):
        return content
    if isinstance(content, str) and content.lstrip().startswith("{"):
        try:
            parsed = json.loads(content)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def is_error_status(message: Message) -> bool:
    """`status` 消息的 content 或 metadata 携带 `status_type == "error"` / `status == "error"`。"""

    if message.type != MessageType.STATUS.value:
        return False
    for fields in (_status_fields(message), message.metadata):
        if fields.get("status_type") == "error" or fields.get("status") == "error":
            return True
    return False


def analyze_messages(messages: List[Message]) -> IterationOutcome:
    """
    扫描本次迭代的消息，得到控制结论。

    规则：
    - assistant 消息：查找控制标记（第一条命中的消息生效）
    - status 消息：错误状态置 has_error
    """

    outcome = IterationOutcome(messages=list(messages))
    for message in messages:
        if message.type == MessageType.ASSISTANT.value and outcome.terminating_tool is None:
            marker = find_control_marker(message.text())
            if marker is not None:
                outcome.terminating_tool = marker
        elif is_error_status(message):
            fields: Dict[str, Any] = dict(_status_fields(message))
            logger.error("error status received: %s", fields.get("message") or message.metadata.get("message"))
            outcome.has_error = True
    return outcome

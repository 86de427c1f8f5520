"""
ContextWindowManager：按 token 预算裁剪线程历史，并把较早的消息压缩为一条 summary。

算法：
1) 用 `max(1, len(text) // chars_per_token)` 估算每条消息的 token（空文本为 0），不使用真实 tokenizer。
2) 从新到旧累积到 recent 缓冲区；遇到第一条会让总数超过上限的消息即停止。
3) 全部放得下：原样返回。
4) 否则把更早的消息压缩成一条 `summary` 消息：固定 header + 每条消息一行（按角色截断）+ 结束标记。
   若 summary 自身超出剩余预算，继续截断到剩余预算并记录 warning（degraded）。
5) summary 的 `created_at` 取被压缩区间的最早时间；id 由线程与区间稳定派生，只持久化一次。

返回 `[summary] + recent`（时间顺序）。
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from run_engine.core.contracts import Message, MessageType
from run_engine.core.errors import PersistenceFailure
from run_engine.state.persistence import ThreadStore

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "CONVERSATION SUMMARY:\nThis is a summary of {count} earlier messages in this conversation.\n\n"
SUMMARY_END = "\n--- END SUMMARY ---\n"
ELLIPSIS = "..."

_SUMMARY_NAMESPACE = uuid.UUID("6f1c2a4e-9b7d-5e38-a1c0-3d2b8e4f7a91")


@dataclass(frozen=True)
class ContextWindowSettings:
    """
    上下文窗口参数。

    字段：
    - max_context_tokens：硬上限
    - chars_per_token：字符/token 估算常数
    - user_line_chars / assistant_line_chars / tool_line_chars：summary 中各角色单行的截断长度
    """

    max_context_tokens: int = 8000
    chars_per_token: int = 4
    user_line_chars: int = 100
    assistant_line_chars: int = 100
    tool_line_chars: int = 50


def truncate_content(content: str, max_length: int) -> str:
    """
    截断到 `max_length` 个字符并追加 `...`。

    规则：
    - 未超长时原样返回
    - 截断点落在单词中间时，退回到截断前缀里的最后一个空格
    """

    if content is None or len(content) <= max_length:
        return content
    cut = content[: max(0, max_length)]
    if max_length >= 0 and not content[max_length].isspace():
        last_space = cut.rfind(" ")
        if last_space != -1:
            cut = cut[:last_space]
    return cut + ELLIPSIS


def _fit_chars(content: str, limit: int) -> str:
    """截断到总长度不超过 `limit`（含 `...`）；预算放不下省略号时直接硬截断。"""

    if limit <= 0:
        return ""
    if len(content) <= limit:
        return content
    if limit <= len(ELLIPSIS):
        return content[:limit]
    return truncate_content(content, limit - len(ELLIPSIS))


class ContextWindowManager:
    """token 预算 + summary 压缩。"""

    def __init__(self, threads: ThreadStore, settings: Optional[ContextWindowSettings] = None) -> None:
        """
        参数：
        - threads：线程消息门面（summary 写入使用）
        - settings：窗口参数（默认 8000 tokens / 4 chars per token）
        """

        self._threads = threads
        self.settings = settings or ContextWindowSettings()

    def estimate_tokens(self, text: Optional[str]) -> int:
        """估算 token：空文本为 0，否则至少为 1。"""

        if not text:
            return 0
        return max(1, len(text) // max(1, int(self.settings.chars_per_token)))

    def split(self, messages: Sequence[Message]) -> Tuple[List[Message], List[Message], int]:
        """
        从新到旧切分历史。

        返回：
        - (older, recent, recent_tokens)：older 为需要压缩的前缀，recent 为放得下的后缀（均为时间顺序）
        """

        cap = int(self.settings.max_context_tokens)
        total = 0
        start = len(messages)
        for idx in range(len(messages) - 1, -1, -1):
            cost = self.estimate_tokens(messages[idx].text())
            if total + cost > cap:
                break
            total += cost
            start = idx
        return list(messages[:start]), list(messages[start:]), total

    def summary_id(self, thread_id: str, compacted: Sequence[Message]) -> str:
        """summary 的稳定 id：由线程 id 与被压缩区间（首/尾 id 与条数）派生。"""

        key = f"{thread_id}:{compacted[0].id}:{compacted[-1].id}:{len(compacted)}"
        return str(uuid.uuid5(_SUMMARY_NAMESPACE, key))

    def _line_for(self, message: Message) -> Optional[str]:
        """单条被压缩消息在 summary 中的一行（未知角色返回 None）。"""

        s = self.settings
        text = message.text()
        if message.type == MessageType.USER.value:
            return "User: " + truncate_content(text, s.user_line_chars)
        if message.type == MessageType.ASSISTANT.value:
            return "Assistant: " + truncate_content(text, s.assistant_line_chars)
        if message.type == MessageType.TOOL_RESULT.value:
            return "Tool Result: " + truncate_content(text, s.tool_line_chars)
        if message.is_llm_message:
            return "Assistant: " + truncate_content(text, s.assistant_line_chars)
        return None

    def build_summary(self, thread_id: str, compacted: Sequence[Message], *, recent_tokens: int) -> Message:
        """
        生成 summary 消息（不持久化）。

        说明：
        - 超出剩余预算时保留 header（含压缩条数），截断正文；metadata 标记 `degraded: true`。
        """

        header = SUMMARY_HEADER.format(count=len(compacted))
        lines = [line for line in (self._line_for(m) for m in compacted) if line is not None]
        body = "".join(line + "\n" for line in lines)
        content = header + body + SUMMARY_END
        metadata = {"compacted_count": len(compacted), "degraded": False}

        tokens = self.estimate_tokens(content)
        cap = int(self.settings.max_context_tokens)
        if recent_tokens + tokens > cap:
            budget_chars = (cap - recent_tokens) * int(self.settings.chars_per_token)
            logger.warning(
                "summary for thread %s is too large (%d tokens) to fit remaining context; truncating to %d chars",
                thread_id,
                tokens,
                budget_chars,
            )
            if budget_chars > len(header):
                content = header + _fit_chars(body + SUMMARY_END, budget_chars - len(header))
            else:
                content = _fit_chars(content, budget_chars)
            metadata["degraded"] = True
            metadata["original_token_count"] = tokens

        metadata["token_count"] = self.estimate_tokens(content)
        return Message(
            id=self.summary_id(thread_id, compacted),
            thread_id=thread_id,
            type=MessageType.SUMMARY,
            content=content,
            is_llm_message=False,
            metadata=metadata,
            created_at=compacted[0].created_at,
        )

    def store_summary(self, summary: Message) -> bool:
        """
        持久化 summary（幂等）。

        返回：
        - True：本次写入；False：已存在或写入失败（失败只记录日志）
        """

        try:
            if self._threads.exists(summary.id):
                logger.debug("summary %s already exists, skipping insertion", summary.id)
                return False
            self._threads.add(summary)
            return True
        except PersistenceFailure as e:
            logger.error("failed to store summary %s: %s", summary.id, e)
            return False

    def apply(self, thread_id: str, messages: Sequence[Message]) -> List[Message]:
        """
        对一段按时间排序的历史应用上下文窗口管理。

        返回：
        - 全部放得下：原历史（新列表，元素不变）
        - 否则：`[summary] + recent`
        """

        older, recent, recent_tokens = self.split(messages)
        if not older:
            return list(messages)
        summary = self.build_summary(thread_id, older, recent_tokens=recent_tokens)
        self.store_summary(summary)
        logger.info("summarized %d older messages for thread %s", len(older), thread_id)
        return [summary] + recent

"""
临时多模态上下文（每轮构建，不持久化）。

来源：
- 最新一条 `browser_state`：去掉截图二进制/URL 字段后作为文本 part，截图以 image_url part 引用
- 最新一条 `image_context`：文本说明 + data URL 图片 part；模型调用成功返回后才删除本轮读到的 image_context 消息（`consume`），避免下一轮重复附带
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from run_engine.core.contracts import Message, MessageType
from run_engine.core.errors import PersistenceFailure
from run_engine.state.persistence import ThreadStore

logger = logging.getLogger(__name__)

_SCREENSHOT_FIELDS = ("screenshot_base64", "screenshot_url", "image_url")


def _content_map(message: Message) -> Dict[str, Any]:
    """把 content 规范化为 dict（JSON 文本会被解析；无法解析时返回空 dict）。"""

    content = message.content
    if isinstance(content, dict):
        return dict(content)
    if isinstance(content, str):
        try:
            parsed = json.loads(content)
        except ValueError:
            logger.warning("cannot parse %s content of message %s", message.type, message.id)
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _image_part(url: str) -> Dict[str, Any]:
    """OpenAI-compatible image_url part。"""

    return {"type": "image_url", "image_url": {"url": url}}


def browser_state_parts(state: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """
    browser_state -> parts。

    规则：
    - 文本 part：`Current browser state:\\n<json>`（不含截图字段；剩余字段为空时省略）
    - 图片 part：优先 `screenshot_url`，其次 `image_url`，再次 `screenshot_base64`（按 jpeg data URL）
    """

    parts: List[Dict[str, Any]] = []
    text_fields = {k: v for k, v in state.items() if k not in _SCREENSHOT_FIELDS}
    if text_fields:
        parts.append({"type": "text", "text": "Current browser state:\n" + json.dumps(text_fields, ensure_ascii=False, default=str)})

    screenshot_url = state.get("screenshot_url") or state.get("image_url")
    if screenshot_url:
        parts.append(_image_part(str(screenshot_url)))
    elif state.get("screenshot_base64"):
        parts.append(_image_part("data:image/jpeg;base64," + str(state["screenshot_base64"])))
    return parts


def image_context_parts(ctx: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """image_context（base64 + mime_type + file_path）-> 说明文本 + data URL；缺字段时为空。"""

    b64 = ctx.get("base64")
    mime_type = ctx.get("mime_type")
    if not b64 or not mime_type:
        return []
    return [
        {"type": "text", "text": f"Image context for '{ctx.get('file_path')}':"},
        _image_part(f"data:{mime_type};base64,{b64}"),
    ]


@dataclass(frozen=True)
class EphemeralContext:
    """
    一轮的临时上下文。

    字段：
    - message：临时 user 消息（没有任何 part 时为 None）
    - image_context_ids：本轮读到的 image_context 消息 id（模型调用成功后由 `consume` 删除）
    """

    message: Optional[Message] = None
    image_context_ids: Tuple[str, ...] = ()


class EphemeralContextBuilder:
    """每轮从线程中读取最新 browser/image 状态，构建一条临时 user 消息。"""

    def __init__(self, threads: ThreadStore) -> None:
        """绑定线程消息门面。"""

        self._threads = threads

    def build(self, thread_id: str) -> EphemeralContext:
        """
        构建临时上下文（只读，不删除任何消息）。

        返回：
        - EphemeralContext；没有任何 part 时 message 为 None
        """

        parts: List[Dict[str, Any]] = []

        browser = self._threads.latest(thread_id, MessageType.BROWSER_STATE.value)
        if browser is not None:
            parts.extend(browser_state_parts(_content_map(browser)))

        images = self._threads.list_messages(thread_id, types=[MessageType.IMAGE_CONTEXT.value])
        if images:
            parts.extend(image_context_parts(_content_map(images[-1])))

        message: Optional[Message] = None
        if parts:
            message = Message(
                thread_id=thread_id,
                type=MessageType.USER,
                content=parts,
                is_llm_message=True,
                metadata={"ephemeral": True},
            )
        return EphemeralContext(message=message, image_context_ids=tuple(m.id for m in images))

    def consume(self, thread_id: str, context: EphemeralContext) -> int:
        """
        删除已送达模型的 image_context 消息（失败只记录日志）。

        返回：
        - 删除条数
        """

        if not context.image_context_ids:
            return 0
        try:
            removed = self._threads.delete_messages(context.image_context_ids)
        except PersistenceFailure as e:
            logger.warning("failed to delete image_context messages in thread %s: %s", thread_id, e)
            return 0
        logger.debug("deleted %d consumed image_context messages in thread %s", removed, thread_id)
        return removed

"""
工具名规范化（sanitization）。

规则（对每个声明的 schema 名与 XML 标签生效）：
1) trim
2) 连续空白折叠为 `_`
3) 删除 `[A-Za-z0-9_-]` 之外的字符
4) 结果为空时生成 fallback：固定前缀 + 截断的上下文标识 + 8 位随机后缀
5) 截断到 64 个字符

约束：
- 输出恒满足 `^[A-Za-z0-9_-]{1,64}$`。
- 规则本身是确定的；只有 fallback 与冲突后缀引入随机性。
- 任何 fallback / 冲突改名都会记录 warning。
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

MAX_TOOL_NAME_LENGTH = 64
TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_WHITESPACE_RE = re.compile(r"\s+")
_INVALID_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]")
_CONTEXT_MAX_LENGTH = 20
_CRITICAL_FALLBACK = "critical_tool_name"

FUNCTION_PREFIX = "toolfunc_"
XML_TAG_PREFIX = "xmltag_"
CUSTOM_PREFIX = "customfunc_"


def _random_suffix() -> str:
    """8 位十六进制随机后缀。"""

    return uuid.uuid4().hex[:8]


def _strip_invalid(text: str) -> str:
    """执行规则 1~3（trim / 折叠空白 / 删除非法字符）。"""

    return _INVALID_CHARS_RE.sub("", _WHITESPACE_RE.sub("_", text.strip()))


def is_valid_tool_name(name: Any) -> bool:
    """判断是否为可暴露给模型的合法工具名。"""

    return isinstance(name, str) and bool(TOOL_NAME_PATTERN.match(name))


def generate_fallback_name(prefix: str, context: str = "") -> str:
    """
    生成 fallback 名：`<prefix><context≤20>_<hex8>`（无上下文时省略中段）。

    参数：
    - prefix：调用约定相关的固定前缀（例如 `toolfunc_`）
    - context：上下文标识（通常是类名或操作名），规范化后截断到 20 个字符
    """

    context_part = _strip_invalid(str(context or ""))[:_CONTEXT_MAX_LENGTH]
    if context_part:
        name = f"{prefix}{context_part}_{_random_suffix()}"
    else:
        name = f"{prefix}{_random_suffix()}"
    name = name[:MAX_TOOL_NAME_LENGTH]
    if is_valid_tool_name(name):
        return name
    name = f"{_strip_invalid(prefix)}gen_{_random_suffix()}"[:MAX_TOOL_NAME_LENGTH]
    if is_valid_tool_name(name):
        return name
    return _CRITICAL_FALLBACK


def _with_collision_suffix(name: str) -> str:
    """在名字末尾追加 `_<hex8>`，必要时截断前缀以保持 64 字符上限。"""

    suffix = f"_{_random_suffix()}"
    return name[: MAX_TOOL_NAME_LENGTH - len(suffix)] + suffix


def sanitize_tool_name(
    raw: Any,
    *,
    prefix: str = FUNCTION_PREFIX,
    context: str = "",
    is_taken: Optional[Callable[[str], bool]] = None,
    max_attempts: int = 8,
) -> str:
    """
    规范化一个声明的工具名 / XML 标签。

    参数：
    - raw：声明的名字（非字符串视为空）
    - prefix/context：生成 fallback 名时使用
    - is_taken：可选；返回 True 表示该名字在目标表中已被其它注册占用，需要重新生成
    - max_attempts：冲突时重新生成的最大次数

    返回：
    - 满足 `^[A-Za-z0-9_-]{1,64}$` 的名字
    """

    text = raw if isinstance(raw, str) else ""
    if not isinstance(raw, str):
        logger.warning("tool name is not a string (%s); generating fallback", type(raw).__name__)

    name = _strip_invalid(text)
    if not name:
        name = generate_fallback_name(prefix, context)
        logger.warning("tool name %r sanitized to empty; using generated fallback %s", raw, name)
    name = name[:MAX_TOOL_NAME_LENGTH]

    if is_taken is not None:
        attempts = 0
        while is_taken(name) and attempts < max_attempts:
            attempts += 1
            renamed = _with_collision_suffix(name)
            logger.warning("tool name %s collides with an existing registration; renamed to %s", name, renamed)
            name = renamed

    if not is_valid_tool_name(name):
        name = generate_fallback_name(prefix, context)
        logger.warning("tool name %r failed validation after sanitization; using %s", raw, name)
    return name

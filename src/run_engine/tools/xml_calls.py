"""
XML 工具调用解析：从 assistant 文本中提取已注册标签的调用。

规则：
- 只识别 registry 中已注册的标签；按在文本中出现的位置排序。
- `<tag .../>` 与 `<tag ...>...</tag>` 均可；解析失败的片段记录 warning 并跳过。
- 每个响应最多取 `max_calls` 个调用（0 表示不限制）。
"""

from __future__ import annotations

import json
import logging
import re
import uuid
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Tuple

from run_engine.tools.protocol import ToolCall, XmlNodeMapping, XmlTagSchema
from run_engine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def _tag_pattern(tag: str) -> "re.Pattern[str]":
    """匹配单个标签的自闭合或成对形式（非贪婪）。"""

    t = re.escape(tag)
    return re.compile(rf"<{t}(?=[\s/>])[^>]*?(?:/>|>.*?</{t}\s*>)", re.DOTALL)


def _inner_content(chunk: str) -> str:
    """返回根元素开闭标签之间的原文（自闭合时为空字符串）。"""

    if chunk.rstrip().endswith("/>") and chunk.count(">") == 1:
        return ""
    start = chunk.find(">") + 1
    end = chunk.rfind("</")
    return chunk[start:end] if end >= start else ""


def _convert(raw: Optional[str], value_type: str) -> Any:
    """按映射的 value_type 转换字符串值（失败时保留原字符串）。"""

    if raw is None:
        return None
    text = raw.strip()
    try:
        if value_type == "int":
            return int(text)
        if value_type == "float":
            return float(text)
        if value_type == "boolean":
            return text.lower() in ("true", "1", "yes")
        if value_type == "json":
            return json.loads(text)
    except (ValueError, json.JSONDecodeError):
        logger.warning("cannot convert xml value %r to %s; keeping raw text", text, value_type)
    return raw if value_type == "string" else text


def _extract_value(root: ET.Element, chunk: str, mapping: XmlNodeMapping) -> Optional[str]:
    """按单个映射从解析后的元素中取值。"""

    path = mapping.param_name if mapping.path in ("", ".") else mapping.path
    if mapping.node_type == "attribute":
        return root.get(path)
    if mapping.node_type == "element":
        child = root.find(path)
        if child is None:
            return None
        return "".join(child.itertext())
    if mapping.node_type == "text":
        return (root.text or "").strip() or None
    content = _inner_content(chunk)
    return content if content.strip() else None


def parse_xml_call(chunk: str, schema: XmlTagSchema) -> Optional[Dict[str, Any]]:
    """
    把一个 XML 片段解析为参数 bag。

    返回：
    - dict：参数 bag（缺失的映射不出现）
    - None：片段不是合法 XML
    """

    try:
        root = ET.fromstring(chunk)
    except ET.ParseError as exc:
        logger.warning("cannot parse xml tool call <%s>: %s", schema.tag_name, exc)
        return None

    args: Dict[str, Any] = {}
    for mapping in schema.mappings:
        value = _extract_value(root, chunk, mapping)
        if value is None:
            if mapping.required:
                logger.debug("xml tool call <%s> missing %s", schema.tag_name, mapping.param_name)
            continue
        args[mapping.param_name] = _convert(value, mapping.value_type)
    return args


def extract_xml_tool_calls(text: str, registry: ToolRegistry, *, max_calls: int = 0) -> List[ToolCall]:
    """
    从 assistant 文本中提取 XML 工具调用。

    参数：
    - text：assistant 输出文本
    - registry：提供已注册标签与映射
    - max_calls：最多返回的调用数（0 表示不限制）
    """

    if not text:
        return []
    found: List[Tuple[int, str, str]] = []
    for tag in registry.xml_tags():
        for m in _tag_pattern(tag).finditer(text):
            found.append((m.start(), tag, m.group(0)))
    found.sort(key=lambda item: item[0])

    calls: List[ToolCall] = []
    for _pos, tag, chunk in found:
        if max_calls and len(calls) >= max_calls:
            logger.debug("xml tool call limit reached (%d)", max_calls)
            break
        entry = registry.get_xml_tool(tag)
        if entry is None or entry.schema.xml_schema is None:
            continue
        args = parse_xml_call(chunk, entry.schema.xml_schema)
        if args is None:
            continue
        calls.append(
            ToolCall(
                call_id=f"xml_{uuid.uuid4().hex[:12]}",
                name=tag,
                args=args,
                raw_arguments=chunk,
                xml_tag_name=tag,
            )
        )
    return calls

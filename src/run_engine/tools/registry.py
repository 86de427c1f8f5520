"""
ToolRegistry：单个 run 内的工具目录与派发（dispatch）。

本模块提供：
- 注册：`register(tool, allowed_operations=None)`，把每个声明的操作放入 function 表和/或 XML 表
- 执行：`invoke(name, args)`（抛 DispatchError）与 `dispatch(ToolCall) -> ToolResult`（错误转为失败结果）
- 导出：`list_function_schemas()` / `list_xml_examples()` / `list_schemas()`

约束：
- registry 按 run 构造，不跨 run 共享。
- 同一 registration key 重复注册：后写者覆盖（旧条目先从两张表中移除）。
- 同一调用约定内名字唯一；与其它 key 冲突时追加随机后缀（并记录 warning）。
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from run_engine.core.cancellation import CancellationToken
from run_engine.core.errors import CancellationObserved, DispatchError
from run_engine.tools.binding import ArgumentDecoder
from run_engine.tools.capability import OperationDescriptor, ToolCapability
from run_engine.tools.naming import (
    CUSTOM_PREFIX,
    FUNCTION_PREFIX,
    XML_TAG_PREFIX,
    is_valid_tool_name,
    sanitize_tool_name,
)
from run_engine.tools.protocol import (
    CallingConvention,
    ToolCall,
    ToolResult,
    ToolSchema,
    XmlTagSchema,
    tool_schema_to_openai_tool,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredTool:
    """
    registry 中的一条注册记录。

    字段：
    - registration_key：`<tool>.<operation>`（重复注册按此覆盖）
    - tool：工具实例
    - operation：操作描述
    - schema：派生出的 ToolSchema（名字已规范化）
    - decoder：该操作的参数解码器
    """

    registration_key: str
    tool: ToolCapability
    operation: OperationDescriptor
    schema: ToolSchema
    decoder: ArgumentDecoder


class ToolRegistry:
    """工具注册表（function 表 + XML 表）。"""

    def __init__(self, *, run_id: str = "") -> None:
        """创建空注册表；`run_id` 仅用于日志关联。"""

        self._run_id = run_id
        self._functions: Dict[str, RegisteredTool] = {}
        self._xml_tags: Dict[str, RegisteredTool] = {}

    def register(self, tool: ToolCapability, allowed_operations: Optional[Iterable[str]] = None) -> List[RegisteredTool]:
        """
        注册一个工具实例的操作。

        参数：
        - tool：工具实例
        - allowed_operations：可选；只注册这些操作名（None 表示全部）

        返回：
        - 本次新增的注册记录（一个操作可能同时出现在两张表中）
        """

        allowed = set(allowed_operations) if allowed_operations is not None else None
        added: List[RegisteredTool] = []
        for op in tool.operations():
            if allowed is not None and op.name not in allowed:
                continue
            key = f"{tool.registration_name}.{op.name}"
            self._unregister_key(key)
            decoder = ArgumentDecoder(op.name, op.params)

            if op.function_name is not None:
                added.append(self._add_function(key, tool, op, decoder, CallingConvention.FUNCTION))
            if op.custom_schema is not None:
                added.append(self._add_function(key, tool, op, decoder, CallingConvention.CUSTOM))
            if op.xml is not None:
                added.append(self._add_xml(key, tool, op, decoder))
            if op.function_name is None and op.custom_schema is None and op.xml is None:
                logger.warning("operation %s declares no schema; not exposed", key)

        logger.debug("registered %d schema(s) from %s (run=%s)", len(added), tool.registration_name, self._run_id)
        return added

    def _unregister_key(self, key: str) -> None:
        """移除某个 registration key 的全部旧条目（last writer wins）。"""

        for table in (self._functions, self._xml_tags):
            for name in [n for n, entry in table.items() if entry.registration_key == key]:
                del table[name]

    def _taken_in(self, table: Mapping[str, RegisteredTool], key: str, convention: CallingConvention):
        """返回冲突检测回调：名字已被其它 registration key（或同 key 的其它调用约定）占用。"""

        def _is_taken(name: str) -> bool:
            """名字已存在且不是同一 key + 同一调用约定时返回 True。"""

            entry = table.get(name)
            if entry is None:
                return False
            return entry.registration_key != key or entry.schema.calling_convention is not convention

        return _is_taken

    def _add_function(
        self,
        key: str,
        tool: ToolCapability,
        op: OperationDescriptor,
        decoder: ArgumentDecoder,
        convention: CallingConvention,
    ) -> RegisteredTool:
        """把 function / custom 风格 schema 加入 function 表。"""

        prefix = FUNCTION_PREFIX if convention is CallingConvention.FUNCTION else CUSTOM_PREFIX
        declared = op.function_name if op.function_name is not None else op.name
        name = sanitize_tool_name(
            declared,
            prefix=prefix,
            context=tool.registration_name,
            is_taken=self._taken_in(self._functions, key, convention),
        )
        schema = ToolSchema(
            name=name,
            calling_convention=convention,
            description=op.description,
            parameters=op.parameters_schema(),
            custom_schema=op.custom_schema if convention is CallingConvention.CUSTOM else None,
        )
        entry = RegisteredTool(registration_key=key, tool=tool, operation=op, schema=schema, decoder=decoder)
        self._functions[name] = entry
        return entry

    def _add_xml(self, key: str, tool: ToolCapability, op: OperationDescriptor, decoder: ArgumentDecoder) -> RegisteredTool:
        """把 XML 风格 schema 加入 XML 表（按规范化后的标签名索引）。"""

        assert op.xml is not None
        tag = sanitize_tool_name(
            op.xml.tag_name,
            prefix=XML_TAG_PREFIX,
            context=tool.registration_name,
            is_taken=self._taken_in(self._xml_tags, key, CallingConvention.XML),
        )
        schema = ToolSchema(
            name=tag,
            calling_convention=CallingConvention.XML,
            description=op.description,
            parameters=op.parameters_schema(),
            xml_tag=tag,
            xml_schema=XmlTagSchema(tag_name=tag, mappings=list(op.xml.mappings), example=op.xml.example),
        )
        entry = RegisteredTool(registration_key=key, tool=tool, operation=op, schema=schema, decoder=decoder)
        self._xml_tags[tag] = entry
        return entry

    def get_function(self, name: str) -> Optional[RegisteredTool]:
        """按 function 名查找（不存在返回 None）。"""

        return self._functions.get(name)

    def get_xml_tool(self, tag: str) -> Optional[RegisteredTool]:
        """按 XML 标签查找（不存在返回 None）。"""

        return self._xml_tags.get(tag)

    def xml_tags(self) -> List[str]:
        """已注册的 XML 标签（注册顺序）。"""

        return list(self._xml_tags.keys())

    def list_schemas(self) -> List[ToolSchema]:
        """返回全部 ToolSchema（function 表在前，XML 表在后）。"""

        return [e.schema for e in self._functions.values()] + [e.schema for e in self._xml_tags.values()]

    def list_function_schemas(self) -> List[Dict[str, Any]]:
        """
        导出 function 风格 schema（chat.completions tools[] 形状）。

        说明：
        - 导出时再次校验名字：缺失/空白/非字符串/不匹配规则的条目被过滤并记录 warning。
        """

        out: List[Dict[str, Any]] = []
        for entry in self._functions.values():
            schema = entry.schema
            if schema.calling_convention is not CallingConvention.FUNCTION:
                continue
            if not is_valid_tool_name(schema.name):
                logger.warning("dropping schema with invalid name %r from export", schema.name)
                continue
            out.append(tool_schema_to_openai_tool(schema))
        return out

    def list_xml_examples(self) -> Dict[str, str]:
        """返回 `标签 -> 用法示例`（只包含声明了示例的标签）。"""

        out: Dict[str, str] = {}
        for tag, entry in self._xml_tags.items():
            xml_schema = entry.schema.xml_schema
            if xml_schema is not None and xml_schema.example:
                out[tag] = xml_schema.example
        return out

    def _resolve(self, name: str) -> Optional[RegisteredTool]:
        """先查 function 表，再查 XML 表。"""

        entry = self._functions.get(name)
        if entry is None:
            entry = self._xml_tags.get(name)
        return entry

    async def invoke(
        self,
        name: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """
        按名字调用一个操作（同步或异步 handler 统一处理）。

        异常：
        - DispatchError(NOT_FOUND)：未注册的名字
        - DispatchError(EXECUTION_FAILED)：操作抛出异常（cause 为原始异常）
        - CancellationObserved：操作自己观察到取消（原样向上传播）
        """

        entry = self._resolve(name)
        if entry is None:
            raise DispatchError.not_found(name)

        bound = entry.decoder.decode(args)
        kwargs = dict(bound.kwargs)
        if entry.operation.token_param:
            kwargs[entry.operation.token_param] = token

        try:
            result = entry.operation.handler(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except CancellationObserved:
            raise
        except Exception as exc:
            logger.warning("tool %s raised %s: %s", name, type(exc).__name__, exc)
            raise DispatchError.execution_failed(name, exc) from exc
        return result

    async def dispatch(self, call: ToolCall, *, token: Optional[CancellationToken] = None) -> ToolResult:
        """
        派发一个 ToolCall，并把任何返回值/派发错误规范化为 ToolResult。

        说明：
        - 工具层错误不会中止 run：统一转为失败的 ToolResult，回注给模型。
        """

        started = time.monotonic()
        try:
            result = await self.invoke(call.name, call.args, token=token)
        except DispatchError as exc:
            return ToolResult.error_payload(
                error_kind=exc.kind.value,
                error=exc.message,
                data={"tool": call.name},
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        if isinstance(result, ToolResult):
            return result
        return ToolResult.ok_payload(output=result, duration_ms=int((time.monotonic() - started) * 1000))

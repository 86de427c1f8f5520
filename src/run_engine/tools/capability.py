"""
ToolCapability：工具能力基类 + 操作声明（builder）API。

设计：
- 工具在 `declare_operations` 中显式构造自己的操作列表，registry 不做任何方法扫描。
- 每个操作声明：handler、带类型的参数列表、以及一种或多种 schema 风格（function / xml / custom）。
- 参数类型只用于两件事：生成 JSON Schema，以及构造每个操作的参数解码器（见 `tools.binding`）。

示例：

    class FilesTool(ToolCapability):
        def declare_operations(self, ops: OperationSet) -> None:
            (
                ops.operation("read_file", self.read_file, description="Read a workspace file")
                .param("path", str, description="Relative path")
                .param("start_line", int, required=False, default=1)
                .function()
                .xml("read-file", mappings=[XmlNodeMapping(param_name="path", node_type="attribute")])
            )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import TypeAdapter
from pydantic.errors import PydanticSchemaGenerationError

from run_engine.tools.protocol import XmlNodeMapping


@dataclass(frozen=True)
class ParamSpec:
    """
    操作参数声明。

    字段：
    - name：参数名（绑定时按此名查找，并尝试 snake/camel 变体）
    - annotation：目标类型（str/int/float/bool/list/dict/pydantic 模型/typing 泛型）
    - required：是否必填（只影响 JSON Schema；缺失时仍以默认值/None 调用）
    - description：参数说明
    - default：未提供时的默认值
    """

    name: str
    annotation: Any = str
    required: bool = True
    description: str = ""
    default: Any = None

    def json_schema(self) -> Dict[str, Any]:
        """生成该参数的 JSON Schema 片段（无法生成时退化为空 schema）。"""

        try:
            schema = dict(TypeAdapter(self.annotation).json_schema())
        except (PydanticSchemaGenerationError, TypeError):
            schema = {}
        if self.description:
            schema["description"] = self.description
        return schema


@dataclass(frozen=True)
class XmlDeclaration:
    """操作的 XML 风格声明（未规范化的标签名 + 映射 + 示例）。"""

    tag_name: str
    mappings: Tuple[XmlNodeMapping, ...] = ()
    example: Optional[str] = None


@dataclass(frozen=True)
class OperationDescriptor:
    """
    一个可调用操作的类型化描述（registry 的输入）。

    字段：
    - name：操作名（同一工具内唯一；参与 registration key）
    - handler：实际执行函数（同步或返回 awaitable）
    - params：有序参数声明
    - description：操作说明
    - function_name：function 风格 schema 名（None 表示不暴露 function 风格）
    - xml：XML 风格声明（None 表示不暴露 XML 风格）
    - custom_schema：custom 风格的不透明参数描述（None 表示不暴露）
    - token_param：若设置，派发时以该参数名注入 CancellationToken
    """

    name: str
    handler: Callable[..., Any]
    params: Tuple[ParamSpec, ...] = ()
    description: str = ""
    function_name: Optional[str] = None
    xml: Optional[XmlDeclaration] = None
    custom_schema: Optional[Dict[str, Any]] = None
    token_param: Optional[str] = None

    def parameters_schema(self) -> Dict[str, Any]:
        """生成 object 形态的 JSON Schema（function 风格 schema 的 parameters）。"""

        return {
            "type": "object",
            "properties": {p.name: p.json_schema() for p in self.params},
            "required": [p.name for p in self.params if p.required],
        }


class OperationBuilder:
    """单个操作的链式 builder（由 `OperationSet.operation` 创建）。"""

    def __init__(self, name: str, handler: Callable[..., Any], *, description: str = "") -> None:
        """记录操作名、handler 与说明；schema 风格由后续链式调用决定。"""

        self._name = name
        self._handler = handler
        self._description = description
        self._params: List[ParamSpec] = []
        self._function_name: Optional[str] = None
        self._xml: Optional[XmlDeclaration] = None
        self._custom_schema: Optional[Dict[str, Any]] = None
        self._token_param: Optional[str] = None

    def param(
        self,
        name: str,
        annotation: Any = str,
        *,
        required: bool = True,
        description: str = "",
        default: Any = None,
    ) -> "OperationBuilder":
        """追加一个参数（按声明顺序绑定）。"""

        self._params.append(
            ParamSpec(name=name, annotation=annotation, required=required, description=description, default=default)
        )
        return self

    def function(self, name: Optional[str] = None) -> "OperationBuilder":
        """暴露 function 风格 schema（默认使用操作名）。"""

        self._function_name = self._name if name is None else name
        return self

    def xml(
        self,
        tag_name: str,
        *,
        mappings: Sequence[XmlNodeMapping] = (),
        example: Optional[str] = None,
    ) -> "OperationBuilder":
        """暴露 XML 风格 schema（根标签 + 参数映射 + 可选示例）。"""

        self._xml = XmlDeclaration(tag_name=tag_name, mappings=tuple(mappings), example=example)
        return self

    def custom(self, schema: Mapping[str, Any]) -> "OperationBuilder":
        """暴露 custom 风格 schema（不透明参数描述）。"""

        self._custom_schema = dict(schema)
        return self

    def accepts_cancellation(self, param_name: str = "cancel_token") -> "OperationBuilder":
        """声明 handler 接收取消令牌（派发时以关键字参数注入）。"""

        self._token_param = param_name
        return self

    def build(self) -> OperationDescriptor:
        """生成不可变的操作描述。"""

        return OperationDescriptor(
            name=self._name,
            handler=self._handler,
            params=tuple(self._params),
            description=self._description,
            function_name=self._function_name,
            xml=self._xml,
            custom_schema=self._custom_schema,
            token_param=self._token_param,
        )


@dataclass
class OperationSet:
    """工具声明操作时使用的收集器。"""

    _builders: List[OperationBuilder] = field(default_factory=list)

    def operation(self, name: str, handler: Callable[..., Any], *, description: str = "") -> OperationBuilder:
        """开始声明一个操作，返回其 builder。"""

        builder = OperationBuilder(name, handler, description=description)
        self._builders.append(builder)
        return builder

    def build(self) -> List[OperationDescriptor]:
        """按声明顺序生成全部操作描述。"""

        return [b.build() for b in self._builders]


class ToolCapability:
    """
    工具能力基类。

    约束：
    - 子类实现 `declare_operations`，在其中通过 `OperationSet` 显式声明操作。
    - 工具按 run 实例化，绑定到具体的 sandbox/project/thread；不跨 run 复用。
    """

    tool_name: Optional[str] = None

    def declare_operations(self, ops: OperationSet) -> None:
        """声明本工具的操作（子类必须实现）。"""

        raise NotImplementedError

    def operations(self) -> List[OperationDescriptor]:
        """返回已声明的操作（首次调用时构建并缓存）。"""

        cached = getattr(self, "_declared_operations", None)
        if cached is None:
            ops = OperationSet()
            self.declare_operations(ops)
            cached = ops.build()
            self._declared_operations = cached
        return list(cached)

    @property
    def registration_name(self) -> str:
        """registration key 的工具部分（默认类名）。"""

        return self.tool_name or type(self).__name__

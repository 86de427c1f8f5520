"""
参数绑定：把模型给出的松散参数 bag 解码为操作的关键字参数。

绑定顺序：
1) 操作只有一个 dict 类型参数：整个 bag 原样传入
2) 操作只有一个 str 类型参数：整个 bag 序列化为字符串传入
3) 否则按参数名逐个绑定：精确名 → snake/camel 变体 →（仅首个参数）`text` / `content` →（仅首个参数且 bag 只有一项）该项
4) 逐个转换到声明类型；失败时该参数置 None 并记录 BindingWarning，不中止整个调用

约束：
- 缺失的必填参数同样以 None（或声明的默认值）传入；工具自己负责校验并返回结构化失败。
"""

from __future__ import annotations

import json
import logging
import typing
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, TypeAdapter, ValidationError

from run_engine.core.utils import camel_to_snake, snake_to_camel
from run_engine.tools.capability import ParamSpec

logger = logging.getLogger(__name__)

_MISSING = object()
_CONTENT_KEYS = ("text", "content")
_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off", ""}


@dataclass(frozen=True)
class BindingWarning:
    """非致命的参数转换失败（调用照常进行，对应参数为 None）。"""

    operation: str
    param: str
    reason: str


@dataclass
class BoundArguments:
    """解码结果：关键字参数 + 绑定过程中的警告。"""

    kwargs: Dict[str, Any] = field(default_factory=dict)
    warnings: List[BindingWarning] = field(default_factory=list)


def _origin(annotation: Any) -> Any:
    """返回泛型注解的原始类型（`Dict[str, int]` -> dict）；非泛型原样返回。"""

    return typing.get_origin(annotation) or annotation


def _is_mapping_type(annotation: Any) -> bool:
    """是否为 dict/Mapping 风格的注解。"""

    origin = _origin(annotation)
    return isinstance(origin, type) and issubclass(origin, Mapping)


def _is_optional_of(annotation: Any) -> Any:
    """`Optional[X]` -> X；其它注解返回 None。"""

    if typing.get_origin(annotation) is typing.Union:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return None


def _to_bool(value: Any) -> bool:
    """字符串/数字 -> bool（无法识别时抛 ValueError）。"""

    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f"cannot interpret {value!r} as bool")


def coerce_value(value: Any, annotation: Any) -> Any:
    """
    把单个值转换到声明类型。

    规则：
    - None 或 Any：原样
    - 已是目标类型：原样
    - str / int / float / bool：基本类型互转（来自字符串或数字）
    - list / tuple / set / dict：容器类型匹配时原样透传
    - pydantic 模型：dict 经 `model_validate` 转为对象
    - 其它：交给 pydantic `TypeAdapter` 做结构化转换

    异常：
    - ValueError / TypeError / ValidationError：无法转换
    """

    if value is None or annotation is Any:
        return value

    inner = _is_optional_of(annotation)
    if inner is not None:
        return coerce_value(value, inner)

    origin = _origin(annotation)

    if annotation is bool:
        return value if isinstance(value, bool) else _to_bool(value)
    if annotation is int:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value)
        return int(str(value).strip())
    if annotation is float:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        return float(str(value).strip())
    if annotation is str:
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    if origin in (list, tuple, set, frozenset, dict) and isinstance(value, origin):
        return value
    if _is_mapping_type(annotation) and isinstance(value, Mapping):
        return value
    if origin in (list, tuple, set, frozenset) and isinstance(value, (list, tuple, set, frozenset)):
        return origin(value)

    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        if isinstance(value, annotation):
            return value
        if isinstance(value, str):
            return annotation.model_validate_json(value)
        return annotation.model_validate(value)

    if isinstance(annotation, type) and isinstance(value, annotation):
        return value
    return TypeAdapter(annotation).validate_python(value)


class ArgumentDecoder:
    """
    单个操作的参数解码器（注册时按参数声明构造一次）。

    说明：
    - 只依赖操作显式声明的 `ParamSpec`，不对 handler 做运行时反射。
    """

    def __init__(self, operation_name: str, params: Sequence[ParamSpec]) -> None:
        """保存操作名与有序参数声明。"""

        self._operation_name = operation_name
        self._params = tuple(params)

    @property
    def params(self) -> Sequence[ParamSpec]:
        """有序参数声明。"""

        return self._params

    def decode(self, bag: Optional[Mapping[str, Any]]) -> BoundArguments:
        """
        解码一个参数 bag。

        参数：
        - bag：模型给出的参数（None 视为空 bag）

        返回：
        - BoundArguments：kwargs 覆盖全部声明参数；warnings 记录转换失败
        """

        args: Dict[str, Any] = dict(bag or {})
        bound = BoundArguments()
        params = self._params

        if len(params) == 1 and _is_mapping_type(params[0].annotation):
            bound.kwargs[params[0].name] = args
            return bound
        if len(params) == 1 and params[0].annotation is str:
            bound.kwargs[params[0].name] = json.dumps(args, ensure_ascii=False, default=str)
            return bound

        for index, param in enumerate(params):
            raw = self._lookup(param.name, args, first=(index == 0))
            if raw is _MISSING:
                bound.kwargs[param.name] = param.default
                if param.required:
                    logger.debug("no value for %s.%s in %s", self._operation_name, param.name, sorted(args))
                continue
            try:
                bound.kwargs[param.name] = coerce_value(raw, param.annotation)
            except (ValueError, TypeError, ValidationError) as exc:
                warning = BindingWarning(
                    operation=self._operation_name,
                    param=param.name,
                    reason=f"cannot convert {type(raw).__name__} to {getattr(param.annotation, '__name__', param.annotation)}: {exc}",
                )
                logger.warning("binding warning for %s.%s: %s", warning.operation, warning.param, warning.reason)
                bound.warnings.append(warning)
                bound.kwargs[param.name] = None
        return bound

    @staticmethod
    def _lookup(name: str, args: Mapping[str, Any], *, first: bool) -> Any:
        """按绑定规则 3 查找参数值；未找到返回 `_MISSING`。"""

        value = args.get(name)
        if value is None:
            variant = snake_to_camel(name) if "_" in name else camel_to_snake(name)
            value = args.get(variant)
        if value is None and first:
            for key in _CONTENT_KEYS:
                value = args.get(key)
                if value is not None:
                    break
            if value is None and len(args) == 1:
                value = next(iter(args.values()))
        return _MISSING if value is None else value

"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；包内默认配置 `run_engine/assets/default.yaml` 总是最先合并。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
"""

from __future__ import annotations

from copy import deepcopy
from importlib.resources import files
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class RunSectionConfig(BaseModel):
    """run 循环参数。"""

    model_config = ConfigDict(extra="forbid")

    max_iterations: int = Field(default=10, ge=1)
    pacing_delay_sec: float = Field(default=0.5, ge=0.0)
    tool_execution_strategy: Literal["sequential", "parallel"] = "sequential"
    max_xml_tool_calls: int = Field(default=25, ge=0)  # 0 表示不限
    todo_path: str = "/workspace/todo.md"


class ModelsConfig(BaseModel):
    """
    模型选择。

    字段：
    - default：请求未指定模型时使用
    - aliases：别名 -> 真实模型名
    - max_tokens_by_model：按模型给出的默认 max_tokens（采样参数未指定时使用）
    """

    model_config = ConfigDict(extra="forbid")

    default: str = "default-model"
    aliases: Dict[str, str] = Field(default_factory=dict)
    max_tokens_by_model: Dict[str, int] = Field(default_factory=dict)

    def resolve(self, name: Optional[str]) -> str:
        """解析模型名：空 -> default；命中别名 -> 别名目标；否则原样。"""

        name = (name or "").strip()
        if not name:
            name = self.default
        return self.aliases.get(name, name)


class SamplingConfig(BaseModel):
    """采样参数默认值。"""

    model_config = ConfigDict(extra="forbid")

    temperature: Optional[float] = Field(default=0.1, ge=0.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ContextConfig(BaseModel):
    """上下文窗口参数。"""

    model_config = ConfigDict(extra="forbid")

    max_context_tokens: int = Field(default=8000, ge=1)
    chars_per_token: int = Field(default=4, ge=1)
    user_line_chars: int = Field(default=100, ge=1)
    assistant_line_chars: int = Field(default=100, ge=1)
    tool_line_chars: int = Field(default=50, ge=1)


class StreamConfig(BaseModel):
    """响应流/控制平面参数。"""

    model_config = ConfigDict(extra="forbid")

    redis_url: str = "redis://localhost:6379/0"
    instance_id: str = "local"
    response_ttl_sec: int = Field(default=86400, ge=1)
    default_ttl_sec: int = Field(default=3600, ge=1)
    listener_poll_sec: float = Field(default=0.01, gt=0.0)

    @field_validator("instance_id")
    @classmethod
    def _non_blank_instance(cls, value: str) -> str:
        """instance_id 会拼进 channel 名，不允许为空白。"""

        value = str(value or "").strip()
        if not value:
            raise ValueError("stream.instance_id must not be blank")
        return value


class PromptConfig(BaseModel):
    """
    系统提示来源。

    说明：
    - `system_text` 优先；否则读取 `system_path`；都未提供时使用包内默认提示。
    """

    model_config = ConfigDict(extra="forbid")

    system_text: Optional[str] = None
    system_path: Optional[str] = None


class RunEngineConfig(BaseModel):
    """运行引擎总配置。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = 1
    run: RunSectionConfig = Field(default_factory=RunSectionConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"配置文件不存在：{path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件根节点必须为 mapping(dict)：{path}")
    return data


def load_default_config_dict() -> Dict[str, Any]:
    """读取包内默认配置（`run_engine/assets/default.yaml`）。"""

    text = files("run_engine.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data if isinstance(data, dict) else {}


def load_config_dicts(config_dicts: list[Dict[str, Any]], *, include_defaults: bool = True) -> RunEngineConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `RunEngineConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - include_defaults：是否先合并包内默认配置
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return RunEngineConfig.model_validate(merged)


def load_config(config_paths: list[Path], *, include_defaults: bool = True) -> RunEngineConfig:
    """
    加载并合并多个配置文件，返回校验后的 `RunEngineConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays, include_defaults=include_defaults)

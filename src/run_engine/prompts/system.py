"""
系统提示加载（静态文本 + XML 工具用法示例）。

来源优先级：显式文本 → 文件路径 → 包内默认提示（`run_engine/assets/prompts/system.md`）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from importlib.resources import files
from pathlib import Path
from typing import Mapping, Optional

from run_engine.config.loader import PromptConfig

TOOL_EXAMPLES_HEADING = "## Tool usage examples"


def _read_text_file(path: Path) -> str:
    """读取 UTF-8 文本文件（用于加载 prompt 模板）。"""

    return Path(path).read_text(encoding="utf-8")


def load_builtin_system_prompt() -> str:
    """读取包内默认系统提示。"""

    return files("run_engine.assets").joinpath("prompts").joinpath("system.md").read_text(encoding="utf-8")


def with_xml_examples(prompt: str, examples: Mapping[str, str]) -> str:
    """
    在系统提示末尾追加 XML 工具用法示例。

    说明：
    - 没有示例时原样返回
    - 标签按字母序输出，保证同一工具集得到相同的提示
    """

    if not examples:
        return prompt
    blocks = [f"### <{tag}>\n{examples[tag].strip()}" for tag in sorted(examples)]
    return prompt.rstrip() + "\n\n" + TOOL_EXAMPLES_HEADING + "\n\n" + "\n\n".join(blocks) + "\n"


@dataclass
class SystemPromptLoader:
    """
    系统提示来源（带缓存）。

    说明：
    - 支持文件路径与直接字符串二选一；若两者都提供，优先使用字符串。
    - 首次 `load()` 后缓存结果；同一 orchestrator 的所有 run 共用。
    """

    system_text: Optional[str] = None
    system_path: Optional[Path] = None
    _cached: Optional[str] = field(default=None, init=False, repr=False)

    @classmethod
    def from_config(cls, cfg: PromptConfig, *, base_dir: Optional[Path] = None) -> "SystemPromptLoader":
        """从 `prompt` 配置段构造；相对路径按 base_dir 解析。"""

        path: Optional[Path] = None
        if cfg.system_path:
            path = Path(cfg.system_path)
            if not path.is_absolute() and base_dir is not None:
                path = Path(base_dir) / path
        return cls(system_text=cfg.system_text, system_path=path)

    def load(self) -> str:
        """返回系统提示文本（缓存）。"""

        if self._cached is None:
            text = self.system_text
            if text is None and self.system_path is not None:
                text = _read_text_file(self.system_path)
            if text is None:
                text = load_builtin_system_prompt()
            self._cached = text
        return self._cached

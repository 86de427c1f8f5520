"""系统提示加载。"""

from __future__ import annotations

from run_engine.prompts.system import SystemPromptLoader, with_xml_examples

__all__ = ["SystemPromptLoader", "with_xml_examples"]

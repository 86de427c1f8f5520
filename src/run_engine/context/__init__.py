"""上下文窗口管理（token 预算 + summary 压缩）。"""

from __future__ import annotations

from run_engine.context.window import ContextWindowManager, ContextWindowSettings, truncate_content

__all__ = ["ContextWindowManager", "ContextWindowSettings", "truncate_content"]

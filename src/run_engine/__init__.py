"""run_engine：LLM agent run 编排引擎（迭代循环、工具注册表、响应流、上下文窗口）。"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]

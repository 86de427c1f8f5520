"""内置工具（message / files）与默认工具集装配。"""

from __future__ import annotations

from typing import List

from run_engine.tools.builtin.files_tool import WorkspaceFilesTool
from run_engine.tools.builtin.message_tool import MessageTool
from run_engine.tools.capability import ToolCapability
from run_engine.workspace.files import WorkspaceFiles


def builtin_tools(workspace: WorkspaceFiles) -> List[ToolCapability]:
    """为一个 run 实例化默认工具集（每个 run 一组新实例）。"""

    return [MessageTool(), WorkspaceFilesTool(workspace)]


__all__ = ["MessageTool", "WorkspaceFilesTool", "builtin_tools"]

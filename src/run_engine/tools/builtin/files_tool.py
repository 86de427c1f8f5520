"""WorkspaceFilesTool：工作区文件读写（经 `WorkspaceFiles` 协议，不直接触碰 sandbox API）。"""

from __future__ import annotations

from typing import Optional

from run_engine.core.errors import UserError
from run_engine.tools.capability import OperationSet, ToolCapability
from run_engine.tools.protocol import ToolResult, XmlNodeMapping
from run_engine.workspace.files import WorkspaceFiles


class WorkspaceFilesTool(ToolCapability):
    """工作区文件工具（read_file / write_file / list_files）。"""

    tool_name = "files"

    def __init__(self, workspace: WorkspaceFiles, *, max_read_chars: int = 200_000) -> None:
        """绑定本 run 的工作区。"""

        self._workspace = workspace
        self._max_read_chars = int(max_read_chars)

    def declare_operations(self, ops: OperationSet) -> None:
        """声明文件操作。"""

        (
            ops.operation("read_file", self.read_file, description="Read a text file from /workspace.")
            .param("file_path", str, description="Path relative to /workspace")
            .param("start_line", int, required=False, default=1, description="1-based first line")
            .param("end_line", int, required=False, description="1-based last line (inclusive)")
            .function()
            .xml(
                "read-file",
                mappings=[
                    XmlNodeMapping(param_name="file_path", node_type="attribute", path="file_path"),
                    XmlNodeMapping(param_name="start_line", node_type="attribute", required=False, value_type="int"),
                    XmlNodeMapping(param_name="end_line", node_type="attribute", required=False, value_type="int"),
                ],
                example='<read-file file_path="src/main.py" start_line="1" end_line="40"></read-file>',
            )
        )
        (
            ops.operation("write_file", self.write_file, description="Create or overwrite a text file in /workspace.")
            .param("file_path", str, description="Path relative to /workspace")
            .param("file_contents", str, description="Full file content")
            .function()
            .xml(
                "create-file",
                mappings=[
                    XmlNodeMapping(param_name="file_path", node_type="attribute", path="file_path"),
                    XmlNodeMapping(param_name="file_contents", node_type="content"),
                ],
                example='<create-file file_path="notes/plan.md">\n# Plan\n</create-file>',
            )
        )
        (
            ops.operation("list_files", self.list_files, description="List entries in a /workspace directory.")
            .param("path", str, required=False, default=".")
            .param("include_hidden", bool, required=False, default=False)
            .function()
        )

    def read_file(self, file_path: Optional[str], start_line: Optional[int] = 1, end_line: Optional[int] = None) -> ToolResult:
        """读取文件（可选行区间）。"""

        if not file_path:
            return ToolResult.error_payload(error_kind="validation", error="file_path is required")
        try:
            text = self._workspace.read_text(file_path)
        except UserError as e:
            return ToolResult.error_payload(error_kind="permission", error=str(e))
        if text is None:
            return ToolResult.error_payload(error_kind="not_found", error=f"File not found: {file_path}")

        lines = text.splitlines(keepends=True)
        start = max(1, int(start_line or 1))
        end = len(lines) if end_line is None else max(start, int(end_line))
        selected = "".join(lines[start - 1 : end])
        truncated = len(selected) > self._max_read_chars
        if truncated:
            selected = selected[: self._max_read_chars]
        return ToolResult.ok_payload(output=selected, data={"file_path": file_path, "truncated": truncated})

    def write_file(self, file_path: Optional[str], file_contents: Optional[str]) -> ToolResult:
        """写入文件（覆盖）。"""

        if not file_path:
            return ToolResult.error_payload(error_kind="validation", error="file_path is required")
        try:
            self._workspace.write_text(file_path, file_contents or "")
        except UserError as e:
            return ToolResult.error_payload(error_kind="permission", error=str(e))
        return ToolResult.ok_payload(output=f"File '{file_path}' written", data={"bytes": len((file_contents or "").encode("utf-8"))})

    def list_files(self, path: Optional[str] = ".", include_hidden: Optional[bool] = False) -> ToolResult:
        """列出目录条目。"""

        try:
            names = self._workspace.list_dir(path or ".")
        except UserError as e:
            return ToolResult.error_payload(error_kind="permission", error=str(e))
        if not include_hidden:
            names = [n for n in names if not n.startswith(".")]
        return ToolResult.ok_payload(output=names)

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict

import pytest

from run_engine.core.errors import UserError
from run_engine.tools.builtin import builtin_tools
from run_engine.tools.builtin.files_tool import WorkspaceFilesTool
from run_engine.tools.protocol import TerminalSignal, ToolCall, ToolResult
from run_engine.tools.registry import ToolRegistry
from run_engine.workspace.files import InMemoryWorkspace, LocalWorkspace, normalize_workspace_path


def _dispatch(registry: ToolRegistry, name: str, args: Dict[str, Any]) -> ToolResult:
    return asyncio.run(registry.dispatch(ToolCall(call_id="c1", name=name, args=args)))


def _registry(workspace: Any) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in builtin_tools(workspace):
        registry.register(tool)
    return registry


def test_ask_pauses_and_requires_text() -> None:
    registry = _registry(InMemoryWorkspace())

    paused = _dispatch(registry, "ask", {"text": "Which layout?", "attachments": "a.md, b.md"})
    assert paused.ok is True
    assert paused.terminal_signal is TerminalSignal.PAUSED
    assert paused.details is not None
    assert paused.details["data"] == {"tool": "ask", "text": "Which layout?", "attachments": ["a.md", "b.md"]}

    invalid = _dispatch(registry, "ask", {})
    assert invalid.ok is False
    assert invalid.error_kind == "validation"
    assert invalid.terminal_signal is None


def test_complete_and_takeover_signals() -> None:
    registry = _registry(InMemoryWorkspace())

    done = _dispatch(registry, "complete", {})
    assert done.terminal_signal is TerminalSignal.COMPLETED
    assert done.details is not None and done.details["data"]["tool"] == "complete"

    takeover = _dispatch(registry, "web-browser-takeover", {"text": "Solve the CAPTCHA"})
    assert takeover.terminal_signal is TerminalSignal.PAUSED
    assert takeover.details is not None and takeover.details["data"]["tool"] == "web-browser-takeover"


def test_files_write_read_and_line_ranges() -> None:
    workspace = InMemoryWorkspace()
    registry = _registry(workspace)

    written = _dispatch(registry, "write_file", {"file_path": "/workspace/src/a.txt", "file_contents": "one\ntwo\nthree\n"})
    assert written.ok is True
    assert workspace.files == {"src/a.txt": "one\ntwo\nthree\n"}

    full = _dispatch(registry, "read_file", {"file_path": "src/a.txt"})
    assert full.details is not None and full.details["output"] == "one\ntwo\nthree\n"

    middle = _dispatch(registry, "read_file", {"file_path": "src/a.txt", "start_line": 2, "end_line": 2})
    assert middle.details is not None and middle.details["output"] == "two\n"


def test_files_errors_are_structured() -> None:
    registry = _registry(InMemoryWorkspace())

    missing = _dispatch(registry, "read_file", {"file_path": "nope.txt"})
    assert missing.ok is False and missing.error_kind == "not_found"

    escape = _dispatch(registry, "write_file", {"file_path": "../etc/passwd", "file_contents": "x"})
    assert escape.ok is False and escape.error_kind == "permission"

    no_path = _dispatch(registry, "read_file", {"start_line": 1, "end_line": 2})
    assert no_path.ok is False and no_path.error_kind == "validation"


def test_list_files_hides_dotfiles_by_default() -> None:
    workspace = InMemoryWorkspace(files={"a.txt": "1", ".env": "2", "dir/b.txt": "3"})
    registry = _registry(workspace)

    visible = _dispatch(registry, "list_files", {"path": "."})
    assert visible.details is not None and visible.details["output"] == ["a.txt", "dir"]

    everything = _dispatch(registry, "list_files", {"path": ".", "include_hidden": "true"})
    assert everything.details is not None and everything.details["output"] == [".env", "a.txt", "dir"]


def test_read_is_truncated_to_max_chars() -> None:
    tool = WorkspaceFilesTool(InMemoryWorkspace(files={"big.txt": "x" * 50}), max_read_chars=10)
    result = tool.read_file("big.txt")
    assert result.details is not None
    assert result.details["output"] == "x" * 10
    assert result.details["data"]["truncated"] is True


def test_local_workspace_round_trip(tmp_path: Path) -> None:
    workspace = LocalWorkspace(tmp_path / "ws")
    workspace.write_text("/workspace/docs/readme.md", "# hi\n")

    assert (tmp_path / "ws" / "docs" / "readme.md").read_text(encoding="utf-8") == "# hi\n"
    assert workspace.read_text("docs/readme.md") == "# hi\n"
    assert workspace.read_text("docs/missing.md") is None
    assert workspace.list_dir("docs") == ["readme.md"]
    assert workspace.list_dir("nowhere") == []

    with pytest.raises(UserError):
        workspace.read_text("../outside.txt")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("/workspace/todo.md", "todo.md"),
        ("/workspace", ""),
        ("a/./b/../c.txt", "a/c.txt"),
        ("", ""),
    ],
)
def test_normalize_workspace_path(raw: str, expected: str) -> None:
    assert normalize_workspace_path(raw) == expected


@pytest.mark.parametrize("raw", ["/etc/passwd", "../x", "a/../../x"])
def test_normalize_workspace_path_rejects_escape(raw: str) -> None:
    with pytest.raises(UserError):
        normalize_workspace_path(raw)

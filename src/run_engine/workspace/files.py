"""
WorkspaceFiles：sandbox 工作区文件读写的窄接口 + 两个实现。

说明：
- 远端 sandbox 的文件 API 由集成方实现该协议；本包自带本地目录实现与内存实现（测试/离线）。
- 路径约定：以 `/workspace` 为根的绝对路径，或相对工作区根目录的路径。
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Protocol, runtime_checkable

from run_engine.core.errors import UserError

WORKSPACE_ROOT = "/workspace"


def normalize_workspace_path(path: str) -> str:
    """
    把路径规范化为工作区内的相对 POSIX 路径。

    异常：
    - `UserError`：路径逃逸工作区根目录
    """

    p = PurePosixPath(str(path or "").strip() or ".")
    if p.is_absolute():
        try:
            p = p.relative_to(WORKSPACE_ROOT)
        except ValueError as e:
            raise UserError(f"path outside workspace: {path}") from e
    parts: List[str] = []
    for part in p.parts:
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                raise UserError(f"path outside workspace: {path}")
            parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


@runtime_checkable
class WorkspaceFiles(Protocol):
    """
    工作区文件协议（最小集合）。

    约束：
    - `read_text` 文件不存在时返回 None（而不是抛异常）。
    - `write_text` 必要时创建父目录。
    """

    def read_text(self, path: str) -> Optional[str]:
        """读取文本文件；不存在返回 None。"""

        ...

    def write_text(self, path: str, content: str) -> None:
        """写入（覆盖）文本文件。"""

        ...

    def list_dir(self, path: str = ".") -> List[str]:
        """列出目录下的条目名（排序）。"""

        ...


class LocalWorkspace:
    """以本地目录作为 `/workspace` 的实现。"""

    def __init__(self, root: Path) -> None:
        """绑定工作区根目录（不存在时创建）。"""

        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        """工作区根目录（已 resolve）。"""

        return self._root

    def resolve_path(self, path: str) -> Path:
        """
        将工作区路径解析为本地绝对路径，并限制在根目录下。

        异常：
        - `UserError`：当路径逃逸根目录时抛出
        """

        rel = normalize_workspace_path(path)
        p = (self._root / rel).resolve()
        if not p.is_relative_to(self._root):
            raise UserError(f"path outside workspace: {path}")
        return p

    def read_text(self, path: str) -> Optional[str]:
        """读取 UTF-8 文本；不存在返回 None。"""

        p = self.resolve_path(path)
        if not p.is_file():
            return None
        return p.read_text(encoding="utf-8")

    def write_text(self, path: str, content: str) -> None:
        """写入 UTF-8 文本（创建父目录）。"""

        p = self.resolve_path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")

    def list_dir(self, path: str = ".") -> List[str]:
        """列出目录条目；目录不存在返回空列表。"""

        p = self.resolve_path(path)
        if not p.is_dir():
            return []
        return sorted(child.name for child in p.iterdir())


@dataclass
class InMemoryWorkspace:
    """
    内存工作区（用于测试/离线）。

    约束：
    - 线程安全（锁保护）；目录是隐式的（由文件路径推出）。
    """

    files: Dict[str, str] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def __post_init__(self) -> None:
        """规范化初始文件的路径键。"""

        self.files = {normalize_workspace_path(k): v for k, v in self.files.items()}

    def read_text(self, path: str) -> Optional[str]:
        """读取文本；不存在返回 None。"""

        with self._lock:
            return self.files.get(normalize_workspace_path(path))

    def write_text(self, path: str, content: str) -> None:
        """写入文本。"""

        with self._lock:
            self.files[normalize_workspace_path(path)] = content

    def list_dir(self, path: str = ".") -> List[str]:
        """列出某个目录下的直接子条目。"""

        prefix = normalize_workspace_path(path)
        prefix = f"{prefix}/" if prefix else ""
        with self._lock:
            names = {k[len(prefix):].split("/", 1)[0] for k in self.files if k.startswith(prefix)}
        return sorted(n for n in names if n)

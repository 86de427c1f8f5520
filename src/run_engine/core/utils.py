"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

import re
from datetime import datetime, timezone

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")


def utc_now() -> datetime:
    """返回当前 UTC 时间（带 tzinfo）。"""
    return datetime.now(timezone.utc)


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return utc_now().isoformat().replace("+00:00", "Z")


def snake_to_camel(name: str) -> str:
    """`file_path` -> `filePath`；不含下划线时原样返回。"""
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def camel_to_snake(name: str) -> str:
    """`filePath` -> `file_path`。"""
    return _CAMEL_BOUNDARY_RE.sub(r"_\1", name).lower()

"""
Persistence 协议（insert/update/query）与内存实现 + 线程消息的类型化门面。

设计目标：
- 本包不定义存储引擎，只依赖 `runs` / `messages` / `threads` 三张表的记录形状。
- 内存实现用于测试/单进程部署；跨进程需要集成方提供远端实现。
"""

from __future__ import annotations

import logging
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, runtime_checkable

from run_engine.core.contracts import Message
from run_engine.core.errors import PersistenceFailure

logger = logging.getLogger(__name__)

RUNS_TABLE = "runs"
MESSAGES_TABLE = "messages"
THREADS_TABLE = "threads"


@runtime_checkable
class Persistence(Protocol):
    """
    通用持久化协议（最小集合）。

    约束：
    - `insert` 对已存在的 `id` MUST 抛 `PersistenceFailure`。
    - `query` MUST 按插入顺序返回记录副本。
    - 任何存储层失败 SHOULD 以 `PersistenceFailure` 抛出。
    """

    def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        """插入一条记录并返回存储后的副本。"""

        ...

    def update(self, table: str, where: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        """按等值条件更新记录，返回受影响行数。"""

        ...

    def query(self, table: str, where: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """按等值条件查询（None 表示全部）。"""

        ...

    def delete(self, table: str, where: Mapping[str, Any]) -> int:
        """按等值条件删除，返回删除行数。"""

        ...


def _type_value(message_type: Any) -> str:
    """MessageType 成员或字符串 -> 字符串值。"""

    return str(getattr(message_type, "value", message_type))


def _matches(record: Mapping[str, Any], where: Optional[Mapping[str, Any]]) -> bool:
    """等值匹配（where 为空时匹配全部）。"""

    if not where:
        return True
    return all(record.get(k) == v for k, v in where.items())


@dataclass
class InMemoryPersistence:
    """
    内存持久化实现。

    约束：
    - 线程安全（RLock 保护 + copy-on-read）。
    - 记录以 `id` 字段作为主键。
    """

    _tables: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        """插入记录；重复 id 抛 `PersistenceFailure`。"""

        row = deepcopy(dict(record))
        with self._lock:
            rows = self._tables.setdefault(table, [])
            record_id = row.get("id")
            if record_id is not None and any(r.get("id") == record_id for r in rows):
                raise PersistenceFailure(f"duplicate id in {table}: {record_id}")
            rows.append(row)
            return deepcopy(row)

    def update(self, table: str, where: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        """更新匹配记录。"""

        count = 0
        with self._lock:
            for row in self._tables.get(table, []):
                if _matches(row, where):
                    row.update(deepcopy(dict(values)))
                    count += 1
        return count

    def query(self, table: str, where: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """返回匹配记录的副本（插入顺序）。"""

        with self._lock:
            return [deepcopy(r) for r in self._tables.get(table, []) if _matches(r, where)]

    def delete(self, table: str, where: Mapping[str, Any]) -> int:
        """删除匹配记录。"""

        with self._lock:
            rows = self._tables.get(table, [])
            kept = [r for r in rows if not _matches(r, where)]
            self._tables[table] = kept
            return len(rows) - len(kept)


class ThreadStore:
    """
    线程消息的类型化门面（基于 Persistence）。

    说明：
    - 线程是 append-only 的；删除只用于已消费的 `image_context` 消息。
    - 读出的顺序即插入顺序（也是投喂给模型的权威顺序）。
    """

    def __init__(self, persistence: Persistence) -> None:
        """绑定持久化实现。"""

        self._persistence = persistence

    def ensure_thread(self, thread_id: str, *, project_id: str) -> None:
        """线程记录不存在时创建（best-effort）。"""

        try:
            if not self._persistence.query(THREADS_TABLE, {"id": thread_id}):
                self._persistence.insert(THREADS_TABLE, {"id": thread_id, "project_id": project_id})
        except PersistenceFailure as e:
            logger.warning("cannot ensure thread %s: %s", thread_id, e)

    def add(self, message: Message) -> Message:
        """追加一条消息（失败抛 `PersistenceFailure`）。"""

        self._persistence.insert(MESSAGES_TABLE, message.to_record())
        return message

    def exists(self, message_id: str) -> bool:
        """消息 id 是否已存在。"""

        return bool(self._persistence.query(MESSAGES_TABLE, {"id": message_id}))

    def list_messages(self, thread_id: str, *, types: Optional[Iterable[str]] = None, llm_only: bool = False) -> List[Message]:
        """按插入顺序列出线程消息（可按 type / is_llm_message 过滤）。"""

        wanted = {_type_value(t) for t in types} if types is not None else None
        out: List[Message] = []
        for record in self._persistence.query(MESSAGES_TABLE, {"thread_id": thread_id}):
            if wanted is not None and record.get("type") not in wanted:
                continue
            if llm_only and not record.get("is_llm_message"):
                continue
            out.append(Message.from_record(record))
        return out

    def latest(self, thread_id: str, message_type: str) -> Optional[Message]:
        """某类型的最新一条消息（不存在返回 None）。"""

        items = self.list_messages(thread_id, types=[message_type])
        return items[-1] if items else None

    def delete_messages(self, message_ids: Iterable[str]) -> int:
        """按 id 删除消息，返回删除数。"""

        return sum(self._persistence.delete(MESSAGES_TABLE, {"id": message_id}) for message_id in message_ids)

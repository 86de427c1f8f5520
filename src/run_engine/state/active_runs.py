"""
ActiveRunTable：本 worker 进程正在执行的 run（生命周期显式表）。

说明：
- run 开始时 insert，终态时 remove；进程崩溃后遗留的条目由 `sweep` 回收。
- 只是本进程内的镜像；跨实例的“谁在跑”由 broker 的 `active_run:<instance>:<run>` 标记表达。
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveRunEntry:
    """
    一条活跃 run 记录。

    字段：
    - run_id：run id
    - instance_id：执行该 run 的 worker 实例
    - started_at：插入时的 monotonic 时间（秒）
    """

    run_id: str
    instance_id: str
    started_at: float


class ActiveRunTable:
    """线程安全的活跃 run 表。"""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        """`clock` 可注入以便测试 sweep。"""

        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, ActiveRunEntry] = {}

    def insert(self, run_id: str, instance_id: str) -> ActiveRunEntry:
        """登记一个开始执行的 run（重复登记覆盖旧条目）。"""

        entry = ActiveRunEntry(run_id=run_id, instance_id=instance_id, started_at=self._clock())
        with self._lock:
            self._entries[run_id] = entry
        return entry

    def remove(self, run_id: str) -> Optional[ActiveRunEntry]:
        """移除条目（不存在时返回 None）。"""

        with self._lock:
            return self._entries.pop(run_id, None)

    def contains(self, run_id: str) -> bool:
        """run 是否仍在本进程执行。"""

        with self._lock:
            return run_id in self._entries

    def list_runs(self) -> List[ActiveRunEntry]:
        """所有活跃条目（按插入顺序）。"""

        with self._lock:
            return list(self._entries.values())

    def sweep(self, *, max_age_sec: Optional[float] = None, is_alive: Optional[Callable[[str], bool]] = None) -> List[str]:
        """
        崩溃恢复清理：移除过期或已不再存活的条目。

        参数：
        - max_age_sec：超过该时长的条目视为过期
        - is_alive：可选的存活检查（返回 False 即移除；异常时保留条目）

        返回：
        - 被移除的 run_id 列表
        """

        now = self._clock()
        removed: List[str] = []
        with self._lock:
            for run_id, entry in list(self._entries.items()):
                stale = max_age_sec is not None and now - entry.started_at > float(max_age_sec)
                if not stale and is_alive is not None:
                    try:
                        stale = not is_alive(run_id)
                    except Exception as e:
                        logger.warning("liveness check failed for run %s: %s", run_id, e)
                if stale:
                    del self._entries[run_id]
                    removed.append(run_id)
        if removed:
            logger.info("swept %d stale active runs: %s", len(removed), ", ".join(removed))
        return removed

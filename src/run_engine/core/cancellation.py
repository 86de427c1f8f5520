"""
CancellationToken：协作式取消令牌。

说明：
- 停止信号可能来自 Redis 监听线程，因此内部使用 `threading.Event`。
- 每个挂起点只做一次非阻塞 poll；已在执行中的工具调用允许跑完，再由下一个检查点观察。
- 工具操作可声明接收 token，在长耗时操作中自行检查。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

from run_engine.core.errors import CancellationObserved

logger = logging.getLogger(__name__)


class CancellationToken:
    """一次 run 的取消令牌（线程安全）。"""

    def __init__(self, *, checker: Optional[Callable[[], bool]] = None, poll_interval_sec: float = 0.05) -> None:
        """
        创建取消令牌。

        参数：
        - checker：可选的外部取消检测回调（返回 True 表示应取消；异常时 fail-open）
        - poll_interval_sec：`sleep` 期间检查取消的间隔
        """

        self._event = threading.Event()
        self._checker = checker
        self._reason = ""
        self._poll_interval_sec = max(0.001, float(poll_interval_sec))

    @property
    def reason(self) -> str:
        """取消原因（未取消时为空字符串）。"""

        return self._reason

    def cancel(self, reason: str = "stop signal") -> None:
        """设置取消标记（幂等；首次调用的 reason 生效）。"""

        if not self._event.is_set():
            self._reason = reason
            logger.info("cancellation requested: %s", reason)
        self._event.set()

    def is_cancelled(self) -> bool:
        """
        非阻塞检查是否已取消。

        约束：
        - checker 异常时 fail-open：视为未取消。
        """

        if self._event.is_set():
            return True
        if self._checker is None:
            return False
        try:
            if self._checker():
                self.cancel("external checker")
                return True
        except Exception:
            return False
        return False

    def raise_if_cancelled(self, where: str) -> None:
        """已取消时抛出 `CancellationObserved`。"""

        if self.is_cancelled():
            raise CancellationObserved(where, reason=self._reason)

    async def sleep(self, delay_sec: float) -> bool:
        """
        可被取消打断的 sleep。

        返回：
        - True：等待期间（或开始前）观察到取消
        - False：正常等待结束
        """

        deadline = time.monotonic() + max(0.0, float(delay_sec))
        while True:
            if self.is_cancelled():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(remaining, self._poll_interval_sec))

"""
RunStatusStore：run 状态转换的单写者入口（持久化 + 控制信号广播）。

约束：
- 状态单调：一旦进入终态（COMPLETED/FAILED/STOPPED），后续任何 update 都是 no-op。
- 持久化失败只记录日志（best-effort），不会让一个本来成功的 run 失败。
- 信号在持久化之后发出；广播失败同样只记录日志。
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from run_engine.core.contracts import Run, RunStatus
from run_engine.core.errors import PersistenceFailure, StateError
from run_engine.core.utils import utc_now
from run_engine.state.persistence import RUNS_TABLE, Persistence
from run_engine.streaming.broker import RunStreamBroker

logger = logging.getLogger(__name__)


class RunStatusStore:
    """
    持久化并广播 run 状态。

    说明：
    - 进程内 `_status` 仅是权威存储的镜像，用于在持久化不可用时仍保持单调性判断。
    - 同一 run 的状态更新由锁线性化。
    """

    def __init__(self, persistence: Persistence, broker: Optional[RunStreamBroker] = None) -> None:
        """
        参数：
        - persistence：Persistence 实现（runs 表）
        - broker：可选；提供时在状态转换后发送控制信号
        """

        self._persistence = persistence
        self._broker = broker
        self._lock = threading.RLock()
        self._status: Dict[str, RunStatus] = {}

    def create_run(self, *, thread_id: str, project_id: str, run_id: Optional[str] = None) -> Run:
        """创建一条 RUNNING 状态的 run 记录（失败抛 `PersistenceFailure`）。"""

        run = Run(thread_id=thread_id, project_id=project_id) if run_id is None else Run(id=run_id, thread_id=thread_id, project_id=project_id)
        with self._lock:
            self._persistence.insert(RUNS_TABLE, run.to_record())
            self._status[run.id] = run.status
        logger.info("run %s created for thread %s", run.id, thread_id)
        return run

    def get_run(self, run_id: str) -> Optional[Run]:
        """读取 run 记录（不存在返回 None）。"""

        rows = self._persistence.query(RUNS_TABLE, {"id": run_id})
        return Run.from_record(rows[0]) if rows else None

    def get_status(self, run_id: str) -> Optional[RunStatus]:
        """当前状态：优先权威存储；存储不可用时退回进程内镜像。"""

        try:
            run = self.get_run(run_id)
        except PersistenceFailure as e:
            logger.warning("cannot read status of run %s: %s", run_id, e)
            run = None
        if run is not None:
            return run.status
        return self._status.get(run_id)

    def update_status(self, run_id: str, status: RunStatus, error_message: Optional[str] = None) -> bool:
        """
        状态转换（单调）。

        参数：
        - run_id：目标 run
        - status：新状态
        - error_message：终态说明（例如 "Awaiting user input for ask"）

        返回：
        - True：状态已变化；False：run 已在终态，本次调用被忽略

        异常：
        - StateError：试图把状态转回 RUNNING 以外的非法值（例如未知字符串）
        """

        try:
            status = RunStatus(status)
        except ValueError as exc:
            raise StateError(f"unknown run status: {status!r}") from exc

        with self._lock:
            current = self._status.get(run_id)
            if current is None or not current.is_terminal:
                current = self.get_status(run_id)
            if current is not None and current.is_terminal:
                logger.debug("run %s already %s; ignoring transition to %s", run_id, current.value, status.value)
                return False
            if current is status:
                return False

            values = {"status": status.value, "error_message": error_message}
            if status.is_terminal:
                values["completed_at"] = utc_now().isoformat()
            try:
                if self._persistence.update(RUNS_TABLE, {"id": run_id}, values) == 0:
                    logger.warning("run %s not found while updating status to %s", run_id, status.value)
            except PersistenceFailure as e:
                logger.warning("failed to persist status %s for run %s: %s", status.value, run_id, e)
            self._status[run_id] = status

        logger.info("run %s -> %s%s", run_id, status.value, f" ({error_message})" if error_message else "")
        if self._broker is not None:
            try:
                self._broker.publish_status_signal(run_id, status)
            except Exception as e:
                logger.warning("failed to publish status signal for run %s: %s", run_id, e)
        return True

"""
RunState：单次 run 的可变状态容器（由 orchestrator 独占）。

目标：
- 替代“按 run_id 索引的全局状态/错误 map”：每个 run 一个显式结构，生命周期与 run 一致；
- 所有产出消息必须通过 `emit_message` 输出，保证“先持久化、再推送”的顺序一致。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from run_engine.core.cancellation import CancellationToken
from run_engine.core.contracts import Message, Run, RunStatus
from run_engine.core.errors import PersistenceFailure
from run_engine.state.persistence import ThreadStore
from run_engine.streaming.broker import RunStreamBroker
from run_engine.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """
    单次 run 的共享上下文。

    字段：
    - run：run 记录（id/thread/project）
    - token：取消令牌
    - threads：线程消息门面
    - broker：可选的流 broker（为 None 时只持久化不推送）
    - registry：本 run 独占的工具注册表（注册阶段之后才有值）
    - model：解析别名后的模型名
    - system_prompt：附加了工具示例的系统提示
    - status / error_message：进程内镜像（权威状态在 RunStatusStore）
    - emitted：本 run 产出的全部消息（顺序即推送顺序）
    """

    run: Run
    token: CancellationToken
    threads: ThreadStore
    broker: Optional[RunStreamBroker] = None
    registry: Optional[ToolRegistry] = None
    model: str = ""
    system_prompt: str = ""
    iteration: int = 0
    status: RunStatus = RunStatus.RUNNING
    error_message: Optional[str] = None
    emitted: List[Message] = field(default_factory=list)

    @property
    def run_id(self) -> str:
        """run id。"""

        return self.run.id

    @property
    def thread_id(self) -> str:
        """线程 id。"""

        return self.run.thread_id

    def persist(self, message: Message) -> bool:
        """持久化一条消息（失败只记录日志，返回 False）。"""

        try:
            self.threads.add(message)
            return True
        except PersistenceFailure as e:
            logger.warning("run %s: failed to persist %s message %s: %s", self.run_id, message.type, message.id, e)
            return False

    def publish(self, message: Message) -> None:
        """推送一条消息到响应流（无 broker 时 no-op；失败只记录日志）。"""

        if self.broker is None:
            return
        try:
            self.broker.publish_message(self.run_id, message)
        except Exception as e:
            logger.warning("run %s: failed to publish message %s: %s", self.run_id, message.id, e)

    def emit_message(self, message: Message, *, persist: bool = True) -> Message:
        """统一消息出口：持久化（可选）→ 推送。"""

        if persist:
            self.persist(message)
        self.publish(message)
        self.emitted.append(message)
        return message

    def finish(self, status: RunStatus, error_message: Optional[str] = None) -> None:
        """记录终态（只记第一次；后续调用忽略）。"""

        if self.status.is_terminal:
            return
        self.status = status
        self.error_message = error_message

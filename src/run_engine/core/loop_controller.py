"""
LoopController：run 循环的迭代计数与预算（internal）。

目标：
- 把“迭代计数、max_iterations”收敛到单一对象，orchestrator 只问问题不记账；取消由 CancellationToken 单独负责。
- 迭代预算是唯一的超时代理（不做 wall-clock deadline）。
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LoopController:
    """
    LoopController（internal）。

    字段：
    - max_iterations：最大迭代次数（每次迭代恰好一次模型调用）
    """

    max_iterations: int

    def __post_init__(self) -> None:
        """初始化内部计数器。"""

        if int(self.max_iterations) < 1:
            raise ValueError("max_iterations must be >= 1")
        self._iteration = 0

    @property
    def iteration(self) -> int:
        """已开始的迭代数（1-based；尚未开始时为 0）。"""

        return self._iteration

    def has_budget(self) -> bool:
        """是否还能开始下一次迭代。"""

        return self._iteration < int(self.max_iterations)

    def next_iteration(self) -> int:
        """推进迭代计数并返回当前迭代序号（1-based）。"""

        self._iteration += 1
        return self._iteration


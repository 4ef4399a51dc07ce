"""
LoopController：tool-call loop 的计数/上限/取消控制（internal）。

目标：
- 将“iteration/step 计数、max_tool_iterations、cancel_checker”等状态收敛到单一对象，
  让 loop 主体只关心状态迁移。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class LoopController:
    """
    LoopController（internal）。

    字段：
    - max_iterations：最多向模型发起的轮次（每轮 = 一次模型请求 + 可选工具执行）
    - cancel_checker：取消检测回调（返回 True 表示应尽快停止；异常时 fail-open）
    """

    max_iterations: int
    cancel_checker: Optional[Callable[[], bool]] = None

    def __post_init__(self) -> None:
        if int(self.max_iterations) < 1:
            raise ValueError("max_iterations must be >= 1")
        self._turn = 0
        self._step = 0

    @property
    def iterations(self) -> int:
        return self._turn

    def has_budget(self) -> bool:
        """是否还能再发起一轮模型请求。"""

        return self._turn < int(self.max_iterations)

    def next_turn_id(self) -> str:
        """推进轮次计数并返回 turn_id（形如 `turn_1`）。"""

        self._turn += 1
        return f"turn_{self._turn}"

    def next_step_id(self) -> str:
        """推进 step 计数并返回 step_id（形如 `step_1`）。"""

        self._step += 1
        return f"step_{self._step}"

    def is_cancelled(self) -> bool:
        """
        检查是否需要取消本次 run。

        约束：
        - 异常时 fail-open：返回 False。
        """

        if self.cancel_checker is None:
            return False
        try:
            return bool(self.cancel_checker())
        except Exception:
            logger.debug("cancel_checker raised; treating as not cancelled", exc_info=True)
            return False

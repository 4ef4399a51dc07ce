"""
SecurityPolicy：自治等级 + 每小时动作预算（滑动窗口）。

约束：
- 策略违规不是异常：调用方把 False 转成失败的 ToolOutcome（`Action blocked: ...`），让模型看到并解释；
- `record_action()` 必须是原子的 check-and-increment：同一 session 内并发的工具调用不会丢计数或重复计数；
- `max_actions_per_hour=0` 表示“永不允许”；不限流使用 `None`（独立的 sentinel），两者不可混淆。
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from agent_control.config.loader import AutonomyConfig, AutonomyLevel

WINDOW_SEC = 3600.0

READ_ONLY_BLOCKED = "Action blocked: autonomy is read-only"
RATE_LIMIT_BLOCKED = "Action blocked: rate limit exceeded"


class SecurityPolicy:
    """
    单个 session（或显式共享时的整个进程）的动作门禁。

    参数：
    - autonomy：自治等级；实例生命周期内不变（重新配置请新建实例）
    - max_actions_per_hour：窗口内预算；None 表示不限
    - clock：单调时钟（测试可注入）
    """

    def __init__(
        self,
        *,
        autonomy: AutonomyLevel = AutonomyLevel.SUPERVISED,
        max_actions_per_hour: Optional[int] = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_actions_per_hour is not None and int(max_actions_per_hour) < 0:
            raise ValueError("max_actions_per_hour must be >= 0 or None")
        self._autonomy = AutonomyLevel(autonomy)
        self._budget = None if max_actions_per_hour is None else int(max_actions_per_hour)
        self._clock = clock
        self._lock = threading.Lock()
        self._timestamps: Deque[float] = deque()

    @classmethod
    def from_config(cls, cfg: AutonomyConfig, *, clock: Callable[[], float] = time.monotonic) -> "SecurityPolicy":
        """从 `autonomy` 配置段构造策略实例。"""

        return cls(autonomy=cfg.level, max_actions_per_hour=cfg.max_actions_per_hour, clock=clock)

    @property
    def autonomy(self) -> AutonomyLevel:
        return self._autonomy

    @property
    def max_actions_per_hour(self) -> Optional[int]:
        return self._budget

    def can_act(self) -> bool:
        """纯谓词：除 read_only 外均为 True（无副作用）。"""

        return self._autonomy != AutonomyLevel.READ_ONLY

    def _evict(self, now: float) -> None:
        cutoff = now - WINDOW_SEC
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def record_action(self) -> bool:
        """
        尝试消耗一个动作预算。

        返回：
        - True：预算充足，且已计数
        - False：窗口内预算耗尽（状态不变）
        """

        if self._budget is None:
            return True
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._timestamps) >= self._budget:
                return False
            self._timestamps.append(now)
            return True

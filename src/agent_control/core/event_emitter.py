"""
EventEmitter：loop 事件的统一出口（hooks fan-out）。

说明：
- loop 需要一个“单点出口”保证事件顺序一致：按注册顺序依次调用 hooks；
- hooks 属于可观测性旁路，异常不得影响主流程（fail-open）。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from agent_control.core.contracts import AgentEvent

logger = logging.getLogger(__name__)

EventHook = Callable[[AgentEvent], None]


@dataclass(frozen=True)
class EventEmitter:
    """
    EventEmitter（internal）。

    字段：
    - hooks：可观测性 hooks（gateway 推帧、metrics、日志转发等；不得修改事件对象）
    """

    hooks: Sequence[EventHook] = ()

    def emit(self, ev: AgentEvent) -> None:
        """依次调用 hooks；单个 hook 失败只记录日志。"""

        for h in self.hooks or ():
            try:
                h(ev)
            except Exception:
                # fail-open：hook 失败只影响可观测性，不应中断 run
                logger.warning("event hook failed (type=%s run_id=%s)", ev.type, ev.run_id, exc_info=True)

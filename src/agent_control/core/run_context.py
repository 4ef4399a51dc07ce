"""
RunContext：单次 loop 调用的共享可变状态容器。

说明：
- `history` 是调用方持有的 session transcript；loop 与工具编排只 append，不重排、不修改已有消息；
- 所有事件必须通过 `emit_event` 输出，保证 hooks 看到的顺序一致。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from agent_control.core.contracts import AgentEvent, ChatMessage
from agent_control.core.event_emitter import EventEmitter
from agent_control.core.utils import now_rfc3339


@dataclass
class RunContext:
    """单次 run 的共享上下文。"""

    run_id: str
    history: List[ChatMessage]
    emitter: EventEmitter

    def emit_event(self, ev: AgentEvent) -> None:
        self.emitter.emit(ev)

    def emit(
        self,
        type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        turn_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> None:
        """便捷出口：按当前时间构造 AgentEvent 并发出。"""

        self.emit_event(
            AgentEvent(
                type=type,
                timestamp=now_rfc3339(),
                run_id=self.run_id,
                turn_id=turn_id,
                step_id=step_id,
                payload=dict(payload or {}),
            )
        )

    def append(self, msg: ChatMessage) -> None:
        self.history.append(msg)

    def emit_cancelled(self) -> None:
        self.emit("run_cancelled", {"message": "cancelled by user"})

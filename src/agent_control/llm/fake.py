"""
Fake LLM backend（离线回归夹具）。

用途：
- 在不依赖真实模型/外网的情况下，回归 tool-call loop 的编排逻辑（tool_calls → 门禁 → 执行 → 回注 → 继续）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Sequence

from agent_control.llm.protocol import ChatRequest, ChatStreamEvent
from agent_control.tools.protocol import ToolCall


@dataclass(frozen=True)
class FakeChatCall:
    """
    一次 chat 调用的预期输出。

    字段：
    - events：按顺序吐出的事件
    - error：可选；吐完 events 后抛出的异常（events 为空时即“无输出失败”）
    """

    events: List[ChatStreamEvent] = field(default_factory=list)
    error: Optional[BaseException] = None

    @classmethod
    def text(cls, text: str) -> "FakeChatCall":
        return cls(events=[ChatStreamEvent(type="text_delta", text=text), ChatStreamEvent(type="completed", finish_reason="stop")])

    @classmethod
    def tools(cls, calls: List[ToolCall], *, text: Optional[str] = None) -> "FakeChatCall":
        events: List[ChatStreamEvent] = []
        if text:
            events.append(ChatStreamEvent(type="text_delta", text=text))
        events.append(ChatStreamEvent(type="tool_calls", tool_calls=list(calls), finish_reason="tool_calls"))
        events.append(ChatStreamEvent(type="completed", finish_reason="tool_calls"))
        return cls(events=events)

    @classmethod
    def failing(cls, error: BaseException) -> "FakeChatCall":
        return cls(events=[], error=error)


class FakeChatBackend:
    """
    用脚本化事件序列模拟 LLM 输出。

    说明：
    - 每次 `stream_chat(...)` 消耗一个 `FakeChatCall`，并记录收到的 request；
    - 事件序列缺少 `completed` 时自动补齐。
    """

    def __init__(self, calls: Sequence[FakeChatCall]) -> None:
        self._calls = list(calls)
        self._idx = 0
        self.requests: List[ChatRequest] = []

    @property
    def remaining(self) -> int:
        return len(self._calls) - self._idx

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[ChatStreamEvent]:
        if self._idx >= len(self._calls):
            raise ValueError("FakeChatBackend calls exhausted")
        call = self._calls[self._idx]
        self._idx += 1
        self.requests.append(request)

        completed_seen = False
        for ev in call.events:
            if ev.type == "completed":
                completed_seen = True
            yield ev
        if call.error is not None:
            raise call.error
        if not completed_seen:
            yield ChatStreamEvent(type="completed", finish_reason="fake_eof")

"""
LLM 协议：ChatRequest / ChatStreamEvent / ChatBackend。

设计目标：
- 用单一参数对象承载 LLM 请求信息，避免散落的关键字参数不断膨胀；
- backend 只负责“一次请求 → 事件流”；重试/退避由 tool-call loop 统一处理。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from agent_control.core.contracts import ChatMessage
from agent_control.tools.protocol import ToolCall, ToolSpec


@dataclass(frozen=True)
class ChatRequest:
    """
    ChatRequest：LLM 请求参数包。

    字段：
    - model：模型名
    - messages：会话 transcript（provider 负责转换为各自 wire 形态）
    - tools：可选 tools 列表（已按排除列表过滤）
    - temperature：可选推理参数
    - run_id/turn_id：可选，用于下游链路追踪
    - extra：provider 特有扩展字段
    """

    model: str
    messages: List[ChatMessage]
    tools: Optional[List[ToolSpec]] = None
    temperature: Optional[float] = None

    run_id: Optional[str] = None
    turn_id: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatStreamEvent:
    """
    provider 输出事件。

    type:
    - `text_delta`：assistant 文本增量
    - `tool_calls`：一个批次的 tool calls
    - `completed`：本次响应已完成
    """

    type: str
    text: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    finish_reason: Optional[str] = None


class ChatBackend(Protocol):
    """LLM backend 抽象：唯一入口 `stream_chat(request)`。"""

    def stream_chat(self, request: ChatRequest) -> AsyncIterator[ChatStreamEvent]:
        """
        以事件流返回一次模型响应。

        约束：
        - 事件流最终应包含 `completed`（缺失时 loop 以 EOF 视为完成）；
        - 异常直接抛出，由 loop 分类并决定是否重试。
        """

        ...

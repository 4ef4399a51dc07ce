"""
核心契约（Core Contracts）：会话消息与事件。

- ChatMessage：会话 transcript 的单条消息（append-only）
- AgentEvent：loop 对外的统一事件流条目（hooks / gateway 消费）
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]

TOOL_RESULTS_MARKER = "[Tool results]"


class ChatMessage(BaseModel):
    """
    会话消息（role + content）。

    约定：
    - `tool` 消息的 content 是 JSON envelope：`{"tool_call_id": ..., "content": ...}`；
    - 带 tool calls 的 assistant 消息，content 是 JSON envelope：
      `{"content": <text|null>, "tool_calls": [{"id", "name", "arguments"}]}`；
    - prompt 模式注入的工具结果为 `user` 消息，以 `[Tool results]` 开头。
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role="assistant", content=content)

    @classmethod
    def tool(cls, *, tool_call_id: str, content: str) -> "ChatMessage":
        """构造 tool 结果消息（content 序列化为 envelope）。"""

        envelope = {"tool_call_id": tool_call_id, "content": content}
        return cls(role="tool", content=json.dumps(envelope, ensure_ascii=False))

    @classmethod
    def assistant_tool_calls(cls, *, text: Optional[str], tool_calls: List[Dict[str, Any]]) -> "ChatMessage":
        """构造“模型请求工具调用”的 assistant 消息。"""

        envelope = {"content": text or None, "tool_calls": list(tool_calls)}
        return cls(role="assistant", content=json.dumps(envelope, ensure_ascii=False))

    def envelope(self) -> Optional[Dict[str, Any]]:
        """
        尝试把 content 解析为 JSON object envelope。

        返回：
        - dict：解析成功且为 object
        - None：不是 envelope（普通文本）
        """

        raw = self.content.strip()
        if not raw.startswith("{"):
            return None
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return obj if isinstance(obj, dict) else None


class AgentEvent(BaseModel):
    """
    AgentEvent：统一事件流条目。

    字段：
    - type：事件类型（run_started/tool_call_requested/approval_decided/...）
    - timestamp：RFC3339 时间字符串
    - run_id：一次 loop 调用的标识
    - turn_id/step_id：可选；对应模型轮次与单次工具调用
    - payload：事件专用字段（必须可 JSON 序列化，且不含 secrets）
    """

    model_config = ConfigDict(extra="forbid")

    type: str
    timestamp: str
    run_id: str
    turn_id: Optional[str] = None
    step_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """序列化为 JSON 字符串。"""

        return self.model_dump_json(exclude_none=True)

"""
Chat Completions Streaming SSE 解析器。

实现边界：
- 支持终止哨兵：`[DONE]` 与 `DONE`
- 支持 `choices[].delta.content` 文本增量
- 支持 `choices[].delta.tool_calls[]` 的 arguments 分片拼接，并在 `finish_reason="tool_calls"` 时 flush
- `finish_reason="length"` 映射为 `ContextLengthExceededError`
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from agent_control.core.errors import ContextLengthExceededError
from agent_control.llm.protocol import ChatStreamEvent
from agent_control.tools.protocol import ToolCall


@dataclass
class _ToolCallState:
    """单个 tool_call 的分片拼接状态。"""

    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


class ChatCompletionsSseParser:
    """
    OpenAI-compatible chat.completions SSE parser（仅处理 `data:` 的 payload）。

    用法：
    - 每收到一条 data 字符串调用 `feed_data(data)`，得到 0..N 个事件
    - 底层流 EOF 时调用 `finish()`，保证最终得到 `completed`
    """

    def __init__(self) -> None:
        self._tool_calls: Dict[int, _ToolCallState] = {}
        self._order: List[int] = []
        self._index_by_id: Dict[str, int] = {}
        self._last_index: Optional[int] = None
        self._completed_sent = False

    def feed_data(self, data: str) -> List[ChatStreamEvent]:
        """处理单条 SSE data；非法 JSON 直接跳过。"""

        data_s = (data or "").strip()
        if not data_s:
            return []

        if data_s in ("[DONE]", "DONE"):
            return self._complete("done")

        try:
            obj = json.loads(data_s)
        except json.JSONDecodeError:
            return []
        choices = obj.get("choices") if isinstance(obj, dict) else None
        if not isinstance(choices, list):
            return []

        out: List[ChatStreamEvent] = []
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            if isinstance(delta, dict):
                out.extend(self._handle_delta(delta))

            finish_reason = choice.get("finish_reason")
            if finish_reason == "tool_calls":
                out.append(ChatStreamEvent(type="tool_calls", tool_calls=self._flush(), finish_reason="tool_calls"))
            elif finish_reason == "stop":
                out.extend(self._complete("stop"))
            elif finish_reason == "length":
                raise ContextLengthExceededError("context_length_exceeded")
        return out

    def finish(self) -> List[ChatStreamEvent]:
        """EOF 时调用（有些 provider 不发 `[DONE]`）。"""

        return self._complete("eof")

    def _complete(self, reason: str) -> List[ChatStreamEvent]:
        if self._completed_sent:
            return []
        events: List[ChatStreamEvent] = []
        if self._tool_calls:
            events.append(ChatStreamEvent(type="tool_calls", tool_calls=self._flush(), finish_reason=reason))
        events.append(ChatStreamEvent(type="completed", finish_reason=reason))
        self._completed_sent = True
        return events

    def _handle_delta(self, delta: Dict[str, Any]) -> List[ChatStreamEvent]:
        out: List[ChatStreamEvent] = []
        content = delta.get("content")
        if isinstance(content, str) and content:
            out.append(ChatStreamEvent(type="text_delta", text=content))

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for tc in tool_calls:
                if isinstance(tc, dict):
                    self._accumulate(tc)
        return out

    def _resolve_index(self, tc: Dict[str, Any]) -> int:
        """
        决定分片累积到哪个 call。

        优先级：`index` > 已见过的 `id` > 新 `id`（分配新 index）> 上一个 call。
        """

        index_val = tc.get("index")
        call_id = tc.get("id")
        if isinstance(index_val, int):
            idx = index_val
        elif isinstance(call_id, str) and call_id in self._index_by_id:
            idx = self._index_by_id[call_id]
        elif isinstance(call_id, str) and call_id:
            idx = max(self._tool_calls.keys(), default=-1) + 1
        elif self._last_index is not None:
            idx = self._last_index
        else:
            idx = 0

        if isinstance(call_id, str) and call_id and call_id not in self._index_by_id:
            self._index_by_id[call_id] = idx
        self._last_index = idx
        return idx

    def _accumulate(self, tc: Dict[str, Any]) -> None:
        idx = self._resolve_index(tc)
        if idx not in self._tool_calls:
            self._tool_calls[idx] = _ToolCallState()
            self._order.append(idx)
        state = self._tool_calls[idx]

        call_id = tc.get("id")
        if isinstance(call_id, str) and call_id and state.id is None:
            state.id = call_id
        fn = tc.get("function")
        if isinstance(fn, dict):
            name = fn.get("name")
            if isinstance(name, str) and name and state.name is None:
                state.name = name
            part = fn.get("arguments")
            if isinstance(part, str) and part:
                state.arguments += part

    def _flush(self) -> List[ToolCall]:
        """
        输出累积的 tool_calls 并清空状态。

        约束：
        - 缺少 name 的 call 跳过；
        - 参数解析失败时 args 为空、`raw_arguments` 原样保留（派发层 fail-closed，不执行）。
        """

        calls: List[ToolCall] = []
        for idx in self._order:
            st = self._tool_calls.get(idx)
            if st is None or not st.name:
                continue
            raw = st.arguments or ""
            try:
                parsed = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError:
                parsed = {}
            calls.append(
                ToolCall(
                    call_id=st.id or f"tool-call-{idx}",
                    name=st.name,
                    args=parsed if isinstance(parsed, dict) else {},
                    raw_arguments=raw,
                )
            )
        self._tool_calls.clear()
        self._order.clear()
        self._index_by_id.clear()
        self._last_index = None
        return calls

"""
OpenAI-compatible `/chat/completions` backend（streaming SSE）。

说明：
- 本 backend 只负责一次请求与 SSE 解析；重试/backoff 由 tool-call loop 统一决定（仅在未输出任何事件时重试）；
- history 中的 assistant/tool JSON envelope 在此转换为 OpenAI wire messages。
"""

from __future__ import annotations

import os
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from agent_control.config.loader import LlmConfig
from agent_control.core.contracts import TOOL_RESULTS_MARKER, ChatMessage
from agent_control.llm.chat_sse import ChatCompletionsSseParser
from agent_control.llm.protocol import ChatRequest, ChatStreamEvent
from agent_control.tools.protocol import ToolSpec


def tool_spec_to_openai_tool(spec: ToolSpec) -> Dict[str, Any]:
    """ToolSpec → OpenAI `tools[]` 条目。"""

    return {
        "type": "function",
        "function": {"name": spec.name, "description": spec.description, "parameters": dict(spec.parameters)},
    }


def message_to_wire(msg: ChatMessage) -> Dict[str, Any]:
    """
    ChatMessage → OpenAI wire message。

    规则：
    - assistant envelope（含 `tool_calls`）→ `{"role":"assistant","content":...,"tool_calls":[...]}`
    - tool envelope → `{"role":"tool","tool_call_id":...,"content":...}`
    - 缺少 envelope 的 tool 消息无法关联 call id，降级为 `[Tool results]` user 消息
    """

    if msg.role == "assistant":
        env = msg.envelope()
        if env is not None and isinstance(env.get("tool_calls"), list):
            calls = []
            for c in env["tool_calls"]:
                if not isinstance(c, dict):
                    continue
                calls.append(
                    {
                        "id": str(c.get("id") or ""),
                        "type": "function",
                        "function": {"name": str(c.get("name") or ""), "arguments": str(c.get("arguments") or "{}")},
                    }
                )
            return {"role": "assistant", "content": env.get("content"), "tool_calls": calls}
        return {"role": "assistant", "content": msg.content}

    if msg.role == "tool":
        env = msg.envelope()
        if env is not None and isinstance(env.get("tool_call_id"), str):
            return {"role": "tool", "tool_call_id": env["tool_call_id"], "content": str(env.get("content") or "")}
        return {"role": "user", "content": f"{TOOL_RESULTS_MARKER}\n{msg.content}"}

    return {"role": msg.role, "content": msg.content}


def history_to_wire(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    return [message_to_wire(m) for m in messages]


class OpenAIChatCompletionsBackend:
    """OpenAI-compatible chat.completions 实现（网络层）。"""

    def __init__(
        self,
        cfg: LlmConfig,
        *,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        参数：
        - cfg：LLM 配置（base_url、api_key_env、timeout 等）
        - api_key：可选的 API key 覆盖（仅内存；优先于环境变量）
        - transport：可选 httpx transport（测试注入 `httpx.MockTransport`）
        """

        self._cfg = cfg
        self._api_key_override = api_key
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return self._cfg.provider

    @property
    def model(self) -> str:
        return self._cfg.model

    def _endpoint(self) -> str:
        return f"{self._cfg.base_url.rstrip('/')}/chat/completions"

    def _auth_header(self) -> Dict[str, str]:
        """
        构造 Authorization header。

        异常：
        - ValueError：缺少 API key（上层分类为 config_error）
        """

        key = self._api_key_override or os.environ.get(self._cfg.api_key_env, "")
        if not key:
            raise ValueError(f"missing API key: set environment variable {self._cfg.api_key_env}")
        return {"Authorization": f"Bearer {key}"}

    def _payload(self, request: ChatRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model or self._cfg.model,
            "messages": history_to_wire(request.messages),
            "stream": True,
        }
        if request.tools:
            payload["tools"] = [tool_spec_to_openai_tool(s) for s in request.tools]
        temperature = request.temperature if request.temperature is not None else self._cfg.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[ChatStreamEvent]:
        """发起 streaming 请求并解析 SSE；非 2xx 先读 body 再抛 `HTTPStatusError`（保留错误 JSON）。"""

        headers = {"Content-Type": "application/json"}
        headers.update(self._auth_header())
        payload = self._payload(request)

        async with httpx.AsyncClient(timeout=httpx.Timeout(self._cfg.timeout_sec), transport=self._transport) as client:
            async with client.stream("POST", self._endpoint(), json=payload, headers=headers) as resp:
                if resp.status_code >= 400:
                    try:
                        await resp.aread()
                    except httpx.HTTPError:
                        pass
                resp.raise_for_status()
                parser = ChatCompletionsSseParser()
                async for line in resp.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    for ev in parser.feed_data(line[len("data:"):].strip()):
                        yield ev
                for ev in parser.finish():
                    yield ev

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

from agent_control.config.loader import LlmConfig
from agent_control.core.contracts import ChatMessage
from agent_control.core.run_errors import RunErrorKind, classify_run_exception
from agent_control.llm.openai_chat import OpenAIChatCompletionsBackend, history_to_wire, message_to_wire
from agent_control.llm.protocol import ChatRequest, ChatStreamEvent
from agent_control.tools.protocol import ToolSpec


def _sse(*chunks: Any) -> bytes:
    lines = []
    for c in chunks:
        data = c if isinstance(c, str) else json.dumps(c)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def _collect(backend: OpenAIChatCompletionsBackend, request: ChatRequest) -> List[ChatStreamEvent]:
    async def _run() -> List[ChatStreamEvent]:
        return [ev async for ev in backend.stream_chat(request)]

    return asyncio.run(_run())


def _cfg() -> LlmConfig:
    return LlmConfig(base_url="https://llm.example.com/v1/", model="m-1", temperature=0.2)


def test_stream_chat_posts_payload_and_parses_sse() -> None:
    captured: Dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        body = _sse(
            {"choices": [{"delta": {"content": "Hi"}}]},
            {"choices": [{"delta": {"content": "!"}, "finish_reason": "stop"}]},
            "[DONE]",
        )
        return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

    backend = OpenAIChatCompletionsBackend(_cfg(), api_key="k-test", transport=httpx.MockTransport(handler))
    spec = ToolSpec(name="echo", description="echo", parameters={"type": "object", "properties": {}})
    request = ChatRequest(model="m-1", messages=[ChatMessage.system("s"), ChatMessage.user("hi")], tools=[spec])
    events = _collect(backend, request)

    assert [e.text for e in events if e.type == "text_delta"] == ["Hi", "!"]
    assert events[-1].type == "completed"
    assert captured["url"] == "https://llm.example.com/v1/chat/completions"
    assert captured["auth"] == "Bearer k-test"
    body = captured["body"]
    assert body["stream"] is True
    assert body["model"] == "m-1"
    assert body["temperature"] == 0.2
    assert body["tools"][0]["function"]["name"] == "echo"
    assert body["messages"] == [{"role": "system", "content": "s"}, {"role": "user", "content": "hi"}]


def test_error_body_is_read_before_raising() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"error": {"message": "slow down"}},
            headers={"Retry-After": "3"},
        )

    backend = OpenAIChatCompletionsBackend(_cfg(), api_key="k", transport=httpx.MockTransport(handler))
    request = ChatRequest(model="m-1", messages=[ChatMessage.user("hi")])
    with pytest.raises(httpx.HTTPStatusError) as ei:
        _collect(backend, request)

    err = classify_run_exception(ei.value)
    assert err.error_kind == RunErrorKind.RATE_LIMITED
    assert err.retryable is True
    assert err.retry_after_ms == 3000
    assert err.message == "HTTP 429: slow down"


def test_missing_api_key_is_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AGENT_CONTROL_TEST_KEY", raising=False)
    cfg = LlmConfig(api_key_env="AGENT_CONTROL_TEST_KEY")
    backend = OpenAIChatCompletionsBackend(cfg, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(ValueError) as ei:
        _collect(backend, ChatRequest(model="m", messages=[ChatMessage.user("hi")]))
    assert "AGENT_CONTROL_TEST_KEY" in str(ei.value)
    assert classify_run_exception(ei.value).error_kind == RunErrorKind.CONFIG_ERROR


def test_api_key_read_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CONTROL_TEST_KEY", "from-env")
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Authorization", ""))
        return httpx.Response(200, content=_sse("[DONE]"))

    cfg = LlmConfig(api_key_env="AGENT_CONTROL_TEST_KEY")
    backend = OpenAIChatCompletionsBackend(cfg, transport=httpx.MockTransport(handler))
    _collect(backend, ChatRequest(model="m", messages=[ChatMessage.user("hi")]))
    assert seen == ["Bearer from-env"]


def test_history_envelopes_converted_to_wire() -> None:
    history = [
        ChatMessage.user("open a.com"),
        ChatMessage.assistant_tool_calls(
            text=None, tool_calls=[{"id": "c1", "name": "browser_open", "arguments": '{"url":"https://a.com"}'}]
        ),
        ChatMessage.tool(tool_call_id="c1", content="Opened"),
        ChatMessage.assistant("Done"),
    ]
    wire = history_to_wire(history)
    assert wire[1] == {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"id": "c1", "type": "function", "function": {"name": "browser_open", "arguments": '{"url":"https://a.com"}'}}
        ],
    }
    assert wire[2] == {"role": "tool", "tool_call_id": "c1", "content": "Opened"}
    assert wire[3] == {"role": "assistant", "content": "Done"}


def test_tool_message_without_envelope_becomes_prompt_results() -> None:
    wire = message_to_wire(ChatMessage(role="tool", content="raw output"))
    assert wire == {"role": "user", "content": "[Tool results]\nraw output"}

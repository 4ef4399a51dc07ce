from __future__ import annotations

from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from agent_control import __version__
from agent_control.config.loader import load_config_dicts
from agent_control.core.errors import LlmError
from agent_control.gateway.app import create_app
from agent_control.gateway.auth import UNAUTHORIZED_HINT
from agent_control.gateway.broadcast import EventBroadcaster
from agent_control.llm.fake import FakeChatBackend, FakeChatCall
from agent_control.sanitize.response import MALFORMED_TOOL_OUTPUT_NOTICE
from agent_control.tools.protocol import FunctionTool, ToolCall, ToolSpec


class _RecordingBroadcaster(EventBroadcaster):
    def __init__(self) -> None:
        super().__init__()
        self.events: List[Dict[str, Any]] = []

    def publish(self, event: Dict[str, Any]) -> int:
        self.events.append(dict(event))
        return super().publish(event)


def _config(**sections: Any):
    overlay: Dict[str, Any] = {"gateway": {"require_pairing": False}}
    for key, value in sections.items():
        overlay.setdefault(key, {}).update(value)
    return load_config_dicts([overlay])


def _note_tool(written: List[str]) -> FunctionTool:
    def _write(args):
        written.append(str(args.get("text")))
        return "note saved"

    return FunctionTool(ToolSpec(name="write_note", description="save a note", requires_approval=True), _write)


def _receive_until(ws, frame_type: str, limit: int = 20) -> List[Dict[str, Any]]:
    frames: List[Dict[str, Any]] = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] == frame_type:
            return frames
    raise AssertionError(f"no {frame_type} frame in {frames}")


def test_health() -> None:
    client = TestClient(create_app(_config(), backend=FakeChatBackend([])))
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "version": __version__, "require_pairing": False}


def test_hello_round_trip_emits_single_done() -> None:
    backend = FakeChatBackend([FakeChatCall.text("Hi! How can I help?")])
    broadcaster = _RecordingBroadcaster()
    app = create_app(_config(llm={"model": "m-test"}), backend=backend, broadcaster=broadcaster)

    with TestClient(app).websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "Hello"})
        frames = _receive_until(ws, "agent_end")

    assert [f["type"] for f in frames] == ["agent_start", "done", "agent_end"]
    assert frames[0] == {"type": "agent_start", "provider": "openai", "model": "m-test"}
    assert frames[1] == {"type": "done", "full_response": "Hi! How can I help?"}
    assert frames[2]["status"] == "completed"

    published = [e["type"] for e in broadcaster.events]
    assert published[0] == "agent_start"
    assert published[-1] == "agent_end"
    assert "llm_response_delta" not in published
    assert all(e.get("session_id") for e in broadcaster.events)


def test_done_frame_is_sanitized() -> None:
    raw = 'Opening now.\n<tool_call>{"name":"write_note"}</tool_call>'
    backend = FakeChatBackend([FakeChatCall.text(raw)])
    app = create_app(_config(), backend=backend, tools=[_note_tool([])])

    with TestClient(app).websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "go"})
        frames = _receive_until(ws, "done")

    assert frames[-1]["full_response"] == "Opening now."


def test_invalid_json_keeps_connection_open() -> None:
    backend = FakeChatBackend([FakeChatCall.text("still here")])
    with TestClient(create_app(_config(), backend=backend)).websocket_connect("/ws/chat") as ws:
        ws.send_text("{not json")
        assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}
        ws.send_json({"type": "ping"})
        ws.send_json({"type": "message", "content": "hi"})
        frames = _receive_until(ws, "done")
    assert frames[-1]["full_response"] == "still here"


def test_read_only_mutating_tool_is_blocked_and_turn_completes() -> None:
    written: List[str] = []
    backend = FakeChatBackend(
        [
            FakeChatCall.tools([ToolCall(call_id="c1", name="write_note", args={"text": "hello"})]),
            FakeChatCall.text("I can't save notes in read-only mode."),
        ]
    )
    app = create_app(_config(autonomy={"level": "read_only"}), backend=backend, tools=[_note_tool(written)])

    with TestClient(app).websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "save a note"})
        frames = _receive_until(ws, "agent_end")

    types = [f["type"] for f in frames]
    assert types == ["agent_start", "tool_call", "tool_result", "done", "agent_end"]
    assert frames[1] == {"type": "tool_call", "name": "write_note", "args": {"text": "hello"}}
    assert "read-only" in frames[2]["output"]
    assert "error" not in types
    assert written == []


def test_supervised_approval_round_trip() -> None:
    written: List[str] = []
    backend = FakeChatBackend(
        [
            FakeChatCall.tools([ToolCall(call_id="c1", name="write_note", args={"text": "hello"})]),
            FakeChatCall.text("Saved."),
        ]
    )
    app = create_app(_config(autonomy={"level": "supervised"}), backend=backend, tools=[_note_tool(written)])

    with TestClient(app).websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "save a note"})
        frames = _receive_until(ws, "approval_request")
        request = frames[-1]
        assert request["tool"] == "write_note"
        assert request["args"] == {"text": "hello"}
        ws.send_json({"type": "approval", "approval_key": request["approval_key"], "decision": "approved"})
        rest = _receive_until(ws, "agent_end")

    tool_result = [f for f in rest if f["type"] == "tool_result"][0]
    assert tool_result["output"] == "note saved"
    assert [f for f in rest if f["type"] == "done"][0]["full_response"] == "Saved."
    assert written == ["hello"]


def test_invalid_approval_decision_reports_error() -> None:
    backend = FakeChatBackend([])
    with TestClient(create_app(_config(), backend=backend)).websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "approval", "approval_key": "k", "decision": "perhaps"})
        assert ws.receive_json() == {"type": "error", "message": "Invalid approval decision"}


def test_stream_deltas_emit_chunks() -> None:
    backend = FakeChatBackend([FakeChatCall.text("chunky")])
    app = create_app(_config(gateway={"stream_deltas": True}), backend=backend)
    with TestClient(app).websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "hi"})
        frames = _receive_until(ws, "done")
    assert {"type": "chunk", "content": "chunky"} in frames


def test_provider_failure_emits_sanitized_error_and_session_survives() -> None:
    backend = FakeChatBackend(
        [
            FakeChatCall.failing(LlmError("upstream rejected key sk-abcdefghijklmnop")),
            FakeChatCall.text("second turn works"),
        ]
    )
    broadcaster = _RecordingBroadcaster()
    app = create_app(_config(), backend=backend, broadcaster=broadcaster)

    with TestClient(app).websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "hi"})
        frames = _receive_until(ws, "error")
        ws.send_json({"type": "message", "content": "again"})
        second = _receive_until(ws, "done")

    assert "sk-abcdefghijklmnop" not in frames[-1]["message"]
    assert "[REDACTED]" in frames[-1]["message"]
    assert "agent_end" not in [f["type"] for f in frames]
    assert second[-1]["full_response"] == "second turn works"
    errors = [e for e in broadcaster.events if e["type"] == "error"]
    assert errors and errors[0]["component"] == "ws_chat"


def test_unauthenticated_websocket_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AC_WS_TOKENS", "secret")
    cfg = load_config_dicts([{"gateway": {"require_pairing": True, "paired_tokens_env": "AC_WS_TOKENS"}}])
    client = TestClient(create_app(cfg, backend=FakeChatBackend([])))
    with pytest.raises(Exception):
        with client.websocket_connect("/ws/chat"):
            pass


def test_authenticated_websocket_via_header_and_subprotocol(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AC_WS_TOKENS", "secret,other")
    cfg = load_config_dicts([{"gateway": {"require_pairing": True, "paired_tokens_env": "AC_WS_TOKENS"}}])
    backend = FakeChatBackend([FakeChatCall.text("one"), FakeChatCall.text("two")])
    client = TestClient(create_app(cfg, backend=backend))

    with client.websocket_connect("/ws/chat", headers={"Authorization": "Bearer secret"}) as ws:
        ws.send_json({"type": "message", "content": "hi"})
        assert _receive_until(ws, "done")[-1]["full_response"] == "one"

    with client.websocket_connect("/ws/chat", subprotocols=["agent-control.v1", "bearer.other"]) as ws:
        assert ws.accepted_subprotocol == "agent-control.v1"
        ws.send_json({"type": "message", "content": "hi"})
        assert _receive_until(ws, "done")[-1]["full_response"] == "two"


def test_events_endpoint_requires_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AC_SSE_TOKENS", "secret")
    cfg = load_config_dicts([{"gateway": {"require_pairing": True, "paired_tokens_env": "AC_SSE_TOKENS"}}])
    client = TestClient(create_app(cfg, backend=FakeChatBackend([])))
    resp = client.get("/api/events")
    assert resp.status_code == 401
    assert resp.text == UNAUTHORIZED_HINT


def test_pending_approvals_endpoint_lists_open_request() -> None:
    backend = FakeChatBackend(
        [
            FakeChatCall.tools([ToolCall(call_id="c1", name="write_note", args={"text": "hello"})]),
            FakeChatCall.text("Saved."),
        ]
    )
    broadcaster = _RecordingBroadcaster()
    app = create_app(
        _config(autonomy={"level": "supervised"}), backend=backend, tools=[_note_tool([])], broadcaster=broadcaster
    )
    client = TestClient(app)

    with client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "save a note"})
        request = _receive_until(ws, "approval_request")[-1]
        session_id = broadcaster.events[0]["session_id"]

        pending = client.get(f"/api/sessions/{session_id}/approvals/pending").json()
        assert pending["session_id"] == session_id
        assert [p["approval_key"] for p in pending["approvals"]] == [request["approval_key"]]
        assert pending["approvals"][0]["tool"] == "write_note"

        ws.send_json({"type": "approval", "approval_key": request["approval_key"], "decision": "denied"})
        _receive_until(ws, "agent_end")

    assert client.get(f"/api/sessions/{session_id}/approvals/pending").json()["approvals"] == []


def test_pending_approvals_endpoint_requires_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AC_PENDING_TOKENS", "secret")
    cfg = load_config_dicts([{"gateway": {"require_pairing": True, "paired_tokens_env": "AC_PENDING_TOKENS"}}])
    client = TestClient(create_app(cfg, backend=FakeChatBackend([])))
    assert client.get("/api/sessions/ws_x/approvals/pending").status_code == 401
    resp = client.get("/api/sessions/ws_x/approvals/pending", headers={"Authorization": "Bearer secret"})
    assert resp.json() == {"session_id": "ws_x", "approvals": []}


def test_pure_tool_syntax_reply_becomes_malformed_notice() -> None:
    backend = FakeChatBackend([FakeChatCall.text('<tool_call>{"name":"write_note","arguments":{}}</tool_call>')])
    app = create_app(_config(), backend=backend, tools=[_note_tool([])])

    with TestClient(app).websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "message", "content": "go"})
        frames = _receive_until(ws, "done")

    assert frames[-1] == {"type": "done", "full_response": MALFORMED_TOOL_OUTPUT_NOTICE}

"""
Session Gateway（FastAPI）。

路由：
- `GET /health`
- `WS /ws/chat`：一行一个 JSON 帧的会话协议（见 `ChatSession`）
- `GET /api/events`：广播事件的 SSE 流
- `GET /api/sessions/{session_id}/approvals/pending`：某个 session 当前挂起的审批

鉴权：
- 需要配对时，未携带有效 bearer token 的请求在 upgrade 之前就被拒绝（401 + 提示），不创建任何 session 状态。
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Iterable, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse, StreamingResponse

from agent_control import __version__
from agent_control.config.loader import AgentControlConfig
from agent_control.gateway.approvals import ApprovalHub
from agent_control.gateway.auth import UNAUTHORIZED_HINT, PairingGuard, extract_bearer_token, offered_subprotocols
from agent_control.gateway.broadcast import EventBroadcaster
from agent_control.gateway.session import ChatSession
from agent_control.gateway.sse import stream_broadcast_as_sse
from agent_control.llm.openai_chat import OpenAIChatCompletionsBackend
from agent_control.llm.protocol import ChatBackend
from agent_control.security.approval import ApprovalRequest
from agent_control.security.policy import SecurityPolicy
from agent_control.tools.builtin.browser_open import BrowserOpenTool
from agent_control.tools.protocol import Tool
from agent_control.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

WS_SUBPROTOCOL = "agent-control.v1"


def build_registry(config: AgentControlConfig, tools: Optional[Iterable[Tool]] = None) -> ToolRegistry:
    """组装工具注册表（内置工具按配置启用 + 调用方提供的工具），并冻结。"""

    registry = ToolRegistry()
    if config.browser.enabled:
        registry.register(BrowserOpenTool(config.browser.allowed_domains))
    for tool in tools or ():
        registry.register(tool)
    return registry.freeze()


async def _writer(websocket: WebSocket, outbox: "asyncio.Queue[Optional[Dict[str, Any]]]") -> None:
    """出站帧写协程：按入队顺序发送；连接断开后丢弃剩余帧。"""

    while True:
        frame = await outbox.get()
        if frame is None:
            return
        try:
            await websocket.send_text(json.dumps(frame, ensure_ascii=False))
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("websocket closed while sending frame type=%s", frame.get("type"))
            return


async def _reader(
    websocket: WebSocket,
    *,
    session: ChatSession,
    hub: ApprovalHub,
    inbox: "asyncio.Queue[Optional[str]]",
    emit_frame,
) -> None:
    """
    入站帧读协程。

    处理：
    - 非法 JSON：回 `Invalid JSON`，连接继续
    - `message`：非空 content 入队（按顺序逐轮执行）
    - `approval`：resolve 对应的 pending approval
    - 其它 type：忽略
    """

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                emit_frame({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(parsed, dict):
                continue

            msg_type = parsed.get("type")
            if msg_type == "message":
                content = parsed.get("content")
                if isinstance(content, str) and content:
                    await inbox.put(content)
            elif msg_type == "approval":
                try:
                    found = hub.decide(
                        session_id=session.session_id,
                        approval_key=str(parsed.get("approval_key") or ""),
                        decision=str(parsed.get("decision") or ""),
                    )
                except ValueError:
                    emit_frame({"type": "error", "message": "Invalid approval decision"})
                    continue
                if not found:
                    logger.debug("approval frame for unknown key (session=%s)", session.session_id)
    except WebSocketDisconnect:
        pass
    finally:
        session.close()
        hub.deny_session(session.session_id)
        await inbox.put(None)


def create_app(
    config: Optional[AgentControlConfig] = None,
    *,
    backend: Optional[ChatBackend] = None,
    tools: Optional[Iterable[Tool]] = None,
    broadcaster: Optional[EventBroadcaster] = None,
) -> FastAPI:
    """
    创建 gateway 应用。

    参数：
    - config：配置快照（默认值即默认配置）
    - backend：可选 provider（默认按 `llm` 配置构造 OpenAI-compatible backend）
    - tools：额外注册的工具
    - broadcaster：可选；默认新建
    """

    cfg = config or AgentControlConfig()
    chat_backend: ChatBackend = backend or OpenAIChatCompletionsBackend(cfg.llm)
    registry = build_registry(cfg, tools)
    guard = PairingGuard(require_pairing=cfg.gateway.require_pairing, tokens=cfg.gateway.paired_tokens())
    events = broadcaster or EventBroadcaster()
    hub = ApprovalHub()
    shared_policy = SecurityPolicy.from_config(cfg.autonomy) if cfg.autonomy.shared_rate_limit else None

    app = FastAPI(title="agent-control gateway", version=__version__)
    app.state.config = cfg
    app.state.broadcaster = events
    app.state.approval_hub = hub
    app.state.registry = registry

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True, "version": __version__, "require_pairing": guard.require_pairing}

    @app.get("/api/events")
    async def stream_events(request: Request):
        if not guard.is_authenticated(extract_bearer_token(request.headers)):
            return PlainTextResponse(UNAUTHORIZED_HINT, status_code=401)
        body = stream_broadcast_as_sse(request=request, subscription=events.subscribe())
        return StreamingResponse(body, media_type="text/event-stream")

    @app.get("/api/sessions/{session_id}/approvals/pending")
    async def list_pending_approvals(session_id: str, request: Request):
        if not guard.is_authenticated(extract_bearer_token(request.headers)):
            return PlainTextResponse(UNAUTHORIZED_HINT, status_code=401)
        return {"session_id": str(session_id), "approvals": hub.list_pending(session_id=session_id)}

    @app.websocket("/ws/chat")
    async def ws_chat(websocket: WebSocket) -> None:
        if not guard.is_authenticated(extract_bearer_token(websocket.headers)):
            try:
                await websocket.send_denial_response(PlainTextResponse(UNAUTHORIZED_HINT, status_code=401))
            except RuntimeError:
                # server 不支持 websocket.http.response 扩展
                await websocket.close(code=1008, reason="Unauthorized")
            return

        subprotocol = WS_SUBPROTOCOL if WS_SUBPROTOCOL in offered_subprotocols(websocket.headers) else None
        await websocket.accept(subprotocol=subprotocol)

        session_id = f"ws_{uuid.uuid4().hex[:12]}"
        outbox: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        inbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

        async def _notify(request: ApprovalRequest) -> None:
            session.notify_approval(request)

        session = ChatSession(
            session_id=session_id,
            config=cfg,
            backend=chat_backend,
            registry=registry,
            emit_frame=outbox.put_nowait,
            broadcaster=events,
            approval_provider=hub.provider_for_session(session_id=session_id, notify=_notify),
            policy=shared_policy,
        )
        logger.info("ws session %s connected", session_id)

        writer = asyncio.create_task(_writer(websocket, outbox))
        reader = asyncio.create_task(
            _reader(websocket, session=session, hub=hub, inbox=inbox, emit_frame=outbox.put_nowait)
        )
        try:
            while True:
                content = await inbox.get()
                if content is None:
                    break
                await session.run_turn(content)
        finally:
            session.close()
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            outbox.put_nowait(None)
            await asyncio.gather(writer, return_exceptions=True)
            logger.info("ws session %s closed", session_id)

    return app

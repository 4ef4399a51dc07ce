"""
ChatSession：单个 WebSocket 连接的会话状态与一轮对话的执行。

说明：
- 每个连接独占：history（以 system prompt 起始）、ApprovalManager、SecurityPolicy（除非配置为进程级共享）；
- 所有出站帧通过 `emit_frame` 进入同一个出站队列，保证帧顺序与 loop 事件顺序一致；
- 客户端可见的错误文本一律经过 `sanitize_api_error`。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from agent_control.config.loader import AgentControlConfig
from agent_control.core.contracts import AgentEvent, ChatMessage
from agent_control.core.run_errors import sanitize_api_error
from agent_control.core.tool_loop import LoopResult, run_tool_call_loop
from agent_control.gateway.broadcast import EventBroadcaster
from agent_control.llm.protocol import ChatBackend
from agent_control.sanitize.response import finalize_response
from agent_control.security.approval import ApprovalManager, ApprovalProvider, ApprovalRequest
from agent_control.security.policy import SecurityPolicy
from agent_control.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

FrameSink = Callable[[Dict[str, Any]], None]

_BROADCAST_SKIP = {"llm_response_delta"}


def approval_request_frame(request: ApprovalRequest) -> Dict[str, Any]:
    return {
        "type": "approval_request",
        "approval_key": request.approval_key,
        "tool": request.tool,
        "summary": request.summary,
        "args": request.details,
    }


class ChatSession:
    """
    单连接会话。

    参数：
    - session_id：连接标识（审批 hub 与广播事件使用）
    - config：session 建立时的配置快照
    - backend：模型 provider
    - registry：工具注册表（loop 期间只读）
    - emit_frame：出站帧 sink（非阻塞）
    - broadcaster：可选；best-effort 事件广播
    - approval_provider：可选；人工审批 provider（缺失时需要审批的调用一律拒绝）
    - policy：可选；传入则共享该实例（进程级限流），否则按配置新建
    """

    def __init__(
        self,
        *,
        session_id: str,
        config: AgentControlConfig,
        backend: ChatBackend,
        registry: ToolRegistry,
        emit_frame: FrameSink,
        broadcaster: Optional[EventBroadcaster] = None,
        approval_provider: Optional[ApprovalProvider] = None,
        policy: Optional[SecurityPolicy] = None,
    ) -> None:
        self.session_id = session_id
        self._config = config
        self._backend = backend
        self._registry = registry
        self._emit_frame = emit_frame
        self._broadcaster = broadcaster
        self.policy = policy or SecurityPolicy.from_config(config.autonomy)
        self.approvals = ApprovalManager.from_config(config.autonomy, provider=approval_provider)
        self.history: List[ChatMessage] = [ChatMessage.system(config.gateway.system_prompt)]
        self._closed = False

    @property
    def provider_label(self) -> str:
        return self._config.llm.provider or "unknown"

    @property
    def model(self) -> str:
        return self._config.llm.model

    def close(self) -> None:
        """标记连接已关闭；正在运行的 loop 会在下一个检查点取消。"""

        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _publish(self, event: Dict[str, Any]) -> None:
        if self._broadcaster is None:
            return
        self._broadcaster.publish({**event, "session_id": self.session_id})

    def _on_event(self, ev: AgentEvent) -> None:
        """loop 事件 → 客户端帧（tool_call/tool_result）+ 广播。"""

        if ev.type == "tool_call_requested":
            self._emit_frame({"type": "tool_call", "name": ev.payload.get("name"), "args": ev.payload.get("arguments") or {}})
        elif ev.type == "tool_call_finished":
            self._emit_frame({"type": "tool_result", "name": ev.payload.get("name"), "output": ev.payload.get("output") or ""})
        if ev.type not in _BROADCAST_SKIP:
            self._publish(ev.model_dump(exclude_none=True))

    def _on_delta(self, text: str) -> None:
        self._emit_frame({"type": "chunk", "content": text})

    def notify_approval(self, request: ApprovalRequest) -> None:
        self._emit_frame(approval_request_frame(request))

    def _tool_names(self) -> List[str]:
        return self._registry.without(self._config.loop.excluded_tools).names()

    async def run_turn(self, content: str) -> LoopResult:
        """
        执行一轮对话（user 消息 → loop → finalize → 帧输出）。

        返回：
        - LoopResult（便于测试与调用方审计）
        """

        start = {"type": "agent_start", "provider": self.provider_label, "model": self.model}
        self._emit_frame(start)
        self._publish(start)

        result = await run_tool_call_loop(
            history=self.history,
            user_message=content,
            backend=self._backend,
            registry=self._registry,
            policy=self.policy,
            approvals=self.approvals,
            model=self.model,
            max_iterations=self._config.loop.max_tool_iterations,
            excluded_tools=self._config.loop.excluded_tools,
            retry=self._config.loop.retry,
            temperature=self._config.llm.temperature,
            cancel_checker=lambda: self._closed,
            on_delta=self._on_delta if self._config.gateway.stream_deltas else None,
            hooks=[self._on_event],
        )

        if result.ok:
            safe = finalize_response(result.final_text, self.history, self._tool_names())
            self.history.append(ChatMessage.assistant(safe))
            self._emit_frame({"type": "done", "full_response": safe})
            end = {"type": "agent_end", "provider": self.provider_label, "model": self.model, "status": result.status}
            self._emit_frame(end)
            self._publish(end)
            return result

        if result.status == "failed":
            message = sanitize_api_error(result.error.message if result.error else "")
            self._emit_frame({"type": "error", "message": message})
            self._publish({"type": "error", "component": "ws_chat", "message": message})
            return result

        logger.info("session %s turn cancelled", self.session_id)
        return result

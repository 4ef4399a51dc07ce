"""
ApprovalHub：把 ApprovalProvider 协议适配到 WebSocket 连接（进程内）。

流程：
- loop 需要审批时，session 级 provider 在 hub 中登记 pending（asyncio Future），并通过 notify 推送
  `approval_request` 帧给客户端；
- 客户端回传 `{"type":"approval", ...}` 帧，读协程调用 `hub.decide(...)` resolve Future；
- 超时由 ApprovalManager 统一执行；超时或连接关闭时 pending 被清理。

约束：
- key 由 `(session_id, approval_key)` 唯一定位，避免不同连接冲突；
- 进程重启会丢失 pending approvals。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from agent_control.security.approval import ApprovalProvider, ApprovalRequest, ApprovalResponse

logger = logging.getLogger(__name__)

ApprovalNotify = Callable[[ApprovalRequest], Awaitable[None]]


@dataclass(frozen=True)
class PendingApproval:
    """一次等待客户端回答的审批请求。"""

    session_id: str
    request: ApprovalRequest
    created_at_monotonic: float
    loop: asyncio.AbstractEventLoop
    future: "asyncio.Future[ApprovalResponse]"


def parse_decision(value: str) -> ApprovalResponse:
    """解析客户端 decision 字符串；非法值抛 ValueError。"""

    v = str(value or "").strip().lower()
    if v == "approved":
        return ApprovalResponse.APPROVED
    if v in ("approved_for_session", "approved-session"):
        return ApprovalResponse.APPROVED_FOR_SESSION
    if v == "denied":
        return ApprovalResponse.DENIED
    raise ValueError("invalid decision")


class ApprovalHub:
    """approvals 中枢（进程内）。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[Tuple[str, str], PendingApproval] = {}

    def provider_for_session(self, *, session_id: str, notify: ApprovalNotify) -> ApprovalProvider:
        """为某个连接构造 session-scoped ApprovalProvider。"""

        return _SessionApprovalProvider(hub=self, session_id=session_id, notify=notify)

    def list_pending(self, *, session_id: str) -> List[Dict[str, object]]:
        with self._lock:
            items = [p for (sid, _k), p in self._pending.items() if sid == session_id]
        items.sort(key=lambda p: p.created_at_monotonic)
        return [
            {
                "approval_key": p.request.approval_key,
                "tool": p.request.tool,
                "summary": p.request.summary,
                "age_ms": int((time.monotonic() - p.created_at_monotonic) * 1000),
            }
            for p in items
        ]

    def _register(self, *, session_id: str, request: ApprovalRequest) -> PendingApproval:
        """登记 pending（同 key 未完成时复用，避免泄露 future）。"""

        key = (session_id, request.approval_key)
        loop = asyncio.get_running_loop()
        with self._lock:
            existing = self._pending.get(key)
            if existing is not None and not existing.future.done():
                return existing
            pending = PendingApproval(
                session_id=session_id,
                request=request,
                created_at_monotonic=time.monotonic(),
                loop=loop,
                future=loop.create_future(),
            )
            self._pending[key] = pending
            return pending

    def _discard(self, key: Tuple[str, str], pending: PendingApproval) -> None:
        with self._lock:
            if self._pending.get(key) is pending:
                self._pending.pop(key, None)

    def decide(self, *, session_id: str, approval_key: str, decision: str) -> bool:
        """
        写入 decision（可从任意线程调用）。

        返回：
        - True：找到 pending 并已安排 resolve
        - False：未找到（不存在/已超时/已完成）

        异常：
        - ValueError：decision 非法
        """

        parsed = parse_decision(decision)
        key = (session_id, str(approval_key))
        with self._lock:
            pending = self._pending.get(key)
        if pending is None:
            return False

        def _resolve() -> None:
            try:
                if not pending.future.done():
                    pending.future.set_result(parsed)
            finally:
                self._discard(key, pending)

        try:
            pending.loop.call_soon_threadsafe(_resolve)
        except RuntimeError:
            # event loop 已关闭
            self._discard(key, pending)
            return False
        return True

    def deny_session(self, session_id: str) -> int:
        """连接关闭时把该连接的全部 pending 判为 DENIED；返回处理数量。"""

        with self._lock:
            keys = [k for k in self._pending if k[0] == session_id]
            items = [self._pending.pop(k) for k in keys]

        def _deny(fut: "asyncio.Future[ApprovalResponse]") -> None:
            if not fut.done():
                fut.set_result(ApprovalResponse.DENIED)

        for pending in items:
            try:
                pending.loop.call_soon_threadsafe(_deny, pending.future)
            except RuntimeError:
                logger.debug("event loop closed before pending approval could be denied")
        return len(items)


class _SessionApprovalProvider(ApprovalProvider):
    """将 ApprovalProvider 协议适配到 ApprovalHub（连接维度隔离）。"""

    def __init__(self, *, hub: ApprovalHub, session_id: str, notify: ApprovalNotify) -> None:
        self._hub = hub
        self._session_id = str(session_id)
        self._notify = notify

    async def request_approval(self, *, request: ApprovalRequest, timeout_ms: Optional[int] = None) -> ApprovalResponse:  # type: ignore[override]
        pending = self._hub._register(session_id=self._session_id, request=request)
        key = (self._session_id, request.approval_key)
        try:
            await self._notify(request)
            return await pending.future
        finally:
            self._hub._discard(key, pending)

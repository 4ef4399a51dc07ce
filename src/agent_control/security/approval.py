"""
Approvals（人工审批）：协议与 session 级 ApprovalManager。

说明：
- ApprovalManager 在 session 建立时由 autonomy 配置构造一次，之后不再重新读取配置；
- 审批握手是 loop 的挂起点：不得阻塞其它 session，且必须支持超时；
- 超时 / 无 provider / provider 异常一律视为 DENIED（fail-closed），绝不静默放行。
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Set, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from agent_control.config.loader import AutonomyConfig, AutonomyLevel

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """审批门禁对单次工具调用的结论。"""

    APPROVED = "approved"
    DENIED = "denied"
    NOT_REQUIRED = "not_required"


class ApprovalResponse(str, Enum):
    """人类（或规则）对一次审批请求的回答。"""

    APPROVED = "approved"
    APPROVED_FOR_SESSION = "approved_for_session"
    DENIED = "denied"


class ApprovalRequest(BaseModel):
    """
    审批请求（面向 UI/人类）。

    字段：
    - approval_key：稳定 key（用于 session 级缓存）
    - tool：工具名
    - summary：人类可读摘要（不得包含密钥）
    - details：结构化详情（工具参数）
    """

    model_config = ConfigDict(extra="forbid")

    approval_key: str
    tool: str
    summary: str
    details: Dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class ApprovalProvider(Protocol):
    """
    审批适配层（运行时不直接读 stdin/弹窗）。

    - request_approval：请求用户做出审批决策；`timeout_ms` 仅作提示，超时由 ApprovalManager 统一执行
    """

    async def request_approval(
        self,
        *,
        request: ApprovalRequest,
        timeout_ms: Optional[int] = None,
    ) -> ApprovalResponse: ...


def compute_approval_key(*, tool: str, request: Dict[str, Any]) -> str:
    """计算 approval_key（canonical JSON sha256）。"""

    canonical = {"tool": tool, "request": request}
    raw = json.dumps(canonical, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def summarize_call(tool_name: str, args: Dict[str, Any], *, max_chars: int = 200) -> str:
    """生成审批摘要：`<tool>(<compact args json>)`，超长截断。"""

    try:
        rendered = json.dumps(args, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        rendered = "{...}"
    if len(rendered) > max_chars:
        rendered = rendered[:max_chars] + "..."
    return f"{tool_name}({rendered})"


@dataclass(frozen=True)
class ApprovalOutcome:
    """
    一次审批门禁的完整结果（供事件与审计使用）。

    字段：
    - decision：APPROVED / DENIED / NOT_REQUIRED
    - reason：`autonomy_full` / `not_sensitive` / `cached` / `provider` / `timeout` / `no_provider` / `provider_error`
    - approval_key：需要审批时的稳定 key
    """

    decision: ApprovalDecision
    reason: str
    approval_key: Optional[str] = None


class ApprovalManager:
    """
    Session 级审批门禁。

    分类规则（supervised）：
    1) 工具名在 `always_ask` 中：需要审批
    2) 工具名在 `auto_approve` 中：不需要审批
    3) 否则取工具自身声明的 `requires_approval`；未声明（None）按需要审批处理
    """

    def __init__(
        self,
        *,
        autonomy: AutonomyLevel,
        provider: Optional[ApprovalProvider] = None,
        auto_approve: Iterable[str] = (),
        always_ask: Iterable[str] = (),
        timeout_ms: int = 60_000,
    ) -> None:
        self._autonomy = AutonomyLevel(autonomy)
        self._provider = provider
        self._auto_approve: Set[str] = {str(x).strip() for x in auto_approve if str(x).strip()}
        self._always_ask: Set[str] = {str(x).strip() for x in always_ask if str(x).strip()}
        self._timeout_ms = int(timeout_ms)
        self._approved_for_session: Set[str] = set()

    @classmethod
    def from_config(cls, cfg: AutonomyConfig, *, provider: Optional[ApprovalProvider] = None) -> "ApprovalManager":
        """从 `autonomy` 配置段构造（配置快照在此刻固定）。"""

        return cls(
            autonomy=cfg.level,
            provider=provider,
            auto_approve=cfg.auto_approve,
            always_ask=cfg.always_ask,
            timeout_ms=cfg.approval_timeout_ms,
        )

    @property
    def autonomy(self) -> AutonomyLevel:
        return self._autonomy

    def needs_approval(self, tool_name: str, *, requires_approval: Optional[bool] = None) -> bool:
        """纯判断：本次调用是否需要人工审批（不做握手）。"""

        if self._autonomy != AutonomyLevel.SUPERVISED:
            return False
        name = str(tool_name or "").strip()
        if name in self._always_ask:
            return True
        if name in self._auto_approve:
            return False
        if requires_approval is None:
            return True
        return bool(requires_approval)

    async def decide(
        self,
        tool_name: str,
        args: Dict[str, Any],
        *,
        requires_approval: Optional[bool] = None,
        on_request: Optional[Callable[[ApprovalRequest], None]] = None,
    ) -> ApprovalOutcome:
        """
        对单次工具调用做审批决策。

        参数：
        - tool_name/args：工具调用
        - requires_approval：工具声明的敏感性（None 表示未声明）
        - on_request：真正发起握手前的回调（用于发 approval_requested 事件）

        返回：
        - ApprovalOutcome
        """

        if self._autonomy == AutonomyLevel.FULL:
            return ApprovalOutcome(decision=ApprovalDecision.NOT_REQUIRED, reason="autonomy_full")
        if not self.needs_approval(tool_name, requires_approval=requires_approval):
            return ApprovalOutcome(decision=ApprovalDecision.NOT_REQUIRED, reason="not_sensitive")

        details = dict(args or {})
        approval_key = compute_approval_key(tool=tool_name, request=details)
        if approval_key in self._approved_for_session:
            return ApprovalOutcome(decision=ApprovalDecision.APPROVED, reason="cached", approval_key=approval_key)

        if self._provider is None:
            return ApprovalOutcome(decision=ApprovalDecision.DENIED, reason="no_provider", approval_key=approval_key)

        request = ApprovalRequest(
            approval_key=approval_key,
            tool=tool_name,
            summary=summarize_call(tool_name, details),
            details=details,
        )
        if on_request is not None:
            on_request(request)

        try:
            response = await asyncio.wait_for(
                self._provider.request_approval(request=request, timeout_ms=self._timeout_ms),
                timeout=self._timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.info("approval timed out (tool=%s key=%s)", tool_name, approval_key[:12])
            return ApprovalOutcome(decision=ApprovalDecision.DENIED, reason="timeout", approval_key=approval_key)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("approval provider failed (tool=%s)", tool_name, exc_info=True)
            return ApprovalOutcome(decision=ApprovalDecision.DENIED, reason="provider_error", approval_key=approval_key)

        if response == ApprovalResponse.APPROVED_FOR_SESSION:
            self._approved_for_session.add(approval_key)
            return ApprovalOutcome(decision=ApprovalDecision.APPROVED, reason="provider", approval_key=approval_key)
        if response == ApprovalResponse.APPROVED:
            return ApprovalOutcome(decision=ApprovalDecision.APPROVED, reason="provider", approval_key=approval_key)
        return ApprovalOutcome(decision=ApprovalDecision.DENIED, reason="provider", approval_key=approval_key)

"""
工具调用编排（从 core.tool_loop 拆出）。

包含：
- tool_call_requested/tool_call_started/tool_call_finished 事件产出
- 门禁顺序：resolve → can_act → record_action → approval → execute
- 取消：每次派发前后检查；已派发的调用允许完成并写入 history，未派发的写入 skipped 结果
- tool 结果回注（按模型给出的顺序）
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from agent_control.core.contracts import ChatMessage
from agent_control.core.loop_controller import LoopController
from agent_control.core.run_context import RunContext
from agent_control.security.approval import ApprovalDecision, ApprovalManager, ApprovalRequest
from agent_control.security.policy import RATE_LIMIT_BLOCKED, READ_ONLY_BLOCKED, SecurityPolicy
from agent_control.tools.protocol import ToolCall, ToolOutcome
from agent_control.tools.registry import ToolRegistry

CANCELLED_SKIP = "Tool call skipped: run cancelled"
APPROVAL_DENIED = "Action blocked: approval denied"
APPROVAL_TIMEOUT = "Action blocked: approval timed out"


def _approval_denied_message(reason: str) -> str:
    if reason == "timeout":
        return APPROVAL_TIMEOUT
    return APPROVAL_DENIED


async def gate_and_execute(
    *,
    ctx: RunContext,
    call: ToolCall,
    turn_id: str,
    step_id: str,
    registry: ToolRegistry,
    policy: SecurityPolicy,
    approvals: ApprovalManager,
) -> ToolOutcome:
    """
    对单个 tool call 做门禁并执行。

    返回：
    - 门禁拒绝/未知工具/参数非法：失败 outcome（模型可见）
    - 否则：registry.dispatch 的结果
    """

    tool = registry.get(call.name)
    if tool is None:
        return ToolOutcome.failure(f"Unknown tool: {call.name}")

    args_error = call.arguments_error()
    if args_error is not None:
        return ToolOutcome.failure(args_error)

    spec = tool.spec
    if spec.mutating and not policy.can_act():
        return ToolOutcome.failure(READ_ONLY_BLOCKED)
    if not policy.record_action():
        return ToolOutcome.failure(RATE_LIMIT_BLOCKED)

    def _on_request(request: ApprovalRequest) -> None:
        ctx.emit(
            "approval_requested",
            {
                "approval_key": request.approval_key,
                "tool": request.tool,
                "summary": request.summary,
                "request": request.details,
            },
            turn_id=turn_id,
            step_id=step_id,
        )

    approval = await approvals.decide(
        call.name,
        dict(call.args),
        requires_approval=spec.requires_approval,
        on_request=_on_request,
    )
    if approval.decision != ApprovalDecision.NOT_REQUIRED:
        ctx.emit(
            "approval_decided",
            {"approval_key": approval.approval_key, "decision": approval.decision.value, "reason": approval.reason},
            turn_id=turn_id,
            step_id=step_id,
        )
    if approval.decision == ApprovalDecision.DENIED:
        return ToolOutcome.failure(_approval_denied_message(approval.reason))

    ctx.emit("tool_call_started", {"call_id": call.call_id, "name": call.name}, turn_id=turn_id, step_id=step_id)
    return await registry.dispatch(call)


def _finished_payload(call: ToolCall, outcome: ToolOutcome) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "call_id": call.call_id,
        "name": call.name,
        "success": outcome.success,
        "output": outcome.history_content(),
    }
    if outcome.error is not None:
        payload["error"] = outcome.error
    return payload


def _skip_remaining(ctx: RunContext, calls: Sequence[ToolCall]) -> None:
    for call in calls:
        ctx.append(ChatMessage.tool(tool_call_id=call.call_id, content=CANCELLED_SKIP))


async def process_tool_calls(
    *,
    ctx: RunContext,
    turn_id: str,
    assistant_text: str,
    calls: Sequence[ToolCall],
    loop: LoopController,
    registry: ToolRegistry,
    policy: SecurityPolicy,
    approvals: ApprovalManager,
) -> bool:
    """
    按模型给出的顺序执行一批 tool calls，并把结果回注到 ctx.history。

    返回：
    - True：全部处理完毕，可继续下一轮
    - False：过程中检测到取消（history 已补齐所有 call 的结果）
    """

    if not calls:
        return True

    wire_calls: List[Dict[str, Any]] = [
        {"id": c.call_id, "name": c.name, "arguments": c.wire_arguments()} for c in calls
    ]
    ctx.append(ChatMessage.assistant_tool_calls(text=assistant_text or None, tool_calls=wire_calls))

    for idx, call in enumerate(calls):
        if loop.is_cancelled():
            _skip_remaining(ctx, calls[idx:])
            return False

        step_id = loop.next_step_id()
        ctx.emit(
            "tool_call_requested",
            {"call_id": call.call_id, "name": call.name, "arguments": dict(call.args)},
            turn_id=turn_id,
            step_id=step_id,
        )

        outcome = await gate_and_execute(
            ctx=ctx,
            call=call,
            turn_id=turn_id,
            step_id=step_id,
            registry=registry,
            policy=policy,
            approvals=approvals,
        )

        ctx.append(ChatMessage.tool(tool_call_id=call.call_id, content=outcome.history_content()))
        ctx.emit("tool_call_finished", _finished_payload(call, outcome), turn_id=turn_id, step_id=step_id)

        if loop.is_cancelled():
            _skip_remaining(ctx, calls[idx + 1:])
            return False

    return True


__all__ = ["CANCELLED_SKIP", "gate_and_execute", "process_tool_calls"]

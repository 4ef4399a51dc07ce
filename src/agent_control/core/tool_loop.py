"""
Tool-call loop：驱动“模型轮次 → 工具执行 → 模型轮次”的多轮编排。

状态机：
- AwaitingModel → EmittingText（终态：completed）
- AwaitingModel → ExecutingTools → AwaitingModel
- 任意状态 → cancelled（取消）/ failed（provider 终态错误）
- 达到 max_iterations 仍在请求工具 → max_iterations（终态，带最近一次非空 assistant 文本）

约束：
- loop 不对最终文本做清洗，也不把最终文本写回 history：调用方负责 finalize + append；
- provider 错误仅在“本次尝试尚未输出任何事件”且可重试时重试，否则以 run_failed 终止；
- 挂起点只有三个：等待 provider、等待工具、等待人工审批。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from agent_control.config.loader import LoopConfig
from agent_control.core.contracts import ChatMessage
from agent_control.core.event_emitter import EventEmitter, EventHook
from agent_control.core.loop_controller import LoopController
from agent_control.core.run_context import RunContext
from agent_control.core.run_errors import RunError, RunErrorKind, classify_run_exception
from agent_control.core.tool_orchestration import process_tool_calls
from agent_control.llm.protocol import ChatBackend, ChatRequest
from agent_control.security.approval import ApprovalManager
from agent_control.security.policy import SecurityPolicy
from agent_control.tools.protocol import ToolCall
from agent_control.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SEC = 0.05

DeltaCallback = Callable[[str], None]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class LoopResult:
    """
    一次 loop 调用的结果（调用方立即消费：finalize + history append）。

    字段：
    - status：`completed` / `max_iterations` / `failed` / `cancelled`
    - final_text：模型最终文本（未清洗；可能为空）
    - error：failed/cancelled 时的结构化错误
    - iterations：实际发起的模型轮次
    """

    status: str
    final_text: str = ""
    error: Optional[RunError] = None
    iterations: int = 0
    run_id: str = ""

    @property
    def ok(self) -> bool:
        return self.status in ("completed", "max_iterations")


@dataclass
class _TurnState:
    text: str = ""
    calls: List[ToolCall] = field(default_factory=list)
    emitted: bool = False


class _TurnCancelled(Exception):
    pass


def compute_backoff_delay(
    *,
    attempt: int,
    retry_after_ms: Optional[int],
    retry: LoopConfig.Retry,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    计算退避秒数。

    说明：
    - attempt 从 0 开始；
    - 优先使用 provider 的 `Retry-After`，否则指数退避 + 抖动（不超过 cap）。
    """

    if retry_after_ms is not None:
        return retry_after_ms / 1000.0
    base = min(retry.cap_delay_sec, retry.base_delay_sec * (2 ** attempt))
    jitter = rand(0.0, base * retry.jitter_ratio) if retry.jitter_ratio > 0 else 0.0
    return min(retry.cap_delay_sec, base + jitter)


def _notify_delta(on_delta: Optional[DeltaCallback], text: str) -> None:
    if on_delta is None:
        return
    try:
        on_delta(text)
    except Exception:
        logger.warning("on_delta callback failed", exc_info=True)


async def _consume_turn(
    *,
    ctx: RunContext,
    backend: ChatBackend,
    request: ChatRequest,
    loop: LoopController,
    state: _TurnState,
    on_delta: Optional[DeltaCallback],
) -> None:
    """
    消费一次 provider 响应，把文本与 tool calls 累积进 state。

    说明：backend 在后台 task 中消费并写入队列；主协程轮询队列以便及时响应取消。
    """

    agen = backend.stream_chat(request)
    queue: "asyncio.Queue[Any]" = asyncio.Queue()

    async def _pump() -> None:
        try:
            async for item in agen:
                await queue.put(item)
        except asyncio.CancelledError:
            with contextlib.suppress(Exception):
                await agen.aclose()  # type: ignore[attr-defined]
            raise
        except Exception as exc:
            await queue.put(exc)
        finally:
            await queue.put(None)

    task = asyncio.create_task(_pump())
    try:
        while True:
            if loop.is_cancelled():
                raise _TurnCancelled()
            try:
                item = await asyncio.wait_for(queue.get(), timeout=_POLL_INTERVAL_SEC)
            except asyncio.TimeoutError:
                continue
            if item is None:
                break
            if isinstance(item, Exception):
                raise item
            if item.type == "text_delta":
                delta = item.text or ""
                if not delta:
                    continue
                state.emitted = True
                state.text += delta
                ctx.emit("llm_response_delta", {"delta_type": "text", "text": delta}, turn_id=request.turn_id)
                _notify_delta(on_delta, delta)
            elif item.type == "tool_calls":
                calls = list(item.tool_calls or [])
                if not calls:
                    continue
                state.emitted = True
                state.calls.extend(calls)
                ctx.emit(
                    "llm_response_delta",
                    {"delta_type": "tool_calls", "tool_calls": [{"call_id": c.call_id, "name": c.name} for c in calls]},
                    turn_id=request.turn_id,
                )
            elif item.type == "completed":
                break
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(BaseException):
                await asyncio.gather(task, return_exceptions=True)


async def _request_turn(
    *,
    ctx: RunContext,
    backend: ChatBackend,
    request: ChatRequest,
    loop: LoopController,
    retry: LoopConfig.Retry,
    on_delta: Optional[DeltaCallback],
    sleep: SleepFn,
) -> _TurnState:
    """
    发起一轮模型请求（含有限次重试）。

    异常：
    - _TurnCancelled：等待期间检测到取消
    - Exception：不可重试或重试耗尽的 provider 错误（原样抛出，由调用方分类）
    """

    attempt = 0
    while True:
        ctx.emit(
            "llm_request_started",
            {
                "model": request.model,
                "messages_count": len(request.messages),
                "tools_count": len(request.tools or []),
                "attempt": attempt,
            },
            turn_id=request.turn_id,
        )
        state = _TurnState()
        try:
            await _consume_turn(ctx=ctx, backend=backend, request=request, loop=loop, state=state, on_delta=on_delta)
            return state
        except _TurnCancelled:
            raise
        except Exception as exc:
            err = classify_run_exception(exc)
            if state.emitted or not err.retryable or attempt >= retry.max_retries:
                raise
            delay = compute_backoff_delay(attempt=attempt, retry_after_ms=err.retry_after_ms, retry=retry)
            logger.info("provider error (%s); retry %d/%d in %.2fs", err.error_kind.value, attempt + 1, retry.max_retries, delay)
            ctx.emit(
                "llm_retry_scheduled",
                {
                    "attempt": attempt,
                    "max_retries": retry.max_retries,
                    "error_kind": err.error_kind.value,
                    "retry_after_ms": err.retry_after_ms,
                    "delay_ms": int(delay * 1000),
                },
                turn_id=request.turn_id,
            )
            await sleep(delay)
            if loop.is_cancelled():
                raise _TurnCancelled()
            attempt += 1


def _cancelled(ctx: RunContext, loop: LoopController, best_text: str) -> LoopResult:
    ctx.emit_cancelled()
    return LoopResult(
        status="cancelled",
        final_text=best_text,
        error=RunError(error_kind=RunErrorKind.CANCELLED, message="cancelled by user"),
        iterations=loop.iterations,
        run_id=ctx.run_id,
    )


async def run_tool_call_loop(
    *,
    history: List[ChatMessage],
    backend: ChatBackend,
    registry: ToolRegistry,
    policy: SecurityPolicy,
    approvals: ApprovalManager,
    model: str,
    user_message: Optional[str] = None,
    max_iterations: int = 10,
    excluded_tools: Sequence[str] = (),
    retry: Optional[LoopConfig.Retry] = None,
    temperature: Optional[float] = None,
    cancel_checker: Optional[Callable[[], bool]] = None,
    on_delta: Optional[DeltaCallback] = None,
    hooks: Sequence[EventHook] = (),
    run_id: Optional[str] = None,
    sleep: SleepFn = asyncio.sleep,
) -> LoopResult:
    """
    运行一次 tool-call loop。

    参数：
    - history：session transcript（会被 append：user 轮次、assistant tool-call 轮次、tool 结果）
    - backend：模型 provider
    - registry：工具注册表（按 `excluded_tools` 过滤后只读使用）
    - policy/approvals：session 的动作门禁与审批门禁（显式传入，不使用全局单例）
    - model：模型名
    - user_message：可选；非 None 时在 loop 开始前 append 为 user 消息
    - max_iterations：模型轮次上限
    - retry：provider 重试策略（默认 `LoopConfig.Retry()`）
    - cancel_checker：取消检测（异常时 fail-open）
    - on_delta：文本增量回调（异常只记录日志）
    - hooks：事件 hooks（fail-open）

    返回：
    - LoopResult
    """

    ctx = RunContext(run_id=run_id or f"run_{uuid.uuid4().hex[:12]}", history=history, emitter=EventEmitter(hooks=tuple(hooks)))
    loop = LoopController(max_iterations=max_iterations, cancel_checker=cancel_checker)
    tools = registry.without(excluded_tools)
    retry_cfg = retry or LoopConfig.Retry()

    if user_message is not None:
        ctx.append(ChatMessage.user(user_message))

    ctx.emit("run_started", {"model": model, "max_iterations": max_iterations, "tools": tools.names()})

    best_text = ""
    while True:
        if loop.is_cancelled():
            return _cancelled(ctx, loop, best_text)

        if not loop.has_budget():
            ctx.emit(
                "run_completed",
                {"final_output": best_text, "stop_reason": "max_iterations", "iterations": loop.iterations},
            )
            return LoopResult(status="max_iterations", final_text=best_text, iterations=loop.iterations, run_id=ctx.run_id)

        turn_id = loop.next_turn_id()
        request = ChatRequest(
            model=model,
            messages=list(ctx.history),
            tools=tools.list_specs() or None,
            temperature=temperature,
            run_id=ctx.run_id,
            turn_id=turn_id,
        )

        try:
            state = await _request_turn(
                ctx=ctx, backend=backend, request=request, loop=loop, retry=retry_cfg, on_delta=on_delta, sleep=sleep
            )
        except _TurnCancelled:
            return _cancelled(ctx, loop, best_text)
        except Exception as exc:
            err = classify_run_exception(exc)
            logger.warning("run %s failed: %s", ctx.run_id, err.message)
            ctx.emit("run_failed", err.to_payload())
            return LoopResult(status="failed", final_text="", error=err, iterations=loop.iterations, run_id=ctx.run_id)

        if state.text.strip():
            best_text = state.text

        if not state.calls:
            ctx.emit("run_completed", {"final_output": state.text, "stop_reason": "completed", "iterations": loop.iterations})
            return LoopResult(status="completed", final_text=state.text, iterations=loop.iterations, run_id=ctx.run_id)

        finished = await process_tool_calls(
            ctx=ctx,
            turn_id=turn_id,
            assistant_text=state.text,
            calls=state.calls,
            loop=loop,
            registry=tools,
            policy=policy,
            approvals=approvals,
        )
        if not finished:
            return _cancelled(ctx, loop, best_text)


__all__ = ["LoopResult", "compute_backoff_delay", "run_tool_call_loop"]

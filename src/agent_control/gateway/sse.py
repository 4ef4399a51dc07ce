from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import Request

from agent_control.gateway.broadcast import Subscription

logger = logging.getLogger(__name__)


def format_sse_event(*, event: str, data_json: str) -> str:
    """
    格式化一条 SSE 消息。

    约束：
    - event：事件名（字符串）
    - data：单行 JSON 字符串
    """

    return f"event: {event}\n" f"data: {data_json}\n\n"


def stream_broadcast_as_sse(
    *,
    request: Request,
    subscription: Subscription,
    poll_interval_sec: float = 0.5,
) -> AsyncIterator[bytes]:
    """
    把广播订阅转换为 SSE 流。

    终止条件：客户端断开连接（退出时自动取消订阅）。
    """

    async def _gen() -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    if await request.is_disconnected():
                        return
                except RuntimeError:
                    logger.debug("disconnect check failed", exc_info=True)
                event = await subscription.get(timeout=poll_interval_sec)
                if event is None:
                    continue
                ev_type = str(event.get("type") or "message")
                data = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
                yield format_sse_event(event=ev_type, data_json=data).encode("utf-8")
        finally:
            subscription.close()

    return _gen()

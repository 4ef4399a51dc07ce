"""
EventBroadcaster：进程内多订阅者事件广播（best-effort）。

约束：
- publish 永不阻塞、永不抛出：订阅者队列满或已关闭时直接丢弃该事件（记 debug 日志）；
- 没有订阅者时 publish 是 no-op。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Subscription:
    """单个订阅者（有界队列）。"""

    def __init__(self, broadcaster: "EventBroadcaster", maxsize: int) -> None:
        self._broadcaster = broadcaster
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    async def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """取下一条事件；超时返回 None。"""

        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)


class EventBroadcaster:
    """事件广播器（多订阅者）。"""

    def __init__(self, *, queue_size: int = 256) -> None:
        self._queue_size = int(queue_size)
        self._lock = threading.Lock()
        self._subs: List[Subscription] = []

    def subscribe(self, *, maxsize: Optional[int] = None) -> Subscription:
        sub = Subscription(self, maxsize or self._queue_size)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.closed = True
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(self, event: Dict[str, Any]) -> int:
        """
        非阻塞发布。

        返回：
        - 成功投递的订阅者数量
        """

        with self._lock:
            subs = list(self._subs)
        delivered = 0
        for sub in subs:
            if sub.closed:
                continue
            try:
                sub.queue.put_nowait(dict(event))
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.debug("event dropped for slow subscriber (type=%s)", event.get("type"))
        return delivered

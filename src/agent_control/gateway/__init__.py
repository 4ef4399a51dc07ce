"""
Session gateway（FastAPI：WebSocket 会话 + SSE 事件流）。
"""

from __future__ import annotations

from agent_control.gateway.app import create_app

__all__ = ["create_app"]

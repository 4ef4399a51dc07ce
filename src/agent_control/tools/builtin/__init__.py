"""
内置工具集合。
"""

from __future__ import annotations

from agent_control.tools.builtin.browser_open import BrowserOpenTool

__all__ = ["BrowserOpenTool"]

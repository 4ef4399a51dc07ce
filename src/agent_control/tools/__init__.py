"""
Tools（工具协议与注册表）。
"""

from __future__ import annotations

from agent_control.tools.protocol import FunctionTool, Tool, ToolCall, ToolOutcome, ToolSpec
from agent_control.tools.registry import ToolRegistry

__all__ = ["FunctionTool", "Tool", "ToolCall", "ToolOutcome", "ToolRegistry", "ToolSpec"]

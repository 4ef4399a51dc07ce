"""
ToolRegistry：工具注册表与派发（dispatch）。

本模块提供：
- 注册：`register/get/names/list_specs`（重名默认拒绝）
- 过滤：`without(excluded)` 返回排除后的只读副本
- 执行：`dispatch(ToolCall) -> ToolOutcome`（工具异常一律转换为失败 outcome，不向上抛）

约束：
- loop 运行期间注册表只读；`freeze()` 之后再注册会报错（不支持 session 中途注册新工具）。
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from agent_control.core.errors import ToolError, UserError
from agent_control.tools.protocol import Tool, ToolCall, ToolOutcome, ToolSpec

logger = logging.getLogger(__name__)


class ToolRegistry:
    """工具注册表（session 独占所有权；loop 只借用）。"""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        self._frozen = False
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool, *, override: bool = False) -> None:
        """
        注册工具。

        异常：
        - UserError：重名且未显式 override；或注册表已冻结
        """

        if self._frozen:
            raise UserError("tool registry is frozen; tools cannot be registered mid-session", code="REGISTRY_FROZEN")
        name = tool.spec.name
        if name in self._tools and not override:
            raise UserError(f"tool already registered: {name}", code="TOOL_NAME_CONFLICT", details={"tool": name})
        self._tools[name] = tool

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(str(name or "").strip())

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def list_specs(self) -> List[ToolSpec]:
        return [t.spec for t in self._tools.values()]

    def without(self, excluded: Iterable[str]) -> "ToolRegistry":
        """返回去掉 `excluded` 中工具名后的冻结副本（原注册表不变）。"""

        skip = {str(x).strip() for x in excluded or ()}
        out = ToolRegistry()
        for name, tool in self._tools.items():
            if name in skip:
                continue
            out._tools[name] = tool
        return out.freeze()

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def dispatch(self, call: ToolCall) -> ToolOutcome:
        """
        执行一次工具调用（不做门禁；门禁由 loop 负责）。

        返回：
        - 未知工具：`Unknown tool: <name>`
        - 参数不是 JSON object：失败 outcome，不执行工具
        - 工具抛异常：失败 outcome（异常文本）
        """

        tool = self.get(call.name)
        if tool is None:
            return ToolOutcome.failure(f"Unknown tool: {call.name}")

        args_error = call.arguments_error()
        if args_error is not None:
            return ToolOutcome.failure(args_error)

        try:
            outcome = await tool.execute(dict(call.args))
        except ToolError as exc:
            return ToolOutcome.failure(str(exc) or "tool failed")
        except Exception as exc:
            logger.warning("tool %s raised during execution", call.name, exc_info=True)
            return ToolOutcome.failure(f"Tool '{call.name}' failed: {exc}" if str(exc) else f"Tool '{call.name}' failed")

        if not isinstance(outcome, ToolOutcome):
            return ToolOutcome.failure(f"Tool '{call.name}' returned an invalid result")
        return outcome

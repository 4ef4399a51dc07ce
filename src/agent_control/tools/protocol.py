"""
Tool 协议：ToolSpec / ToolCall / ToolOutcome / Tool。

说明：
- 工具对 loop 暴露的能力面只有四项：name/description/parameters/execute；
- 工具失败统一用 `ToolOutcome(success=False, error=...)` 表达；工具实现抛出的异常由注册表派发层转换。
"""

from __future__ import annotations

import inspect
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ToolSpec(BaseModel):
    """
    工具描述（提供给模型，并驱动门禁）。

    字段：
    - name：注册表内唯一
    - description：给模型看的说明
    - parameters：JSON Schema object
    - requires_approval：敏感性声明；None 表示未声明（supervised 下按需要审批处理）
    - mutating：是否产生副作用；read_only 只拦截 mutating 工具
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    requires_approval: Optional[bool] = None
    mutating: bool = True

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("tool name must not be blank")
        return v


class ToolCall(BaseModel):
    """
    模型请求的一次工具调用。

    字段：
    - call_id：provider 给出的调用 id（用于 tool 消息关联）
    - name：工具名
    - args：解析后的参数
    - raw_arguments：可选；provider 原始 arguments 字符串（解析失败时用于报错）
    """

    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    raw_arguments: Optional[str] = None

    def arguments_error(self) -> Optional[str]:
        """校验 raw_arguments：必须是 JSON object；返回错误文本或 None。"""

        raw = (self.raw_arguments or "").strip()
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            return f"Invalid tool arguments JSON: {exc}"
        if not isinstance(parsed, dict):
            return "Invalid tool arguments JSON: arguments must be a JSON object"
        return None

    def wire_arguments(self) -> str:
        """返回写回 history 的 arguments 字符串（优先原样保留）。"""

        if self.raw_arguments is not None:
            return self.raw_arguments
        return json.dumps(self.args, ensure_ascii=False, separators=(",", ":"))


class ToolOutcome(BaseModel):
    """
    工具执行结果。

    约定：成功时 `output` 为有效载荷；失败时 `output` 为空、`error` 有值。
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    success: bool
    output: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, output: str) -> "ToolOutcome":
        return cls(success=True, output=str(output or ""))

    @classmethod
    def failure(cls, error: str) -> "ToolOutcome":
        return cls(success=False, output="", error=str(error or "tool failed"))

    def history_content(self) -> str:
        """写入 history 的文本：成功取 output，失败取 error。"""

        if self.success:
            return self.output
        return self.error or "tool failed"


@runtime_checkable
class Tool(Protocol):
    """工具能力面（外部实现需满足）。"""

    @property
    def spec(self) -> ToolSpec: ...

    async def execute(self, args: Dict[str, Any]) -> ToolOutcome: ...


ToolFunctionResult = Union[ToolOutcome, str]
ToolFunction = Callable[[Dict[str, Any]], Union[ToolFunctionResult, Awaitable[ToolFunctionResult]]]


class FunctionTool:
    """
    把普通函数（sync/async）包装为 Tool。

    说明：函数可返回 `ToolOutcome` 或 `str`（视为成功 output）。
    """

    def __init__(self, spec: ToolSpec, fn: ToolFunction) -> None:
        self._spec = spec
        self._fn = fn

    @property
    def spec(self) -> ToolSpec:
        return self._spec

    async def execute(self, args: Dict[str, Any]) -> ToolOutcome:
        result: Any = self._fn(args)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ToolOutcome):
            return result
        return ToolOutcome.ok(str(result))

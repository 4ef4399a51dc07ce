"""
运行时内部错误分类（异常类型）。

说明：
- 异常只用于模块间传递“错误层级”语义与测试断言；
- 面向模型的工具失败统一使用 `ToolOutcome(success=False, error=...)`，不走异常；
- 面向客户端的错误统一经 `run_errors.sanitize_api_error` 脱敏后再输出。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class AgentControlError(Exception):
    """运行时内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """框架结构化问题对象（可用于日志与配置校验报告）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(AgentControlError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """调用方输入/配置导致的错误（注册冲突、参数非法等）。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class ToolError(AgentControlError):
    """工具执行失败（由工具实现抛出；派发层会转换为失败的 ToolOutcome）。"""


class LlmError(AgentControlError):
    """
    模型 provider 通信/协议错误。

    字段：
    - retryable：是否属于瞬时故障（loop 会在有限次数内重试）
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = bool(retryable)


class ContextLengthExceededError(LlmError):
    """
    上下文长度超限（finish_reason=length 或 provider 明确报错）。

    说明：重试同一请求无法解决，因此固定为不可重试。
    """

    def __init__(self, message: str = "context length exceeded") -> None:
        super().__init__(message, retryable=False)


class EgressDenied(UserError):
    """出站 URL 被 egress guard 拒绝；`reason` 为人类可读原因。"""

    def __init__(self, reason: str) -> None:
        super().__init__(reason, code="EGRESS_DENIED")
        self.reason = reason

    def __str__(self) -> str:
        return self.reason

"""
Run 失败错误类型化（RunErrorKind / RunError）与 provider 错误脱敏。

说明：
- loop 用 `classify_run_exception` 判断 provider 异常是否可重试；
- 所有最终暴露给客户端的错误文本都必须经过 `sanitize_api_error`。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from agent_control.core.errors import ContextLengthExceededError, FrameworkError, LlmError

MAX_API_ERROR_CHARS = 300

_SECRET_PATTERNS = [
    re.compile(r"sk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"gh[pousr]_[A-Za-z0-9]{16,}"),
    re.compile(r"xox[abprs]-[A-Za-z0-9\-]{8,}"),
    re.compile(r"AIza[0-9A-Za-z_\-]{20,}"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-~+/]+=*"),
    re.compile(r"(?i)(api[_-]?key|token|secret|password)\s*[=:]\s*[^\s,;&\"']+"),
]


class RunErrorKind(str, Enum):
    """run_failed 的稳定错误分类（机器可消费）。"""

    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"

    CONFIG_ERROR = "config_error"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    LLM_ERROR = "llm_error"
    CANCELLED = "cancelled"

    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RunError:
    """
    RunError：结构化运行错误（用于 run_failed payload 与 LoopResult）。

    字段：
    - error_kind：稳定分类
    - message：可读错误消息（已脱敏）
    - retryable：是否属于瞬时故障
    - retry_after_ms：可选；provider 建议的等待毫秒数（429 + Retry-After）
    - details：可选；结构化上下文（必须可 JSON 序列化）
    """

    error_kind: RunErrorKind
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """转换为 run_failed 的 payload dict（稳定字段名）。"""

        out: Dict[str, Any] = {
            "error_kind": str(self.error_kind.value),
            "message": str(self.message or ""),
            "retryable": bool(self.retryable),
        }
        if self.retry_after_ms is not None:
            out["retry_after_ms"] = int(self.retry_after_ms)
        if self.details:
            out["details"] = dict(self.details)
        return out


def sanitize_api_error(text: str) -> str:
    """
    清洗 provider 错误文本：替换疑似凭证为 `[REDACTED]`，并限制长度。

    约束：
    - 返回值可直接发送给客户端；
    - 空输入返回固定的 `provider error`。
    """

    out = str(text or "").strip()
    if not out:
        return "provider error"
    for pattern in _SECRET_PATTERNS:
        out = pattern.sub("[REDACTED]", out)
    if len(out) > MAX_API_ERROR_CHARS:
        out = out[:MAX_API_ERROR_CHARS] + "...<truncated>"
    return out


def _retry_after_ms(headers: httpx.Headers) -> Optional[int]:
    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        sec = int(str(ra).strip())
    except (ValueError, TypeError):
        return None
    return sec * 1000 if sec > 0 else None


def _classify_http_status(exc: httpx.HTTPStatusError) -> RunError:
    code = int(exc.response.status_code)
    kind = RunErrorKind.HTTP_ERROR
    retryable = False
    retry_after_ms: Optional[int] = None
    if code in (401, 403):
        kind = RunErrorKind.AUTH_ERROR
    elif code == 429:
        kind = RunErrorKind.RATE_LIMITED
        retryable = True
        retry_after_ms = _retry_after_ms(exc.response.headers)
    elif 500 <= code <= 599:
        kind = RunErrorKind.SERVER_ERROR
        retryable = True

    msg = f"HTTP {code}"
    try:
        data = exc.response.json()
        # OpenAI 风格：{"error":{"message": "..."}}
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            em = data["error"].get("message")
            if isinstance(em, str) and em.strip():
                msg = f"HTTP {code}: {em.strip()}"
    except (json.JSONDecodeError, ValueError, KeyError, TypeError):
        pass

    return RunError(
        error_kind=kind,
        message=sanitize_api_error(msg),
        retryable=retryable,
        retry_after_ms=retry_after_ms,
        details={"status_code": code},
    )


def classify_run_exception(exc: BaseException) -> RunError:
    """
    将运行时异常映射为结构化 RunError。

    约束：
    - message 一律经过 `sanitize_api_error`；
    - 未识别的异常归为 `unknown` 且不可重试（不得静默重试未知故障）。
    """

    if isinstance(exc, httpx.TimeoutException):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=sanitize_api_error(str(exc) or "timeout"), retryable=True, details={"kind": "timeout"})
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_http_status(exc)
    if isinstance(exc, httpx.RequestError):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=sanitize_api_error(str(exc)), retryable=True, details={"kind": "request_error"})

    if isinstance(exc, ContextLengthExceededError):
        return RunError(error_kind=RunErrorKind.CONTEXT_LENGTH_EXCEEDED, message=sanitize_api_error(str(exc)), retryable=False)
    if isinstance(exc, LlmError):
        return RunError(error_kind=RunErrorKind.LLM_ERROR, message=sanitize_api_error(str(exc)), retryable=exc.retryable)

    if isinstance(exc, FrameworkError):
        return RunError(
            error_kind=RunErrorKind.CONFIG_ERROR,
            message=sanitize_api_error(str(exc)),
            retryable=False,
            details={"framework_code": exc.code},
        )
    if isinstance(exc, ValueError):
        # 常见：缺少 API key env；或配置问题
        return RunError(error_kind=RunErrorKind.CONFIG_ERROR, message=sanitize_api_error(str(exc)), retryable=False)

    return RunError(error_kind=RunErrorKind.UNKNOWN, message=sanitize_api_error(str(exc) or type(exc).__name__), retryable=False)

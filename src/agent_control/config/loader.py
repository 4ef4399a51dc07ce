"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 配置只在 session 建立时读取一次；loop 运行期间不会重新读取。
"""

from __future__ import annotations

import os
from copy import deepcopy
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class AutonomyLevel(str, Enum):
    """
    自治等级（有序）：read_only < supervised < full。

    - read_only：只能观察，所有 mutating 动作被拦截
    - supervised：可执行，但敏感工具需逐次人工审批
    - full：在策略范围内自主执行，无需审批
    """

    READ_ONLY = "read_only"
    SUPERVISED = "supervised"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _AUTONOMY_ORDER.index(self)


_AUTONOMY_ORDER = [AutonomyLevel.READ_ONLY, AutonomyLevel.SUPERVISED, AutonomyLevel.FULL]


class AutonomyConfig(BaseModel):
    """
    自治与审批配置。

    说明：
    - `max_actions_per_hour=None` 表示不限流；`0` 表示“永不允许”（不是不限）。
    - `always_ask/auto_approve` 是按工具名声明的敏感性表，优先于工具自身的 `requires_approval`。
    - `shared_rate_limit=true` 时所有 session 共用一个 SecurityPolicy（进程级计数）。
    """

    model_config = ConfigDict(extra="forbid")

    level: AutonomyLevel = AutonomyLevel.SUPERVISED
    max_actions_per_hour: Optional[int] = Field(default=20, ge=0)
    auto_approve: List[str] = Field(default_factory=list)
    always_ask: List[str] = Field(default_factory=list)
    approval_timeout_ms: int = Field(default=60_000, ge=1)
    shared_rate_limit: bool = False


class LoopConfig(BaseModel):
    """tool-call loop 参数。"""

    model_config = ConfigDict(extra="forbid")

    class Retry(BaseModel):
        """
        provider 瞬时故障的重试/退避策略。

        说明：base/cap/jitter 只影响“无 Retry-After”时的指数退避计算。
        """

        model_config = ConfigDict(extra="forbid")

        max_retries: int = Field(default=2, ge=0)
        base_delay_sec: float = Field(default=0.5, ge=0.0)
        cap_delay_sec: float = Field(default=8.0, ge=0.0)
        jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0)

    max_tool_iterations: int = Field(default=10, ge=1)
    excluded_tools: List[str] = Field(default_factory=list)
    retry: Retry = Field(default_factory=Retry)


class LlmConfig(BaseModel):
    """模型 provider 连接配置（OpenAI-compatible）。"""

    model_config = ConfigDict(extra="forbid")

    provider: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4o-mini"
    temperature: Optional[float] = Field(default=0.7, ge=0.0, le=2.0)
    timeout_sec: int = Field(default=120, ge=1)


class GatewayConfig(BaseModel):
    """
    Session gateway 配置。

    说明：
    - `require_pairing=true` 时，WS/SSE 请求必须携带与配置 token 匹配的 bearer token；
    - token 从 `paired_tokens_env` 指向的环境变量读取（逗号分隔），不写入配置文件。
    """

    model_config = ConfigDict(extra="forbid")

    host: str = "127.0.0.1"
    port: int = Field(default=42617, ge=1, le=65535)
    require_pairing: bool = True
    paired_tokens_env: str = "AGENT_CONTROL_PAIRED_TOKENS"
    stream_deltas: bool = False
    system_prompt: str = "You are a helpful assistant. Use tools only when needed."

    def paired_tokens(self) -> List[str]:
        """读取已配对 token 列表（空字符串会被忽略）。"""

        raw = os.environ.get(self.paired_tokens_env, "")
        return [t.strip() for t in raw.split(",") if t.strip()]


class BrowserConfig(BaseModel):
    """browser_open 工具配置（allowlist-only）。"""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    allowed_domains: List[str] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """日志配置（标准库 logging）。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("level", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class AgentControlConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    autonomy: AutonomyConfig = Field(default_factory=AutonomyConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    llm: LlmConfig = Field(default_factory=LlmConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"配置文件不存在：{path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件根节点必须为 mapping(dict)：{path}")
    return data


def load_config_dicts(config_dicts: List[Dict[str, Any]]) -> AgentControlConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `AgentControlConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return AgentControlConfig.model_validate(merged)


def load_config(config_paths: List[Path], *, include_defaults: bool = True) -> AgentControlConfig:
    """
    加载并合并多个配置文件，返回校验后的 `AgentControlConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）；空列表返回默认配置
    - include_defaults：是否先合并内置 `assets/default.yaml`
    """

    overlays: List[Dict[str, Any]] = []
    if include_defaults:
        from agent_control.config.defaults import load_default_config_dict

        overlays.append(load_default_config_dict())
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)

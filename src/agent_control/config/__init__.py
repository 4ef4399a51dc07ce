"""配置（YAML overlays + pydantic 校验）。"""

from __future__ import annotations

from agent_control.config.loader import (
    AgentControlConfig,
    AutonomyConfig,
    AutonomyLevel,
    BrowserConfig,
    GatewayConfig,
    LlmConfig,
    LoopConfig,
    load_config,
    load_config_dicts,
)
from agent_control.config.defaults import load_default_config_dict

__all__ = [
    "AgentControlConfig",
    "AutonomyConfig",
    "AutonomyLevel",
    "BrowserConfig",
    "GatewayConfig",
    "LlmConfig",
    "LoopConfig",
    "load_config",
    "load_config_dicts",
    "load_default_config_dict",
]

"""
Agent action-control runtime（Python）。

说明：
- 本包是自治 agent 运行时的信任边界：模型驱动的每个动作都经过它的门禁与审批。
- 当前包含：
  - 核心契约（ChatMessage/AgentEvent/RunError）
  - 配置加载器（YAML overlay + pydantic 校验）
  - SecurityPolicy（自治等级 + 每小时动作预算）与 ApprovalManager（人工审批）
  - Egress URL Guard（https-only、拒绝本地/私网、allowlist）
  - Tool System（ToolSpec/ToolCall/ToolOutcome、ToolRegistry、browser_open）
  - LLM backend（Chat SSE parser + OpenAI-compatible + Fake backend）
  - Tool-call loop（模型轮次 → 门禁 → 工具执行 → 回注）
  - Response sanitizer（工具痕迹清洗 + 三级兜底）
  - Session gateway（FastAPI WebSocket + SSE）
"""

from __future__ import annotations

__version__ = "0.3.0"

__all__ = ["__version__"]

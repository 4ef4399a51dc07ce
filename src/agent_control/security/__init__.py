"""
Security（动作门禁、人工审批、出站 URL 校验）。
"""

from __future__ import annotations

from agent_control.security.approval import (
    ApprovalDecision,
    ApprovalManager,
    ApprovalOutcome,
    ApprovalProvider,
    ApprovalRequest,
    ApprovalResponse,
    compute_approval_key,
)
from agent_control.security.policy import RATE_LIMIT_BLOCKED, READ_ONLY_BLOCKED, SecurityPolicy
from agent_control.security.url_guard import validate_url

__all__ = [
    "ApprovalDecision",
    "ApprovalManager",
    "ApprovalOutcome",
    "ApprovalProvider",
    "ApprovalRequest",
    "ApprovalResponse",
    "RATE_LIMIT_BLOCKED",
    "READ_ONLY_BLOCKED",
    "SecurityPolicy",
    "compute_approval_key",
    "validate_url",
]

"""
Response sanitization（最终文本清洗与兜底）。
"""

from __future__ import annotations

from agent_control.sanitize.response import (
    EMPTY_RESPONSE_FALLBACK,
    MALFORMED_TOOL_OUTPUT_NOTICE,
    extract_latest_tool_output,
    finalize_response,
    sanitize_for_channel,
    sanitize_response,
)

__all__ = [
    "EMPTY_RESPONSE_FALLBACK",
    "MALFORMED_TOOL_OUTPUT_NOTICE",
    "extract_latest_tool_output",
    "finalize_response",
    "sanitize_for_channel",
    "sanitize_response",
]

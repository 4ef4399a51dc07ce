"""
LLM backend（OpenAI-compatible chat.completions + 离线 fake）。
"""

from __future__ import annotations

from agent_control.llm.chat_sse import ChatCompletionsSseParser
from agent_control.llm.fake import FakeChatBackend, FakeChatCall
from agent_control.llm.openai_chat import OpenAIChatCompletionsBackend
from agent_control.llm.protocol import ChatBackend, ChatRequest, ChatStreamEvent

__all__ = [
    "ChatBackend",
    "ChatCompletionsSseParser",
    "ChatRequest",
    "ChatStreamEvent",
    "FakeChatBackend",
    "FakeChatCall",
    "OpenAIChatCompletionsBackend",
]

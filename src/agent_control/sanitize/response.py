"""
Response Sanitizer 与 Tool-Output Extractor。

职责：
- `sanitize_response`：删除泄漏到最终文本里的工具调用/结果痕迹（标签块、裸 JSON 调用/结果对象），保留周围正文；
- `sanitize_for_channel`：清洗结果为空但原文非空时，返回固定的“malformed output”提示；
- `finalize_response`：三级兜底（通道清洗文本 → 最近一次工具输出摘录 → 固定提示），保证用户通道
  既不出现原始工具协议语法，也不出现空回复。
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, List, Optional, Sequence, Set

from agent_control.core.contracts import TOOL_RESULTS_MARKER, ChatMessage
from agent_control.core.utils import truncate_with_ellipsis

MALFORMED_TOOL_OUTPUT_NOTICE = (
    "I encountered malformed tool-call output and could not produce a safe reply. Please try again."
)
EMPTY_RESPONSE_FALLBACK = (
    "Tool execution completed, but the model returned no final text response. "
    "Please ask me to summarize the result."
)
LATEST_TOOL_OUTPUT_TEMPLATE = (
    "Tool execution completed, but the model returned no final text response.\n\n"
    "Latest tool output:\n{excerpt}"
)
MAX_TOOL_OUTPUT_EXCERPT_CHARS = 1200

TOOL_ARTIFACT_TAGS = ("tool_call", "toolcall", "tool-call", "function_call", "tool_result", "tool_results")

_TAG_BLOCK_RE = re.compile(
    r"<(?P<tag>" + "|".join(re.escape(t) for t in TOOL_ARTIFACT_TAGS) + r")\b[^>]*>.*?</(?P=tag)\s*>",
    re.IGNORECASE | re.DOTALL,
)
_BLANK_RUN_RE = re.compile(r"\n{3,}")

_DECODER = json.JSONDecoder()


def _is_tool_artifact(obj: Any, tool_names: Set[str]) -> bool:
    """
    判断 JSON object 是否精确匹配工具调用/结果形态。

    匹配：
    - `{"name": <已注册工具>, "arguments"|"parameters": {...}}`（key 集合必须精确）
    - `{"result": {...}}`
    """

    if not isinstance(obj, dict):
        return False
    keys = set(obj.keys())
    if keys == {"result"}:
        return isinstance(obj["result"], dict)
    for arg_key in ("arguments", "parameters"):
        if keys == {"name", arg_key}:
            name = obj.get("name")
            return isinstance(name, str) and name in tool_names and isinstance(obj[arg_key], dict)
    return False


def _strip_json_artifacts(text: str, tool_names: Set[str]) -> str:
    """扫描每个 `{`，用 raw_decode 解析完整 JSON object；命中工具形态则删除该片段。"""

    out: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        start = text.find("{", i)
        if start < 0:
            out.append(text[i:])
            break
        out.append(text[i:start])
        try:
            obj, end = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            out.append("{")
            i = start + 1
            continue
        if _is_tool_artifact(obj, tool_names):
            i = end
            continue
        out.append(text[start:end])
        i = end
    return "".join(out)


def _collapse_blank_lines(text: str) -> str:
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").split("\n")]
    joined = "\n".join(lines)
    return _BLANK_RUN_RE.sub("\n\n", joined).strip()


def sanitize_response(raw_text: str, tool_names: Iterable[str]) -> str:
    """
    清洗模型最终文本。

    参数：
    - raw_text：模型原始文本
    - tool_names：当前注册的工具名（只有这些名字的裸 JSON 调用会被删除）

    返回：
    - 清洗后的文本（可能为空）
    """

    if not raw_text:
        return ""
    names = {str(n) for n in tool_names}
    text = _TAG_BLOCK_RE.sub("", raw_text)
    text = _strip_json_artifacts(text, names)
    return _collapse_blank_lines(text)


def sanitize_for_channel(raw_text: str, tool_names: Iterable[str]) -> str:
    """
    面向用户通道的清洗：原文非空而清洗结果为空，说明模型输出了逃逸出工具通道的畸形调用语法，
    此时返回固定提示而不是空字符串或原始语法。
    """

    cleaned = sanitize_response(raw_text, tool_names)
    if not cleaned and (raw_text or "").strip():
        return MALFORMED_TOOL_OUTPUT_NOTICE
    return cleaned


def normalize_prompt_tool_results(content: str) -> str:
    """去掉 `<tool_result ...>` / `</tool_result>` 标记行与空行，其余行右侧去空白。"""

    lines: List[str] = []
    for line in content.split("\n"):
        trimmed = line.strip()
        if not trimmed:
            continue
        if trimmed.startswith("<tool_result") or trimmed == "</tool_result>":
            continue
        lines.append(line.rstrip())
    return "\n".join(lines)


def extract_latest_tool_output(history: Sequence[ChatMessage]) -> Optional[str]:
    """
    逆序扫描 history，返回最近一次工具产出的内容。

    规则：
    - `tool` 消息：优先取 envelope 的 `content`（非空字符串），否则取原始文本（非空）
    - `user` 消息以 `[Tool results]` 开头：去掉标记与 `<tool_result>` 标签、空行后非空即返回
    """

    for msg in reversed(history):
        if msg.role == "tool":
            env = msg.envelope()
            if env is not None:
                content = env.get("content")
                if isinstance(content, str) and content.strip():
                    return content.strip()
            raw = msg.content.strip()
            if raw:
                return raw
            continue
        if msg.role == "user" and msg.content.startswith(TOOL_RESULTS_MARKER):
            body = msg.content[len(TOOL_RESULTS_MARKER):].lstrip("\n")
            normalized = normalize_prompt_tool_results(body)
            if normalized.strip():
                return normalized
    return None


def finalize_response(raw_text: str, history: Sequence[ChatMessage], tool_names: Iterable[str]) -> str:
    """
    三级兜底生成用户可见文本。

    1) 通道清洗后非空：直接返回（原文只剩工具调用语法时即为畸形输出提示）
    2) 否则取最近一次工具输出，返回带截断摘录（最多 1200 字符）的模板文本
    3) 都没有：返回固定提示
    """

    cleaned = sanitize_for_channel(raw_text, tool_names)
    if cleaned.strip():
        return cleaned

    latest = extract_latest_tool_output(history)
    if latest:
        excerpt = truncate_with_ellipsis(latest, MAX_TOOL_OUTPUT_EXCERPT_CHARS)
        return LATEST_TOOL_OUTPUT_TEMPLATE.format(excerpt=excerpt)

    return EMPTY_RESPONSE_FALLBACK

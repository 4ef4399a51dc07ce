"""
Gateway 鉴权：bearer token 提取与配对校验。

说明：
- token 可来自 `Authorization: Bearer <token>` 或 WebSocket 子协议 `bearer.<token>`；两者都给时 header 优先；
- 前缀后为空的 token 视为未提供；
- 比较使用 `hmac.compare_digest`（常量时间），不做身份体系。
"""

from __future__ import annotations

import hmac
from typing import Iterable, List, Mapping, Optional

UNAUTHORIZED_HINT = (
    "Unauthorized: provide Authorization: Bearer <token> or Sec-WebSocket-Protocol: bearer.<token>"
)

BEARER_PREFIX = "Bearer "
SUBPROTOCOL_TOKEN_PREFIX = "bearer."


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def offered_subprotocols(headers: Mapping[str, str]) -> List[str]:
    """解析 `Sec-WebSocket-Protocol`（逗号分隔）为非空条目列表。"""

    raw = _header(headers, "Sec-WebSocket-Protocol") or ""
    return [p.strip() for p in raw.split(",") if p.strip()]


def extract_bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    """
    从请求头提取 bearer token。

    返回：
    - token 字符串；均未提供（或为空）时返回 None
    """

    auth = (_header(headers, "Authorization") or "").strip()
    if auth.startswith(BEARER_PREFIX):
        token = auth[len(BEARER_PREFIX):].strip()
        if token:
            return token

    for protocol in offered_subprotocols(headers):
        if protocol.startswith(SUBPROTOCOL_TOKEN_PREFIX):
            token = protocol[len(SUBPROTOCOL_TOKEN_PREFIX):].strip()
            if token:
                return token
    return None


class PairingGuard:
    """
    本地配对校验。

    参数：
    - require_pairing：False 时所有请求放行
    - tokens：已配对 token 集合
    """

    def __init__(self, *, require_pairing: bool, tokens: Iterable[str] = ()) -> None:
        self._require = bool(require_pairing)
        self._tokens = [t for t in (str(x).strip() for x in tokens) if t]

    @property
    def require_pairing(self) -> bool:
        return self._require

    def is_authenticated(self, token: Optional[str]) -> bool:
        if not self._require:
            return True
        if not token:
            return False
        candidate = token.encode("utf-8")
        matched = False
        for known in self._tokens:
            if hmac.compare_digest(candidate, known.encode("utf-8")):
                matched = True
        return matched

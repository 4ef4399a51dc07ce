"""
Egress URL Guard：出站 URL 校验（防止工具被用作 SSRF 原语）。

规则（按顺序，首个失败即拒绝）：
1) 空/全空白
2) 内含空白字符
3) scheme 必须是 `https://`
4) allowlist 不得为空（空 allowlist 是误配置，不是“全放行”）
5) 提取 host；携带 userinfo（`user@host`）直接拒绝
6) loopback/link-local/私网/`localhost` 等本地目标与非规范的数字 IPv4 写法一律拒绝（通配符也无法绕过）
7) host 与 allowlist 匹配：精确、严格子域名、或通配符 `*`

成功时返回校验过的 URL（不做 path/query 归一化）。
"""

from __future__ import annotations

import ipaddress
import logging
import re
import socket
from typing import Callable, Iterable, List, Optional, Sequence

from agent_control.core.errors import EgressDenied

logger = logging.getLogger(__name__)

WILDCARD = "*"

HostResolver = Callable[[str], Sequence[str]]


def normalize_allowed_domains(domains: Iterable[str]) -> List[str]:
    """
    归一化 allowlist：小写、去 scheme/path/端口、去 `*.` 与首尾 `.`，去重并排序。

    说明：单独的 `*` 保留为通配符。
    """

    out = set()
    for raw in domains or []:
        d = str(raw or "").strip().lower()
        if not d:
            continue
        if d == WILDCARD:
            out.add(WILDCARD)
            continue
        if "://" in d:
            d = d.split("://", 1)[1]
        for sep in ("/", "?", "#"):
            d = d.split(sep, 1)[0]
        if d.startswith("*."):
            d = d[2:]
        if ":" in d and not d.startswith("["):
            d = d.split(":", 1)[0]
        d = d.strip(".")
        if d:
            out.add(d)
    return sorted(out)


def extract_host(url: str) -> str:
    """
    从 `https://` URL 中提取小写 host（去掉端口与 IPv6 方括号）。

    异常：
    - EgressDenied：携带 userinfo、host 为空或格式非法
    """

    rest = url[len("https://"):] if url.startswith("https://") else url
    authority = rest
    for sep in ("/", "?", "#"):
        authority = authority.split(sep, 1)[0]

    if "@" in authority:
        raise EgressDenied("URL userinfo is not allowed")

    if authority.startswith("["):
        end = authority.find("]")
        if end < 0:
            raise EgressDenied("Invalid IPv6 host in URL")
        host = authority[1:end]
    else:
        host = authority.split(":", 1)[0]

    host = host.strip().lower()
    if not host:
        raise EgressDenied("URL must include a host")
    return host


def _ip_is_local(ip: "ipaddress.IPv4Address | ipaddress.IPv6Address") -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return _ip_is_local(ip.ipv4_mapped)
    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
        or not ip.is_global
    )


_NUMERIC_HOST_RE = re.compile(r"(?:0x[0-9a-f]*|[0-9]+)(?:\.(?:0x[0-9a-f]*|[0-9]+)){0,3}")


def _is_numeric_ipv4_form(host: str) -> bool:
    """
    判断 host 是否为非规范的 IPv4 数字写法（`127.1`、`0x7f000001`、`0177.0.0.1`、`2130706433` 等）。

    说明：这些写法 `ipaddress` 不接受，但浏览器与 `inet_aton` 会把它们解析成 IPv4 地址。
    """

    if _NUMERIC_HOST_RE.fullmatch(host):
        return True
    try:
        socket.inet_aton(host)
    except (OSError, ValueError):
        return False
    return True


def is_private_or_local_host(host: str) -> bool:
    """
    判断 host 是否指向本地/私网目标。

    覆盖：
    - `localhost`、`*.localhost`、`.local`（mDNS）、尾部带 `.` 的写法
    - IPv4/IPv6 字面量（含 IPv4-mapped IPv6）
    - 非规范的 IPv4 数字写法（整数、八进制、十六进制、省略段）：一律拒绝
    """

    h = str(host or "").strip().lower().rstrip(".")
    if not h:
        return True
    if h == "localhost" or h.endswith(".localhost") or h.endswith(".local"):
        return True
    try:
        ip = ipaddress.ip_address(h)
    except ValueError:
        return _is_numeric_ipv4_form(h)
    return _ip_is_local(ip)


def host_matches_allowlist(host: str, allowed_domains: Sequence[str]) -> bool:
    """精确匹配、严格子域名匹配，或 allowlist 含通配符 `*`。"""

    h = host.rstrip(".")
    for domain in allowed_domains:
        if domain == WILDCARD:
            return True
        if h == domain or h.endswith("." + domain):
            return True
    return False


def validate_url(
    raw_url: str,
    allowed_domains: Sequence[str],
    *,
    resolve_host: Optional[HostResolver] = None,
) -> str:
    """
    校验出站 URL。

    参数：
    - raw_url：待校验 URL（首尾空白会被去掉；中间空白直接拒绝）
    - allowed_domains：allowlist（内部会归一化）
    - resolve_host：可选 DNS 解析器；提供时，解析出的任一地址为本地/私网也拒绝

    返回：
    - 校验通过的 URL

    异常：
    - EgressDenied：reason 为人类可读原因
    """

    url = str(raw_url or "").strip()
    if not url:
        raise EgressDenied("URL cannot be empty")
    if any(ch.isspace() for ch in url):
        raise EgressDenied("URL cannot contain whitespace")
    if not url.startswith("https://"):
        raise EgressDenied("Only https:// URLs are allowed")

    domains = normalize_allowed_domains(allowed_domains)
    if not domains:
        raise EgressDenied(
            "Egress is enabled but no allowed_domains are configured. Add browser.allowed_domains to the config"
        )

    host = extract_host(url)
    if is_private_or_local_host(host):
        raise EgressDenied(f"Blocked local/private host: {host}")

    if not host_matches_allowlist(host, domains):
        raise EgressDenied(f"Host '{host}' is not in browser.allowed_domains")

    if resolve_host is not None:
        try:
            addresses = list(resolve_host(host))
        except OSError as exc:
            raise EgressDenied(f"Host '{host}' could not be resolved") from exc
        for addr in addresses:
            if is_private_or_local_host(addr):
                logger.warning("egress host %s resolved to local/private address %s", host, addr)
                raise EgressDenied(f"Blocked local/private host: {host} (resolves to {addr})")

    return url

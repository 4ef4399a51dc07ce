"""
builtin tool：browser_open（在系统浏览器中打开经过 allowlist 校验的 https URL）。

约束：
- 只做 “打开” 动作：不抓取页面、不做 DOM 自动化；
- URL 必须通过 egress guard（https-only、拒绝本地/私网、allowlist-only）；
- 声明为 mutating + requires_approval：read_only 下被拦截，supervised 下需人工审批。
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from agent_control.core.errors import EgressDenied, ToolError
from agent_control.security.url_guard import HostResolver, normalize_allowed_domains, validate_url
from agent_control.tools.protocol import ToolOutcome, ToolSpec

logger = logging.getLogger(__name__)

Launcher = Callable[[str], Awaitable[None]]

BROWSER_OPEN_SPEC = ToolSpec(
    name="browser_open",
    description=(
        "Open an approved HTTPS URL in the system browser. Security constraints: allowlist-only domains, "
        "no local/private hosts, no scraping."
    ),
    parameters={
        "type": "object",
        "properties": {"url": {"type": "string", "description": "HTTPS URL to open in the system browser"}},
        "required": ["url"],
        "additionalProperties": False,
    },
    requires_approval=True,
    mutating=True,
)


def opener_commands(url: str, *, platform: Optional[str] = None) -> List[List[str]]:
    """返回当前平台可尝试的 opener argv 列表（按优先级）。"""

    plat = platform or sys.platform
    if plat == "darwin":
        return [["open", url]]
    if plat.startswith("win"):
        return [["cmd", "/C", "start", "", url]]
    if plat.startswith("linux"):
        return [["xdg-open", url], ["gio", "open", url], ["sensible-browser", url]]
    return []


async def launch_system_browser(url: str) -> None:
    """
    依次尝试平台 opener，首个成功即返回。

    异常：
    - ToolError：全部失败（携带最后一个错误）或平台不支持
    """

    candidates = opener_commands(url)
    if not candidates:
        raise ToolError(f"browser_open is not supported on this OS ({sys.platform})")

    last_error = ""
    for argv in candidates:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            last_error = f"{argv[0]} not runnable: {exc}"
            continue
        code = await proc.wait()
        if code == 0:
            return
        last_error = f"{argv[0]} exited with status {code}"
    raise ToolError(f"Failed to open URL with system browser launchers. Last error: {last_error}")


class BrowserOpenTool:
    """
    browser_open 工具实现。

    参数：
    - allowed_domains：allowlist（构造时归一化）
    - launcher：可注入的异步 opener（测试用；默认调用系统 opener）
    - resolve_host：可选 DNS 解析器，透传给 egress guard
    """

    def __init__(
        self,
        allowed_domains: Sequence[str],
        *,
        launcher: Optional[Launcher] = None,
        resolve_host: Optional[HostResolver] = None,
    ) -> None:
        self._allowed = normalize_allowed_domains(allowed_domains)
        self._launcher: Launcher = launcher or launch_system_browser
        self._resolve_host = resolve_host

    @property
    def spec(self) -> ToolSpec:
        return BROWSER_OPEN_SPEC

    @property
    def allowed_domains(self) -> List[str]:
        return list(self._allowed)

    async def execute(self, args: Dict[str, Any]) -> ToolOutcome:
        url = args.get("url")
        if not isinstance(url, str):
            return ToolOutcome.failure("Missing 'url' parameter")

        try:
            checked = validate_url(url, self._allowed, resolve_host=self._resolve_host)
        except EgressDenied as exc:
            return ToolOutcome.failure(exc.reason)

        try:
            await self._launcher(checked)
        except ToolError as exc:
            return ToolOutcome.failure(f"Failed to open system browser: {exc}")
        except OSError as exc:
            return ToolOutcome.failure(f"Failed to open system browser: {exc}")

        logger.info("browser_open opened %s", checked)
        return ToolOutcome.ok(f"Opened in system browser: {checked}")

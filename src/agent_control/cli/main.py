"""
agent-control CLI（serve / check-url / validate-config）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- 除 `serve` 外，stdout 输出机器可读 JSON；失败时也输出 JSON
- `main()` 返回 exit code（不直接 sys.exit，便于测试）
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from agent_control.config.loader import AgentControlConfig, load_config
from agent_control.core.errors import EgressDenied
from agent_control.security.url_guard import validate_url

EXIT_OK = 0
EXIT_DENIED = 2
EXIT_CONFIG_ERROR = 3


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def configure_logging(level: str) -> None:
    """按配置设置 root logger（只在 CLI 入口调用）。"""

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(paths: List[str]) -> AgentControlConfig:
    return load_config([Path(p).expanduser() for p in paths])


def _config_error(exc: Exception, *, pretty: bool) -> int:
    _dump_json_to_stdout(
        {"ok": False, "error": {"code": "CONFIG_INVALID", "message": str(exc)}},
        pretty=pretty,
    )
    return EXIT_CONFIG_ERROR


def _handle_check_url(args: argparse.Namespace) -> int:
    try:
        url = validate_url(args.url, list(args.allow or []))
    except EgressDenied as exc:
        _dump_json_to_stdout({"ok": False, "reason": exc.reason}, pretty=args.pretty)
        return EXIT_DENIED
    _dump_json_to_stdout({"ok": True, "url": url}, pretty=args.pretty)
    return EXIT_OK


def _handle_validate_config(args: argparse.Namespace) -> int:
    try:
        cfg = _load(args.config)
    except (FileNotFoundError, ValueError, ValidationError) as exc:
        return _config_error(exc, pretty=args.pretty)
    _dump_json_to_stdout({"ok": True, "config": cfg.model_dump(mode="json")}, pretty=args.pretty)
    return EXIT_OK


def _handle_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from agent_control.gateway.app import create_app

    try:
        cfg = _load(args.config)
    except (FileNotFoundError, ValueError, ValidationError) as exc:
        return _config_error(exc, pretty=False)

    configure_logging(cfg.logging.level)
    host = args.host or cfg.gateway.host
    port = int(args.port or cfg.gateway.port)
    if cfg.gateway.require_pairing and not cfg.gateway.paired_tokens():
        logging.getLogger(__name__).warning(
            "pairing is required but %s is empty; every connection will be rejected",
            cfg.gateway.paired_tokens_env,
        )
    uvicorn.run(create_app(cfg), host=host, port=port, log_level=cfg.logging.level.lower())
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-control", description="Agent action-control runtime")
    root_sub = parser.add_subparsers(dest="command", required=True)

    serve = root_sub.add_parser("serve", help="Run the session gateway (uvicorn)")
    serve.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
    serve.add_argument("--host", default=None, help="Bind host (default: gateway.host).")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: gateway.port).")

    check = root_sub.add_parser("check-url", help="Validate a URL against the egress guard")
    check.add_argument("url", help="URL to validate")
    check.add_argument("--allow", action="append", default=[], help="Allowed domain (repeatable; '*' = any public host).")
    check.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    validate = root_sub.add_parser("validate-config", help="Load, merge and validate config overlays")
    validate.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
    validate.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    返回：
    - int：exit code
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        return 2 if code is None else int(code)

    if args.command == "check-url":
        return _handle_check_url(args)
    if args.command == "validate-config":
        return _handle_validate_config(args)
    if args.command == "serve":
        return _handle_serve(args)
    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())

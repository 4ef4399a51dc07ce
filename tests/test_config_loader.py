from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from agent_control.config.defaults import load_default_config_dict
from agent_control.config.loader import AgentControlConfig, AutonomyLevel, load_config, load_config_dicts


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_overlays() -> None:
    cfg = load_config([])
    assert cfg.autonomy.level == AutonomyLevel.SUPERVISED
    assert cfg.autonomy.max_actions_per_hour == 20
    assert cfg.loop.max_tool_iterations == 10
    assert cfg.gateway.require_pairing is True
    assert cfg.browser.enabled is False


def test_embedded_defaults_match_model_defaults() -> None:
    from_asset = AgentControlConfig.model_validate(load_default_config_dict())
    assert from_asset == AgentControlConfig()


def test_overlays_deep_merge_in_order(tmp_path: Path) -> None:
    base = _write(tmp_path / "base.yaml", "autonomy:\n  level: full\n  max_actions_per_hour: 5\nbrowser:\n  allowed_domains: [a.com]\n")
    overlay = _write(tmp_path / "overlay.yaml", "autonomy:\n  max_actions_per_hour: null\nbrowser:\n  allowed_domains: [b.com]\n")

    cfg = load_config([base, overlay])
    assert cfg.autonomy.level == AutonomyLevel.FULL
    assert cfg.autonomy.max_actions_per_hour is None
    # list 整体覆盖
    assert cfg.browser.allowed_domains == ["b.com"]


def test_unknown_keys_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path / "bad.yaml", "autonomy:\n  levle: full\n")
    with pytest.raises(ValidationError):
        load_config([path])


def test_invalid_autonomy_level_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"autonomy": {"level": "yolo"}}])


def test_negative_budget_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"autonomy": {"max_actions_per_hour": -1}}])


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config([tmp_path / "missing.yaml"])


def test_non_mapping_root(tmp_path: Path) -> None:
    path = _write(tmp_path / "list.yaml", "- a\n- b\n")
    with pytest.raises(ValueError):
        load_config([path])


def test_empty_file_is_ignored(tmp_path: Path) -> None:
    path = _write(tmp_path / "empty.yaml", "")
    assert load_config([path]) == load_config([])


def test_logging_level_case_insensitive() -> None:
    cfg = load_config_dicts([{"logging": {"level": "debug"}}])
    assert cfg.logging.level == "DEBUG"


def test_paired_tokens_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AC_TEST_TOKENS", " t1 , ,t2")
    cfg = load_config_dicts([{"gateway": {"paired_tokens_env": "AC_TEST_TOKENS"}}])
    assert cfg.gateway.paired_tokens() == ["t1", "t2"]


def test_retry_section() -> None:
    cfg = load_config_dicts([{"loop": {"retry": {"max_retries": 0}, "excluded_tools": ["shell"]}}])
    assert cfg.loop.retry.max_retries == 0
    assert cfg.loop.retry.base_delay_sec == 0.5
    assert cfg.loop.excluded_tools == ["shell"]

"""Tests for PrunerConfig and related dataclasses."""

from __future__ import annotations

import pytest

from agent_pruning import load_config
from agent_pruning.config import (
    DEFAULT_NUDGE_TEXT,
    DEFAULT_PLACEHOLDER,
    AnalysisConfig,
    NudgeConfig,
    PrunerConfig,
    StrategyConfig,
    ToolNames,
)


def test_strategy_defaults() -> None:
    s = StrategyConfig()
    assert s.on_idle is True
    assert s.on_tool is True


def test_analysis_defaults() -> None:
    a = AnalysisConfig()
    assert a.min_messages == 3
    assert a.transcript_limit == 100


def test_nudge_defaults() -> None:
    n = NudgeConfig()
    assert n.frequency == 10
    assert n.text == DEFAULT_NUDGE_TEXT


def test_pruner_config_defaults() -> None:
    c = PrunerConfig()
    assert c.enabled is True
    assert c.protected_tools == ["task"]
    assert c.placeholder == DEFAULT_PLACEHOLDER
    assert c.pruning_summary == "detailed"
    assert c.model is None


def test_protected_includes_pruning_tools() -> None:
    c = PrunerConfig(tools=ToolNames(prune="prune_ctx"))
    assert c.protected == {"task", "prune_ctx", "squash", "discard"}


def test_from_dict_full() -> None:
    data = {
        "enabled": False,
        "protected_tools": ["task", "todowrite"],
        "model": "openai/gpt-5-mini",
        "pruning_summary": "minimal",
        "strategies": {"on_idle": False},
        "nudge": {"frequency": 0, "text": "prune now"},
        "batch": {"tool_name": "multi", "child_prefix": "sub_"},
    }
    c = PrunerConfig.from_dict(data)
    assert c.enabled is False
    assert c.protected_tools == ["task", "todowrite"]
    assert c.model == "openai/gpt-5-mini"
    assert c.pruning_summary == "minimal"
    assert c.strategies.on_idle is False
    assert c.strategies.on_tool is True
    assert c.nudge.frequency == 0
    assert c.nudge.text == "prune now"
    assert c.batch.tool_name == "multi"
    assert c.batch.child_prefix == "sub_"


def test_from_dict_empty() -> None:
    c = PrunerConfig.from_dict({})
    assert c.enabled is True
    assert c.analysis.min_messages == 3
    assert c.skip_providers == ["github-copilot", "anthropic"]


def test_from_dict_rejects_unknown_summary_level() -> None:
    with pytest.raises(ValueError, match="pruning_summary"):
        PrunerConfig.from_dict({"pruning_summary": "verbose"})


def test_bundled_config_matches_defaults() -> None:
    c = PrunerConfig.from_dict(load_config())
    d = PrunerConfig()
    assert c.protected_tools == d.protected_tools
    assert c.nudge == d.nudge
    assert c.batch == d.batch
    assert c.tools == d.tools
    assert c.state_dir == d.state_dir


def test_load_config_custom_path(tmp_path) -> None:
    path = tmp_path / "CONFIG.yaml"
    path.write_text("enabled: false\nnudge:\n  frequency: 3\n")
    c = PrunerConfig.from_dict(load_config(path))
    assert c.enabled is False
    assert c.nudge.frequency == 3

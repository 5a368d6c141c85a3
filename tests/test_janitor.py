"""Tests for transcript collection, batch expansion and the Janitor pass."""

from __future__ import annotations

import asyncio
import logging

import pytest

from agent_pruning.analysis.janitor import Janitor, collect_tool_calls, expand_batches, positional_call_ids
from agent_pruning.analysis.model_selector import ModelSelection
from agent_pruning.config import AnalysisConfig, PrunerConfig
from agent_pruning.errors import DecisionCallError
from agent_pruning.notification import Notifier
from agent_pruning.state.store import PruneStateStore
from agent_pruning.state.tool_cache import ToolParameterCache
from agent_pruning.state.types import (
    MessageInfo,
    MessagePart,
    ModelInfo,
    PruneDecision,
    ToolState,
    ToolStatus,
    TranscriptMessage,
)
from agent_pruning.wire.rewriter import RequestRewriter
from agent_pruning.wire.tracker import NudgeTracker
from conftest import text_msg, tool_msg


class FakeModel:
    def __init__(self, ids: list[str] | None = None, error: Exception | None = None) -> None:
        self.ids = ids or []
        self.error = error
        self.prompts: list[str] = []
        self.closed = 0

    @property
    def info(self) -> ModelInfo:
        return ModelInfo(provider_id="openai", model_id="test")

    async def decide(self, prompt: str) -> PruneDecision:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return PruneDecision(pruned_tool_call_ids=self.ids, reasoning="superseded")

    async def aclose(self) -> None:
        self.closed += 1


def _selector(model: FakeModel, failed: ModelInfo | None = None):
    def select(current=None, config_model=None, *, skip_providers=None):
        if failed is not None:
            return ModelSelection(model, model.info, "fallback", "Using openai/test", failed)
        return ModelSelection(model, model.info, "config", "test")
    return select


def _five_call_session() -> list[TranscriptMessage]:
    return [
        text_msg("m1", "refactor the parser"),
        tool_msg("m2",
                 ("a", "read", {"filePath": "parser.py"}, "x" * 400),
                 ("b", "grep", {"pattern": "parse", "path": "src"}, "y" * 40)),
        tool_msg("m3",
                 ("c", "read", {"filePath": "lexer.py"}, "z" * 40),
                 ("d", "bash", {"command": "pytest"}, "ok"),
                 ("e", "task", {"prompt": "review"}, "looks good")),
        text_msg("m4", "done", role="assistant"),
    ]


def _janitor(host, config, model: FakeModel, **kw) -> tuple[Janitor, PruneStateStore]:
    store = PruneStateStore(config.state_dir)
    janitor = Janitor(
        host, store, ToolParameterCache(), config,
        tracker=kw.get("tracker"),
        notifier=Notifier(host),
        selector=_selector(model, kw.get("failed")),
    )
    return janitor, store


def test_collect_records_in_emission_order() -> None:
    calls = collect_tool_calls(_five_call_session())
    assert calls.order == ["a", "b", "c", "d", "e"]
    assert calls.records["a"].parameters == {"filePath": "parser.py"}


def test_positional_ids_count_same_name_calls() -> None:
    positional = positional_call_ids(_five_call_session())
    assert positional["read:0"] == "a"
    assert positional["read:1"] == "c"
    assert positional["task:0"] == "e"


def test_positional_ids_skip_unfinished_calls() -> None:
    msg = TranscriptMessage(
        info=MessageInfo(id="m1", role="assistant"),
        parts=[
            MessagePart(type="tool", call_id="p", tool="read", state=ToolState(status=ToolStatus.RUNNING)),
            MessagePart(type="tool", call_id="q", tool="read",
                        state=ToolState(status=ToolStatus.ERROR, error="missing")),
        ],
    )
    assert positional_call_ids([msg]) == {"read:0": "q"}


def test_collect_prefers_cached_parameters() -> None:
    cache = ToolParameterCache()
    cache.put("A", "read", {"filePath": "cached.py"})
    calls = collect_tool_calls(_five_call_session(), cache)
    assert calls.records["a"].parameters == {"filePath": "cached.py"}


def test_collect_error_output_used() -> None:
    msg = TranscriptMessage(
        info=MessageInfo(id="m1", role="assistant"),
        parts=[MessagePart(type="tool", call_id="x", tool="bash",
                           state=ToolState(status=ToolStatus.ERROR, error="boom"))],
    )
    assert collect_tool_calls([msg]).records["x"].output_text == "boom"


def test_prefix_batch_grouping() -> None:
    msgs = [tool_msg("m1",
                     ("call_batch", "batch", {}, "ran 2"),
                     ("prt_1", "read", {}, "one"),
                     ("prt_2", "read", {}, "two"),
                     ("call_x", "read", {}, "three"),
                     ("prt_3", "read", {}, "orphan"))]
    calls = collect_tool_calls(msgs)
    assert calls.batches == {"call_batch": ["prt_1", "prt_2"]}
    assert calls.records["prt_3"].batch_parent_id is None


def test_explicit_parent_overrides_prefix() -> None:
    msgs = [tool_msg("m1",
                     ("b1", "batch", {}, "ran"),
                     ("child", "read", {}, "one"),
                     ("prt_9", "read", {}, "two"),
                     parents={"child": "b1"})]
    calls = collect_tool_calls(msgs)
    assert calls.batches == {"b1": ["child"]}


def test_expand_batches_is_pure() -> None:
    batches = {"p": ["c1", "c2"]}
    assert expand_batches(["x", "P"], batches) == ["x", "p", "c1", "c2"]
    assert expand_batches(["x", "P"], batches) == ["x", "p", "c1", "c2"]
    assert batches == {"p": ["c1", "c2"]}


def test_analysis_prunes_decided_ids(host, config) -> None:
    host.add("s1", _five_call_session())
    model = FakeModel(["a", "b"])
    janitor, store = _janitor(host, config, model)

    result = asyncio.run(janitor.run("s1"))

    assert result.pruned_count == 2
    assert result.newly_pruned_ids == ["a", "b"]
    assert result.tokens_saved == 110
    assert store.get("s1") == ["a", "b"]
    assert store.state("s1").stats.total_tools_pruned == 2
    assert len(host.notifications) == 1
    assert "▣ Context pruning" in host.notifications[0][1]


def test_second_pass_only_adds(host, config) -> None:
    host.add("s1", _five_call_session())
    model = FakeModel(["a", "b"])
    janitor, store = _janitor(host, config, model)
    asyncio.run(janitor.run("s1"))

    model.ids = ["B", "c"]
    result = asyncio.run(janitor.run("s1"))

    assert result.newly_pruned_ids == ["c"]
    assert store.get("s1") == ["a", "b", "c"]
    assert store.state("s1").stats.total_tools_pruned == 3
    assert '"c"' in model.prompts[1]
    assert '"a"' not in model.prompts[1]


def test_protected_and_unknown_ids_ignored(host, config) -> None:
    host.add("s1", _five_call_session())
    janitor, store = _janitor(host, config, FakeModel(["e", "zzz", "d"]))
    result = asyncio.run(janitor.run("s1"))
    assert result.newly_pruned_ids == ["d"]
    assert "e" not in store.get("s1")


def test_batch_parent_expands_to_children(host, config) -> None:
    host.add("s1", [
        text_msg("m1", "read both"),
        tool_msg("m2",
                 ("call_batch", "batch", {}, "ran 2"),
                 ("prt_1", "read", {"filePath": "a"}, "one"),
                 ("prt_2", "read", {"filePath": "b"}, "two"),
                 ("call_x", "read", {"filePath": "c"}, "three")),
        text_msg("m3", "ok", role="assistant"),
    ])
    janitor, store = _janitor(host, config, FakeModel(["call_batch"]))
    asyncio.run(janitor.run("s1"))
    assert store.get("s1") == ["call_batch", "prt_1", "prt_2"]


def test_too_few_messages_skips_model(host, config) -> None:
    host.add("s1", [text_msg("m1", "hi"), text_msg("m2", "hello", role="assistant")])
    model = FakeModel(["a"])
    janitor, _store = _janitor(host, config, model)
    assert asyncio.run(janitor.run("s1")) is None
    assert model.prompts == []


def test_idle_failure_is_swallowed(host, config) -> None:
    host.add("s1", _five_call_session())
    janitor, store = _janitor(host, config, FakeModel(error=DecisionCallError("bad json")))
    assert asyncio.run(janitor.run("s1")) is None
    assert store.get("s1") == []
    assert host.notifications == []


def test_tool_failure_propagates(host, config) -> None:
    host.add("s1", _five_call_session())
    janitor, _store = _janitor(host, config, FakeModel(error=DecisionCallError("bad json")))
    with pytest.raises(DecisionCallError):
        asyncio.run(janitor.run_for_tool("s1", "cleanup"))


def test_successful_prune_resets_tracker(host, config) -> None:
    host.add("s1", _five_call_session())
    tracker = NudgeTracker()
    for i in range(5):
        tracker.observe(f"r{i}")
    janitor, _store = _janitor(host, config, FakeModel(["a"]), tracker=tracker)
    asyncio.run(janitor.run("s1"))
    assert tracker.tool_result_count == 0


def test_no_candidates_has_no_side_effects(host, config) -> None:
    host.add("s1", _five_call_session())
    model = FakeModel(["a"])
    janitor, store = _janitor(host, config, model)
    store.set("s1", ["a", "b", "c", "d"])
    assert asyncio.run(janitor.run("s1")) is None
    assert store.positional_ids("s1") == {}
    assert model.prompts == []


def test_model_closed_after_each_pass(host, config) -> None:
    host.add("s1", _five_call_session())
    model = FakeModel(["a"])
    janitor, _store = _janitor(host, config, model)
    asyncio.run(janitor.run("s1"))
    asyncio.run(janitor.run("s1"))
    assert model.closed == 2


def test_model_closed_when_decision_fails(host, config) -> None:
    host.add("s1", _five_call_session())
    model = FakeModel(error=DecisionCallError("bad json"))
    janitor, _store = _janitor(host, config, model)
    assert asyncio.run(janitor.run("s1")) is None
    assert model.closed == 1


def test_fallback_model_is_logged(host, config, caplog) -> None:
    host.add("s1", _five_call_session())
    failed = ModelInfo(provider_id="anthropic", model_id="claude-haiku")
    janitor, _store = _janitor(host, config, FakeModel(["a"]), failed=failed)
    with caplog.at_level(logging.WARNING, logger="agent_pruning.analysis.janitor"):
        asyncio.run(janitor.run("s1"))
    assert "anthropic/claude-haiku unavailable" in caplog.text
    assert "openai/test" in caplog.text


def test_positional_map_survives_transcript_limit(host, tmp_path) -> None:
    cfg = PrunerConfig(
        state_dir=str(tmp_path), protected_tools=[], placeholder="[pruned]",
        analysis=AnalysisConfig(transcript_limit=6),
    )
    early = [tool_msg(f"m{i}", (f"e{i}", "read", {"filePath": f"{i}.py"}, f"E{i}")) for i in range(3)]
    filler = [text_msg(f"f{i}", f"step {i}", role="assistant") for i in range(5)]
    late = tool_msg("m9", ("late", "read", {"filePath": "late.py"}, "LATE"))
    host.add("s1", [text_msg("m0", "audit the repo"), *early, *filler, late])
    janitor, store = _janitor(host, cfg, FakeModel(["late"]))

    result = asyncio.run(janitor.run("s1"))
    assert result.newly_pruned_ids == ["late"]

    outputs = ["E0", "E1", "E2", "LATE"]
    body = {"contents": [{"role": "user", "parts": [
        {"functionResponse": {"name": "read", "response": {"output": out}}} for out in outputs
    ]}]}
    RequestRewriter(store, NudgeTracker(), ToolParameterCache(), cfg).process(body, "s1")
    parts = body["contents"][0]["parts"]
    assert [p["functionResponse"]["response"]["output"] for p in parts] == ["E0", "E1", "E2", "[pruned]"]

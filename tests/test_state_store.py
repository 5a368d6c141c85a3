"""Tests for PruneStateStore persistence and the session state record."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import pytest

from agent_pruning.errors import PersistenceError
from agent_pruning.state.store import PruneStateStore
from agent_pruning.state.types import PruneStats, SessionPruneState, SquashRange, normalize_id


def test_normalize_id_is_idempotent() -> None:
    assert normalize_id("  Call_ABC ") == "call_abc"
    assert normalize_id(normalize_id("Call_ABC")) == "call_abc"


def test_unknown_session_is_empty(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    assert store.get("s1") == []
    assert store.state("s1").stats.total_tools_pruned == 0


def test_set_normalizes_and_dedups(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    store.set("s1", ["A", "a", " b "])
    assert store.get("s1") == ["a", "b"]


def test_persists_and_restores(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    store.set("s1", ["a", "b"], stats=PruneStats(total_tools_pruned=2, total_tokens_saved=40))

    restored = PruneStateStore(tmp_path)
    assert restored.get("s1") == ["a", "b"]
    assert restored.state("s1").stats.total_tokens_saved == 40


def test_persisted_record_uses_camel_case(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    store.set("s1", ["a"])
    data = json.loads((tmp_path / "s1.json").read_text())
    assert data["sessionId"] == "s1"
    assert data["prunedIds"] == ["a"]
    assert "totalToolsPruned" in data["stats"]


def test_squash_ranges_round_trip(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    squash = SquashRange(
        anchor_message_id="m2", topic="setup", summary_text="did setup",
        contained_tool_ids=["t1"], contained_message_ids=["m2", "m3"],
    )
    store.set("s1", ["t1"], squash_ranges=[squash], squashed_message_ids=["m2", "m3"])

    state = PruneStateStore(tmp_path).state("s1")
    assert state.squash_ranges == [squash]
    assert state.squashed_message_ids == ["m2", "m3"]


def test_corrupt_file_treated_as_empty(tmp_path) -> None:
    (tmp_path / "s1.json").write_text("{not json")
    store = PruneStateStore(tmp_path)
    assert store.get("s1") == []


def test_sessions_include_disk(tmp_path) -> None:
    PruneStateStore(tmp_path).set("old", ["x"])
    store = PruneStateStore(tmp_path)
    store.set("new", ["y"])
    assert store.sessions() == ["new", "old"]


def test_no_state_dir_keeps_memory_only() -> None:
    store = PruneStateStore(None)
    store.set("s1", ["a"])
    assert store.get("s1") == ["a"]
    assert store.sessions() == ["s1"]


def test_unsafe_session_id_stays_in_dir(tmp_path) -> None:
    store = PruneStateStore(tmp_path / "state")
    store.set("../escape", ["a"])
    assert (tmp_path / "state" / ".._escape.json").is_file()
    assert not (tmp_path / "escape.json").exists()


def test_save_failure_keeps_memory_state(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    with patch("agent_pruning.state.store.os.replace", side_effect=OSError("disk full")):
        store.set("s1", ["a"])
    assert store.get("s1") == ["a"]
    assert not (tmp_path / "s1.json").exists()


def test_save_raises_persistence_error(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    with patch("agent_pruning.state.store.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(PersistenceError):
            store.save(SessionPruneState(session_id="s1"))


def test_merge_is_ordered_union() -> None:
    state = SessionPruneState(session_id="s1", pruned_ids=["a", "b"])
    assert state.merge(["B", "c"]) == ["a", "b", "c"]


def test_lock_is_per_session(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    assert store.lock("s1") is store.lock("s1")
    assert store.lock("s1") is not store.lock("s2")


def test_concurrent_merges_are_monotonic(tmp_path) -> None:
    store = PruneStateStore(tmp_path)

    async def add(ids: list[str]) -> None:
        async with store.lock("s1"):
            fresh = store.state("s1")
            await asyncio.sleep(0)
            store.set("s1", fresh.merge(ids))

    async def main() -> None:
        await asyncio.gather(add(["a"]), add(["b"]), add(["c"]))

    asyncio.run(main())
    assert sorted(store.get("s1")) == ["a", "b", "c"]


def test_positional_ids(tmp_path) -> None:
    store = PruneStateStore(tmp_path)
    store.set_positional_ids("s1", {"read:0": "call_1"})
    mapping = store.positional_ids("s1")
    mapping["read:1"] = "x"
    assert store.positional_ids("s1") == {"read:0": "call_1"}

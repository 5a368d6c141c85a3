"""Analysis orchestrator — decides which tool outputs are obsolete."""

from __future__ import annotations

import logging
from typing import Callable, NamedTuple

from ..config import PrunerConfig
from ..host import SessionHost
from ..notification import Notifier
from ..state.store import PruneStateStore
from ..state.tool_cache import ToolParameterCache
from ..state.types import (
    ModelInfo,
    NotificationData,
    PruningResult,
    ToolCallRecord,
    ToolStatus,
    TranscriptMessage,
    normalize_id,
)
from ..tokens import estimate_tokens
from ..wire.tracker import NudgeTracker
from .model_selector import ModelSelection, select_model
from .prompts import build_analysis_prompt

log = logging.getLogger(__name__)


class CollectedCalls(NamedTuple):
    records: dict[str, ToolCallRecord]
    order: list[str]
    batches: dict[str, list[str]]


def collect_tool_calls(
    messages: list[TranscriptMessage],
    cache: ToolParameterCache | None = None,
    *,
    batch_tool: str = "batch",
    child_prefix: str = "prt_",
) -> CollectedCalls:
    """Walk transcript tool parts in emission order.

    Batch children come from ``parent_call_id`` when the host provides it on
    any part. Otherwise a ``batch_tool`` call opens a group and following ids
    starting with ``child_prefix`` join it until a non-prefixed id closes it.
    """
    parts = [
        p for m in messages for p in m.parts
        if p.type == "tool" and p.call_id
    ]
    explicit = any(p.parent_call_id for p in parts)
    prefix = child_prefix.lower()

    records: dict[str, ToolCallRecord] = {}
    order: list[str] = []
    batches: dict[str, list[str]] = {}
    current_batch: str | None = None

    for part in parts:
        nid = normalize_id(part.call_id)
        if nid in records:
            continue
        tool = part.tool or "unknown"
        state = part.state

        cached = cache.get(nid) if cache is not None else None
        params = cached.parameters if cached else part.parameters
        if params is None and state is not None and isinstance(state.input, dict):
            params = state.input

        output = ""
        if state is not None and state.status == ToolStatus.COMPLETED:
            output = state.output or ""
        elif state is not None and state.status == ToolStatus.ERROR:
            output = state.error or ""

        parent: str | None = None
        if explicit:
            if part.parent_call_id:
                parent = normalize_id(part.parent_call_id)
                batches.setdefault(parent, []).append(nid)
            elif tool == batch_tool:
                batches.setdefault(nid, [])
        elif tool == batch_tool:
            current_batch = nid
            batches[nid] = []
        elif current_batch and nid.startswith(prefix):
            parent = current_batch
            batches[current_batch].append(nid)
        elif current_batch:
            log.debug("Batch %s closed with %d children", current_batch, len(batches[current_batch]))
            current_batch = None

        records[nid] = ToolCallRecord(
            id=nid,
            tool_name=tool,
            parameters=params if isinstance(params, dict) else None,
            output_text=output,
            batch_parent_id=parent,
        )
        order.append(nid)

    return CollectedCalls(records, order, batches)


def positional_call_ids(messages: list[TranscriptMessage]) -> dict[str, str]:
    """Map ``<name>:<n>`` keys to call-ids for id-less wire formats.

    n counts finished calls with the same tool name from the start of the
    conversation, matching how the parts format numbers its responses. Only
    meaningful over the whole transcript: a truncated head shifts every key.
    """
    positional: dict[str, str] = {}
    counters: dict[str, int] = {}
    seen: set[str] = set()
    for m in messages:
        for part in m.parts:
            if part.type != "tool" or not part.call_id or part.state is None:
                continue
            nid = normalize_id(part.call_id)
            if nid in seen or part.state.status not in (ToolStatus.COMPLETED, ToolStatus.ERROR):
                continue
            seen.add(nid)
            fname = (part.tool or "unknown").lower()
            n = counters.get(fname, 0)
            counters[fname] = n + 1
            positional[f"{fname}:{n}"] = nid
    return positional


def expand_batches(ids: list[str] | set[str], batches: dict[str, list[str]]) -> list[str]:
    """Add every recorded child of each batch parent in ``ids``.

    Pure: same inputs, same output. Order is input order with children
    following their parent.
    """
    out: list[str] = []
    seen: set[str] = set()
    for raw in ids:
        nid = normalize_id(raw)
        for item in [nid, *batches.get(nid, [])]:
            if item not in seen:
                seen.add(item)
                out.append(item)
    return out


class Janitor:
    """Runs analysis passes and commits their result to the state store."""

    def __init__(
        self,
        host: SessionHost,
        store: PruneStateStore,
        cache: ToolParameterCache,
        config: PrunerConfig,
        *,
        tracker: NudgeTracker | None = None,
        notifier: Notifier | None = None,
        model_cache: dict[str, ModelInfo] | None = None,
        selector: Callable[..., ModelSelection] = select_model,
    ) -> None:
        self._host = host
        self._store = store
        self._cache = cache
        self._config = config
        self._tracker = tracker
        self._notifier = notifier
        self._model_cache = model_cache if model_cache is not None else {}
        self._select = selector

    async def run(self, session_id: str) -> PruningResult | None:
        """Idle-triggered pass. Never raises; failures are logged."""
        try:
            return await self.analyze(session_id)
        except Exception:
            log.exception("Analysis failed for %s", session_id)
            return None

    async def run_for_tool(self, session_id: str, reason: str | None = None) -> PruningResult | None:
        """On-demand pass for the pruning tool. Errors propagate."""
        log.info("Pruning requested for %s: %s", session_id, reason or "no reason given")
        return await self.analyze(session_id)

    async def analyze(self, session_id: str) -> PruningResult | None:
        cfg = self._config
        log.info("Starting analysis for %s", session_id)
        # Whole transcript for the positional map, tail window for the prompt.
        transcript = await self._host.messages(session_id)
        limit = cfg.analysis.transcript_limit
        messages = transcript[-limit:] if limit else transcript
        if len(messages) < cfg.analysis.min_messages:
            log.debug("Too few messages (%d) in %s, skipping", len(messages), session_id)
            return None

        calls = collect_tool_calls(
            messages, self._cache,
            batch_tool=cfg.batch.tool_name, child_prefix=cfg.batch.child_prefix,
        )
        protected = cfg.protected

        already = set(self._store.get(session_id))
        candidates = [
            cid for cid in calls.order
            if cid not in already and calls.records[cid].tool_name not in protected
        ]
        if not candidates:
            log.debug("No prunable tool calls in %s", session_id)
            return None

        selection = self._select(
            await self._session_model(session_id),
            cfg.model,
            skip_providers=cfg.skip_providers,
        )
        if selection.failed_model is not None:
            log.warning("Analysis model %s unavailable, fell back to %s: %s",
                        selection.failed_model, selection.info, selection.reason)
        log.info("Analyzing %d candidates in %s with %s (%s)",
                 len(candidates), session_id, selection.info, selection.source)

        prompt = build_analysis_prompt(candidates, messages, calls.records, protected)
        try:
            decision = await selection.model.decide(prompt)
        finally:
            await selection.model.aclose()

        candidate_set = set(candidates)
        decided = [normalize_id(i) for i in decision.pruned_tool_call_ids]
        ignored = [i for i in decided if i not in candidate_set]
        if ignored:
            log.debug("Ignoring %d non-candidate ids from decision: %s", len(ignored), ignored)
        expanded = [
            cid for cid in expand_batches([i for i in decided if i in candidate_set], calls.batches)
            if cid not in calls.records or calls.records[cid].tool_name not in protected
        ]
        return await self._commit(
            session_id, expanded, calls, decision.reasoning, positional_call_ids(transcript),
        )

    async def _commit(
        self,
        session_id: str,
        expanded: list[str],
        calls: CollectedCalls,
        reasoning: str,
        positional: dict[str, str],
    ) -> PruningResult:
        async with self._store.lock(session_id):
            self._store.set_positional_ids(session_id, positional)
            fresh = self._store.state(session_id)
            known = set(fresh.pruned_ids)
            delta = [cid for cid in expanded if cid not in known]
            tokens = sum(
                estimate_tokens(calls.records[cid].output_text)
                for cid in delta if cid in calls.records
            )
            stats = fresh.stats.model_copy(update={
                "total_tools_pruned": fresh.stats.total_tools_pruned + len(delta),
                "total_tokens_saved": fresh.stats.total_tokens_saved + tokens,
            })
            state = self._store.set(session_id, fresh.merge(expanded), stats=stats)

        log.info("Analysis complete for %s: %d new, %d total, ~%d tokens saved. %s",
                 session_id, len(delta), len(state.pruned_ids), tokens, reasoning)

        metadata = {cid: calls.records[cid] for cid in delta if cid in calls.records}
        result = PruningResult(
            session_id=session_id,
            pruned_count=len(delta),
            newly_pruned_ids=delta,
            tokens_saved=tokens,
            reasoning=reasoning,
            tool_metadata=metadata,
        )
        if delta:
            if self._tracker is not None:
                self._tracker.reset()
            if self._notifier is not None:
                await self._notifier.pruned(session_id, NotificationData(
                    pruned_count=len(delta),
                    tokens_saved=tokens,
                    pruned_ids=delta,
                    tool_metadata=metadata,
                    session_stats=state.stats,
                ))
        return result

    async def _session_model(self, session_id: str) -> ModelInfo | None:
        cached = self._model_cache.get(session_id)
        if cached is not None:
            return cached
        try:
            info = await self._host.get_session(session_id)
        except Exception as exc:
            log.debug("Could not read session %s: %s", session_id, exc)
            return None
        return info.model

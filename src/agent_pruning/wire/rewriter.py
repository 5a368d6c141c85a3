"""Outbound request rewriter — placeholders for pruned tool results."""

from __future__ import annotations

import logging
from typing import NamedTuple

from ..config import PrunerConfig
from ..state.store import PruneStateStore
from ..state.tool_cache import ToolParameterCache
from .formats import WireFormat, detect_format
from .tracker import NudgeTracker

log = logging.getLogger(__name__)


class RewriteResult(NamedTuple):
    format: str | None
    replaced: int = 0
    new_results: int = 0
    nudged: bool = False
    instructed: bool = False
    skipped: bool = False

    @property
    def modified(self) -> bool:
        return bool(self.replaced or self.nudged or self.instructed)


class RequestRewriter:
    """Rewrites one decoded request body in place.

    Everything here is synchronous: prune state is read and the body rewritten
    without yielding to the event loop, so a request never sees a half-updated
    view.
    """

    def __init__(
        self,
        store: PruneStateStore,
        tracker: NudgeTracker,
        cache: ToolParameterCache,
        config: PrunerConfig,
        subagent_sessions: set[str] | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._cache = cache
        self._config = config
        self._subagents = subagent_sessions if subagent_sessions is not None else set()

    def pruned_view(self, session_id: str | None) -> tuple[set[str], dict[str, str]]:
        """Pruned ids (and parts-format mapping) visible to one request.

        With no session, the union over all known non-subagent sessions.
        Call-ids are globally unique, so the union is safe.
        """
        if session_id is not None:
            return set(self._store.get(session_id)), self._store.positional_ids(session_id)
        pruned: set[str] = set()
        for sid in self._store.sessions():
            if sid in self._subagents:
                continue
            pruned.update(self._store.get(sid))
        return pruned, {}

    def process(self, body: object, session_id: str | None = None, *, subagent: bool = False) -> RewriteResult:
        if not self._config.enabled:
            return RewriteResult(format=None, skipped=True)
        fmt = detect_format(body)
        if fmt is None:
            return RewriteResult(format=None, skipped=True)
        if subagent:
            log.debug("Skipping subagent session %s", session_id)
            return RewriteResult(format=fmt.name, skipped=True)
        pruned, positional = self.pruned_view(session_id)
        return self.rewrite(fmt, body, pruned, positional, session_id=session_id)  # type: ignore[arg-type]

    def rewrite(
        self,
        fmt: WireFormat,
        body: dict,
        pruned_ids: set[str],
        positional_ids: dict[str, str] | None = None,
        *,
        session_id: str | None = None,
    ) -> RewriteResult:
        cfg = self._config
        fmt.cache_parameters(body, self._cache)
        new_results = fmt.count_tool_results(body, self._tracker, session_id)

        replaced = 0
        if pruned_ids:
            replaced = fmt.replace_pruned(body, pruned_ids, cfg.placeholder, positional_ids)
            if replaced:
                log.info("Replaced %d pruned tool outputs (%s format)", replaced, fmt.name)

        nudged = False
        entries = fmt.entries(body)
        already = bool(entries) and fmt.is_nudge_entry(entries[-1], cfg.nudge.text)
        if self._tracker.should_nudge(cfg.nudge.frequency) and not already:
            fmt.append_nudge(body, cfg.nudge.text)
            nudged = True
            log.debug("Appended nudge after %d tool results", self._tracker.tool_result_count)

        instructed = False
        if cfg.instruction:
            instructed = fmt.inject_instruction(body, cfg.instruction, cfg.nudge.text)

        return RewriteResult(
            format=fmt.name,
            replaced=replaced,
            new_results=new_results,
            nudged=nudged,
            instructed=instructed,
        )

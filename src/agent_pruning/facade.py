"""Facade — single entry point for wiring agent_pruning into a host."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

import httpx

from .analysis.janitor import Janitor
from .analysis.model_selector import ModelSelection, select_model
from .config import PrunerConfig
from .host import SessionHost
from .notification import Notifier
from .state.store import PruneStateStore
from .state.tool_cache import ToolParameterCache
from .state.types import ModelInfo, PruningResult, TranscriptMessage
from .tools import PruningTools, apply_squashes
from .wire.rewriter import RequestRewriter, RewriteResult
from .wire.tracker import NudgeTracker
from .wire.transport import PruningTransport

log = logging.getLogger(__name__)


class ContextPruner:
    """High-level facade over the pruning subsystems.

    Usage::

        pruner = ContextPruner.from_config(host=my_host)
        llm = httpx.AsyncClient(transport=pruner.transport())

        # host event loop:
        await pruner.on_event(event)                 # idle -> background analysis
        pruner.on_chat_params(session_id, "openai", "gpt-5")

        # agent tools:
        await pruner.tools.prune(session_id, reason)
        await pruner.tools.squash(session_id, start, end, topic, summary)
    """

    def __init__(
        self,
        host: SessionHost,
        config: PrunerConfig | None = None,
        *,
        working_dir: str | None = None,
        selector: Callable[..., ModelSelection] = select_model,
    ) -> None:
        self._host = host
        self._config = config or PrunerConfig()
        cfg = self._config

        self._store = PruneStateStore(cfg.state_dir)
        self._cache = ToolParameterCache(cfg.tool_cache_size)
        self._tracker = NudgeTracker(
            internal_tools=cfg.tools.all(),
            tool_name_lookup=self._cache.tool_name,
        )
        self._model_cache: dict[str, ModelInfo] = {}
        self._subagents: set[str] = set()
        self._checked: set[str] = set()
        self._last_session: str | None = None
        self._pending: set[asyncio.Task] = set()

        self._notifier = Notifier(host, cfg.pruning_summary, working_dir)
        self._janitor = Janitor(
            host, self._store, self._cache, cfg,
            tracker=self._tracker,
            notifier=self._notifier,
            model_cache=self._model_cache,
            selector=selector,
        )
        self._rewriter = RequestRewriter(
            self._store, self._tracker, self._cache, cfg, subagent_sessions=self._subagents,
        )
        self.tools = PruningTools(
            host, self._store, self._janitor, self._tracker, cfg,
            notifier=self._notifier,
            subagent_check=self.is_subagent,
        )
        log.info("Context pruning initialized (model: %s)", cfg.model or "auto")

    @classmethod
    def from_config(
        cls,
        config_path: str | Path | None = None,
        *,
        host: SessionHost,
        working_dir: str | None = None,
    ) -> "ContextPruner":
        """Create a ContextPruner from a CONFIG.yaml file."""
        from . import load_config

        cfg = PrunerConfig.from_dict(load_config(Path(config_path) if config_path else None) or {})
        if cfg.debug:
            logging.getLogger("agent_pruning").setLevel(logging.DEBUG)
        return cls(host, cfg, working_dir=working_dir)

    @property
    def config(self) -> PrunerConfig:
        return self._config

    @property
    def store(self) -> PruneStateStore:
        return self._store

    @property
    def tracker(self) -> NudgeTracker:
        return self._tracker

    @property
    def cache(self) -> ToolParameterCache:
        return self._cache

    @property
    def janitor(self) -> Janitor:
        return self._janitor

    # -- Host hooks --

    async def on_event(self, event: dict[str, Any]) -> asyncio.Task | None:
        """Host event hook. Session-idle events start a background analysis."""
        if event.get("type") != "session.status":
            return None
        props = event.get("properties") or {}
        if (props.get("status") or {}).get("type") != "idle":
            return None
        session_id = props.get("sessionID")
        if not session_id:
            return None
        return await self.on_session_idle(session_id)

    async def on_session_idle(self, session_id: str) -> asyncio.Task | None:
        """Schedule a fire-and-forget analysis pass for ``session_id``."""
        cfg = self._config
        if not cfg.enabled or not cfg.strategies.on_idle:
            return None
        if await self.is_subagent(session_id):
            return None
        if self._tracker.skip_next_idle:
            self._tracker.skip_next_idle = False
            log.debug("Skipping idle analysis for %s right after a prune", session_id)
            return None
        task = asyncio.create_task(self._janitor.run(session_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def on_chat_params(self, session_id: str, provider_id: str | None, model_id: str | None) -> None:
        """Remember the session's model and mark it as the active session."""
        self._last_session = session_id
        if provider_id and model_id:
            self._model_cache[session_id] = ModelInfo(provider_id=provider_id, model_id=model_id)

    async def is_subagent(self, session_id: str) -> bool:
        """True when the host reports a parent session. Fails open on errors."""
        if session_id in self._checked:
            return session_id in self._subagents
        try:
            info = await self._host.get_session(session_id)
        except Exception as exc:
            log.debug("Subagent check failed for %s: %s", session_id, exc)
            return False
        self._checked.add(session_id)
        if info.is_subagent:
            self._subagents.add(session_id)
        return info.is_subagent

    # -- Outbound requests --

    def rewrite(self, body: Any, session_id: str | None = None, *, subagent: bool = False) -> RewriteResult:
        """Rewrite a decoded request body in place."""
        return self._rewriter.process(body, session_id, subagent=subagent)

    def transport(self, wrapped: httpx.AsyncBaseTransport | None = None) -> PruningTransport:
        """An httpx transport to inject into the LLM client."""
        return PruningTransport(
            self._rewriter,
            wrapped,
            session_header=self._config.session_header,
            session_hint=lambda: self._last_session,
            is_subagent=self.is_subagent,
        )

    # -- Display --

    def display_messages(self, session_id: str, messages: list[TranscriptMessage]) -> list[TranscriptMessage]:
        """Transcript view with squashed ranges collapsed into their summaries."""
        return apply_squashes(messages, self._store.state(session_id))

    async def wait_idle(self) -> list[PruningResult | None]:
        """Await any analysis passes still running."""
        if not self._pending:
            return []
        return list(await asyncio.gather(*self._pending))

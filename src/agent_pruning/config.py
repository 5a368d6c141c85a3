"""Pruner configuration dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

DEFAULT_PLACEHOLDER = "[Output removed to save context - information superseded or no longer needed]"

DEFAULT_NUDGE_TEXT = (
    "<instruction name=context_management_required>"
    "Context is filling with tool outputs. If a task or exploration phase is done, "
    "call the context_pruning tool or squash the finished range before continuing."
    "</instruction>"
)

SummaryLevel = Literal["off", "minimal", "detailed"]
_SUMMARY_LEVELS = ("off", "minimal", "detailed")


@dataclass
class StrategyConfig:
    """Which triggers may run an analysis pass."""

    on_idle: bool = True
    on_tool: bool = True


@dataclass
class AnalysisConfig:
    """Limits for the idle analysis pass."""

    min_messages: int = 3
    transcript_limit: int = 100


@dataclass
class NudgeConfig:
    """Nudge frequency (0 disables) and text."""

    frequency: int = 10
    text: str = DEFAULT_NUDGE_TEXT


@dataclass
class BatchConfig:
    """Batch tool name and the id prefix carried by its children."""

    tool_name: str = "batch"
    child_prefix: str = "prt_"


@dataclass
class ToolNames:
    """Names of the agent-facing pruning tools."""

    prune: str = "context_pruning"
    squash: str = "squash"
    discard: str = "discard"

    def all(self) -> set[str]:
        return {self.prune, self.squash, self.discard}


@dataclass
class PrunerConfig:
    """Top-level pruner configuration."""

    enabled: bool = True
    debug: bool = False
    protected_tools: list[str] = field(default_factory=lambda: ["task"])
    model: str | None = None
    skip_providers: list[str] = field(default_factory=lambda: ["github-copilot", "anthropic"])
    placeholder: str = DEFAULT_PLACEHOLDER
    instruction: str | None = None
    pruning_summary: SummaryLevel = "detailed"
    tool_cache_size: int = 500
    state_dir: str | None = "~/.local/share/agent-pruning/sessions"
    session_header: str = "x-session-id"
    strategies: StrategyConfig = field(default_factory=StrategyConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    nudge: NudgeConfig = field(default_factory=NudgeConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    tools: ToolNames = field(default_factory=ToolNames)

    @property
    def protected(self) -> set[str]:
        """Protected tool names, including the pruning tools themselves."""
        return set(self.protected_tools) | self.tools.all()

    @classmethod
    def from_dict(cls, data: dict) -> PrunerConfig:
        """Build from a config dict, filling defaults for missing keys."""
        st = data.get("strategies") or {}
        an = data.get("analysis") or {}
        nd = data.get("nudge") or {}
        bt = data.get("batch") or {}
        tl = data.get("tools") or {}
        summary = data.get("pruning_summary", "detailed")
        if summary not in _SUMMARY_LEVELS:
            raise ValueError(f"Unknown pruning_summary level: {summary!r}")
        return cls(
            enabled=data.get("enabled", True),
            debug=data.get("debug", False),
            protected_tools=list(data.get("protected_tools", ["task"])),
            model=data.get("model"),
            skip_providers=list(data.get("skip_providers", ["github-copilot", "anthropic"])),
            placeholder=data.get("placeholder", DEFAULT_PLACEHOLDER),
            instruction=data.get("instruction"),
            pruning_summary=summary,
            tool_cache_size=data.get("tool_cache_size", 500),
            state_dir=data.get("state_dir", "~/.local/share/agent-pruning/sessions"),
            session_header=data.get("session_header", "x-session-id"),
            strategies=StrategyConfig(
                on_idle=st.get("on_idle", True),
                on_tool=st.get("on_tool", True),
            ),
            analysis=AnalysisConfig(
                min_messages=an.get("min_messages", 3),
                transcript_limit=an.get("transcript_limit", 100),
            ),
            nudge=NudgeConfig(
                frequency=nd.get("frequency", 10),
                text=nd.get("text", DEFAULT_NUDGE_TEXT),
            ),
            batch=BatchConfig(
                tool_name=bt.get("tool_name", "batch"),
                child_prefix=bt.get("child_prefix", "prt_"),
            ),
            tools=ToolNames(
                prune=tl.get("prune", "context_pruning"),
                squash=tl.get("squash", "squash"),
                discard=tl.get("discard", "discard"),
            ),
        )

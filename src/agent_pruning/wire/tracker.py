"""Tool result tracker — dedup-counts tool results to drive nudges."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable


@dataclass
class NudgeTracker:
    """Process-lifetime counters for nudge injection.

    ``seen_ids`` only grows. ``tool_result_count`` counts results since the
    last successful prune and is zeroed only by ``reset``.
    """

    internal_tools: set[str] = field(default_factory=lambda: {"context_pruning"})
    tool_name_lookup: Callable[[str], str | None] | None = None
    seen_ids: set[str] = field(default_factory=set)
    tool_result_count: int = 0
    skip_next_idle: bool = False

    def observe(self, result_id: str, tool_name: str | None = None) -> bool:
        """Record a tool result. Returns True when it had not been seen."""
        if result_id in self.seen_ids:
            return False
        self.seen_ids.add(result_id)
        self.tool_result_count += 1
        if tool_name is None and self.tool_name_lookup is not None:
            tool_name = self.tool_name_lookup(result_id)
        if tool_name not in self.internal_tools:
            self.skip_next_idle = False
        return True

    def should_nudge(self, frequency: int) -> bool:
        return frequency > 0 and self.tool_result_count > frequency

    def reset(self) -> None:
        """Called after a successful prune."""
        self.tool_result_count = 0

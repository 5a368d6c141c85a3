"""Bounded cache of tool-call parameters seen in outbound request bodies."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, NamedTuple

from .types import normalize_id

log = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 500


class CachedCall(NamedTuple):
    tool: str
    parameters: Any


class ToolParameterCache:
    """Maps normalized call-id to tool name and arguments.

    Insertion-ordered with oldest-first eviction once ``max_entries`` is
    exceeded. Re-caching an existing id keeps its original position.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max = max_entries
        self._entries: OrderedDict[str, CachedCall] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, call_id: object) -> bool:
        return normalize_id(call_id) in self._entries

    def put(self, call_id: str, tool: str, parameters: Any) -> None:
        self._entries[normalize_id(call_id)] = CachedCall(tool, parameters)
        self._trim()

    def get(self, call_id: str) -> CachedCall | None:
        return self._entries.get(normalize_id(call_id))

    def tool_name(self, call_id: str) -> str | None:
        entry = self.get(call_id)
        return entry.tool if entry else None

    def _trim(self) -> None:
        excess = len(self._entries) - self._max
        for _ in range(excess):
            evicted, _entry = self._entries.popitem(last=False)
            log.debug("Evicted cached parameters for %s", evicted)

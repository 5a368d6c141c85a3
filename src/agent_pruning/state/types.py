"""Core data types for agent_pruning."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def normalize_id(call_id: Any) -> str:
    """Canonical form of a call-id. Idempotent and case-insensitive."""
    return str(call_id).strip().lower()


# -- Host transcript types --


class ToolStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ToolState(BaseModel):
    """Execution state of a tool part."""

    status: ToolStatus = ToolStatus.PENDING
    input: Any = None
    output: str | None = None
    error: str | None = None


class MessagePart(BaseModel):
    """One typed part of a transcript message.

    Only ``text`` and ``tool`` parts are inspected; other part types are kept
    as-is and ignored.
    """

    type: str
    text: str | None = None
    call_id: str | None = Field(default=None, alias="callID")
    tool: str | None = None
    parameters: dict[str, Any] | None = None
    state: ToolState | None = None
    parent_call_id: str | None = Field(default=None, alias="parentCallID")

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def searchable_text(self) -> str:
        """Text used for squash boundary matching."""
        if self.type == "text" and self.text:
            return self.text
        if self.type == "tool" and self.state and self.state.status == ToolStatus.COMPLETED:
            content = self.state.output or ""
            if self.state.input is not None:
                raw = self.state.input
                content += " " + (raw if isinstance(raw, str) else _dumps(raw))
            return content
        return ""


class MessageInfo(BaseModel):
    id: str
    role: str
    session_id: str | None = Field(default=None, alias="sessionID")
    created: datetime | None = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TranscriptMessage(BaseModel):
    """A session message as returned by the host."""

    info: MessageInfo
    parts: list[MessagePart] = Field(default_factory=list)


class ModelInfo(BaseModel):
    provider_id: str = Field(alias="providerID")
    model_id: str = Field(alias="modelID")

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


class SessionInfo(BaseModel):
    """Session metadata from the host. A non-empty parent marks a subagent."""

    id: str
    parent_id: str | None = Field(default=None, alias="parentID")
    title: str | None = None
    model: ModelInfo | None = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def is_subagent(self) -> bool:
        return bool(self.parent_id)


# -- Pruning types --


class ToolCallRecord(BaseModel):
    """A tool call observed in a transcript or request body."""

    id: str
    tool_name: str
    parameters: dict[str, Any] | None = None
    output_text: str = ""
    batch_parent_id: str | None = None


class PruneStats(BaseModel):
    total_tools_pruned: int = Field(default=0, alias="totalToolsPruned")
    total_tokens_saved: int = Field(default=0, alias="totalTokensSaved")
    total_squashed_messages: int = Field(default=0, alias="totalSquashedMessages")

    model_config = ConfigDict(populate_by_name=True)


class SquashRange(BaseModel):
    """A contiguous message range replaced by one summary. Never mutated."""

    anchor_message_id: str = Field(alias="anchorMessageId")
    topic: str = ""
    summary_text: str = Field(alias="summary")
    contained_tool_ids: list[str] = Field(default_factory=list, alias="containedToolIds")
    contained_message_ids: list[str] = Field(default_factory=list, alias="containedMessageIds")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class SessionPruneState(BaseModel):
    """Per-session prune state, persisted as one JSON record."""

    session_id: str = Field(alias="sessionId")
    pruned_ids: list[str] = Field(default_factory=list, alias="prunedIds")
    stats: PruneStats = Field(default_factory=PruneStats)
    squash_ranges: list[SquashRange] = Field(default_factory=list, alias="squashRanges")
    squashed_message_ids: list[str] = Field(default_factory=list, alias="squashedMessageIds")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    def merge(self, ids: list[str] | set[str]) -> list[str]:
        """Union of the current pruned ids and ``ids``, order preserved."""
        return _ordered_union(self.pruned_ids, ids)


class PruneDecision(BaseModel):
    """Structured output of the LLM decision call."""

    pruned_tool_call_ids: list[str]
    reasoning: str = ""


class PruningResult(BaseModel):
    """Outcome of one analysis pass."""

    session_id: str
    pruned_count: int = 0
    newly_pruned_ids: list[str] = Field(default_factory=list)
    tokens_saved: int = 0
    reasoning: str = ""
    tool_metadata: dict[str, ToolCallRecord] = Field(default_factory=dict)


class NotificationData(BaseModel):
    """Summary handed to the notification collaborator."""

    pruned_count: int
    tokens_saved: int
    pruned_ids: list[str]
    tool_metadata: dict[str, ToolCallRecord] = Field(default_factory=dict)
    session_stats: PruneStats | None = None


# -- Helpers --


def _ordered_union(first, second) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in list(first) + list(second):
        nid = normalize_id(raw)
        if nid not in seen:
            seen.add(nid)
            out.append(nid)
    return out


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)

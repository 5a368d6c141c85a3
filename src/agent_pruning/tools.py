"""Agent-invoked pruning tools: prune, squash, discard.

Handlers return text for the invoking turn. Failures come back as an
``Error: ...`` string and leave prune state untouched.
"""

from __future__ import annotations

import json
import logging
from typing import NamedTuple

from .analysis.janitor import Janitor
from .config import PrunerConfig
from .errors import PruningError, RangeNotFoundError
from .host import SessionHost
from .notification import Notifier, format_pruning_result_for_tool
from .state.store import PruneStateStore
from .state.types import (
    MessageInfo,
    MessagePart,
    SessionPruneState,
    SquashRange,
    ToolStatus,
    TranscriptMessage,
    normalize_id,
)
from .tokens import estimate_tokens_batch
from .wire.tracker import NudgeTracker

log = logging.getLogger(__name__)

SUBAGENT_REFUSAL = (
    "Pruning is unavailable in subagent sessions. Do not call this tool again. "
    "Continue with your current task, or return your findings to the main agent."
)
POST_PRUNE_GUIDANCE = (
    "\n\nYou have already distilled relevant understanding in writing before calling "
    "this tool. Do not re-narrate; continue with your next task."
)


class MessageMatch(NamedTuple):
    message_id: str
    index: int


def find_unique_message(messages: list[TranscriptMessage], needle: str) -> MessageMatch:
    """Locate the single message containing ``needle``.

    Raises RangeNotFoundError on zero or several matching messages.
    """
    matches = [
        MessageMatch(msg.info.id, i)
        for i, msg in enumerate(messages)
        if any(needle in part.searchable_text() for part in msg.parts)
    ]
    if not matches:
        raise RangeNotFoundError(
            "String not found in conversation. Make sure the string exists in the conversation."
        )
    if len(matches) > 1:
        raise RangeNotFoundError(
            f"String found in {len(matches)} messages. "
            "Please use a more unique string to identify the range boundary."
        )
    return matches[0]


def collect_range(
    messages: list[TranscriptMessage],
    start: int,
    end: int,
) -> tuple[list[tuple[str, str]], list[str], list[str]]:
    """(call-id, tool) pairs, message ids, and text contents within [start, end]."""
    calls: list[tuple[str, str]] = []
    message_ids: list[str] = []
    contents: list[str] = []
    seen: set[str] = set()
    for msg in messages[start:end + 1]:
        if msg.info.id not in message_ids:
            message_ids.append(msg.info.id)
        for part in msg.parts:
            if part.type == "text" and part.text:
                contents.append(part.text)
            elif part.type == "tool":
                if part.call_id:
                    nid = normalize_id(part.call_id)
                    if nid not in seen:
                        seen.add(nid)
                        calls.append((nid, part.tool or "unknown"))
                contents.extend(_tool_contents(part))
    return calls, message_ids, contents


def apply_squashes(messages: list[TranscriptMessage], state: SessionPruneState) -> list[TranscriptMessage]:
    """Display view: each squash anchor becomes one summary message, the rest
    of its range is hidden. Returns a new list; inputs are not mutated."""
    if not state.squash_ranges:
        return list(messages)
    anchors = {r.anchor_message_id: r for r in state.squash_ranges}
    hidden = set(state.squashed_message_ids)
    out: list[TranscriptMessage] = []
    for msg in messages:
        squash = anchors.get(msg.info.id)
        if squash is not None:
            out.append(TranscriptMessage(
                info=MessageInfo(id=msg.info.id, role="user", session_id=msg.info.session_id),
                parts=[MessagePart(type="text", text=f"[Squashed: {squash.topic}]\n{squash.summary_text}")],
            ))
        elif msg.info.id not in hidden:
            out.append(msg)
    return out


class PruningTools:
    """Handlers behind the agent-facing ``prune``, ``squash`` and ``discard`` tools."""

    def __init__(
        self,
        host: SessionHost,
        store: PruneStateStore,
        janitor: Janitor,
        tracker: NudgeTracker,
        config: PrunerConfig,
        notifier: Notifier | None = None,
        subagent_check=None,
    ) -> None:
        self._host = host
        self._store = store
        self._janitor = janitor
        self._tracker = tracker
        self._config = config
        self._notifier = notifier
        self._subagent_check = subagent_check

    async def prune(self, session_id: str, reason: str | None = None) -> str:
        if await self._is_subagent(session_id):
            return SUBAGENT_REFUSAL
        if not self._config.strategies.on_tool:
            return "On-demand pruning is disabled." + POST_PRUNE_GUIDANCE
        try:
            result = await self._janitor.run_for_tool(session_id, reason)
        except PruningError as exc:
            log.warning("Pruning tool failed for %s: %s", session_id, exc)
            return f"Error: {exc}"
        self._tracker.skip_next_idle = True
        if self._config.nudge.frequency > 0:
            self._tracker.reset()
        if result is None or result.pruned_count == 0:
            return "No prunable tool outputs found. Context is already optimized." + POST_PRUNE_GUIDANCE
        return format_pruning_result_for_tool(result) + POST_PRUNE_GUIDANCE

    async def squash(self, session_id: str, start: str, end: str, topic: str, summary: str) -> str:
        for name, value in (("startString", start), ("endString", end), ("topic", topic), ("summary", summary)):
            if not value or not value.strip():
                return f"Error: {name} is required. Format: input: [startString, endString, topic, summary]"
        log.info("Squash requested for %s: %r", session_id, topic)
        try:
            return await self._apply_range(session_id, start, end, topic=topic, summary=summary)
        except PruningError as exc:
            log.warning("Squash failed for %s: %s", session_id, exc)
            return f"Error: {exc}"

    async def squash_input(self, session_id: str, values: list[str]) -> str:
        """Tool entry point taking ``[startString, endString, topic, summary]``."""
        if len(values) != 4:
            return (
                f"Error: Expected exactly 4 strings [startString, endString, topic, summary], "
                f"but received {len(values)}."
            )
        return await self.squash(session_id, *values)

    async def discard(self, session_id: str, start: str, end: str) -> str:
        for name, value in (("startString", start), ("endString", end)):
            if not value or not value.strip():
                return f"Error: {name} is required. Format: input: [startString, endString]"
        try:
            return await self._apply_range(session_id, start, end)
        except PruningError as exc:
            log.warning("Discard failed for %s: %s", session_id, exc)
            return f"Error: {exc}"

    async def _apply_range(
        self,
        session_id: str,
        start: str,
        end: str,
        *,
        topic: str | None = None,
        summary: str | None = None,
    ) -> str:
        if await self._is_subagent(session_id):
            return SUBAGENT_REFUSAL
        messages = await self._host.messages(session_id)
        first = find_unique_message(messages, start)
        last = find_unique_message(messages, end)
        if first.index > last.index:
            raise RangeNotFoundError(
                "startString appears after endString in the conversation. Start must come before end."
            )

        calls, message_ids, contents = collect_range(messages, first.index, last.index)
        protected = self._config.protected
        tool_ids = [cid for cid, tool in calls if tool not in protected]
        tokens = estimate_tokens_batch(contents)
        count = last.index - first.index + 1

        async with self._store.lock(session_id):
            fresh = self._store.state(session_id)
            known = set(fresh.pruned_ids)
            delta = [cid for cid in tool_ids if cid not in known]
            if summary is not None:
                squash = SquashRange(
                    anchor_message_id=first.message_id,
                    topic=topic or "",
                    summary_text=summary,
                    contained_tool_ids=tool_ids,
                    contained_message_ids=message_ids,
                )
                stats = fresh.stats.model_copy(update={
                    "total_tools_pruned": fresh.stats.total_tools_pruned + len(delta),
                    "total_tokens_saved": fresh.stats.total_tokens_saved + tokens,
                    "total_squashed_messages": fresh.stats.total_squashed_messages + count,
                })
                hidden = list(fresh.squashed_message_ids)
                hidden.extend(m for m in message_ids if m not in hidden)
                self._store.set(
                    session_id,
                    fresh.merge(tool_ids),
                    stats=stats,
                    squash_ranges=[*fresh.squash_ranges, squash],
                    squashed_message_ids=hidden,
                )
            else:
                squash = None
                stats = fresh.stats.model_copy(update={
                    "total_tools_pruned": fresh.stats.total_tools_pruned + len(delta),
                })
                self._store.set(session_id, fresh.merge(tool_ids), stats=stats)

        self._tracker.reset()
        log.info("Range %s..%s in %s: %d messages, %d tool calls",
                 first.message_id, last.message_id, session_id, count, len(tool_ids))

        if squash is not None:
            if self._notifier is not None:
                await self._notifier.squashed(session_id, squash, count, tokens)
            return (
                f"Squashed {count} messages ({len(tool_ids)} tool calls) into summary. "
                "The content will be replaced with your summary."
            )
        return f"Discarded {len(tool_ids)} tool outputs across {count} messages."

    async def _is_subagent(self, session_id: str) -> bool:
        if self._subagent_check is None:
            return False
        return await self._subagent_check(session_id)


def _tool_contents(part: MessagePart) -> list[str]:
    state = part.state
    if state is None:
        return []
    out: list[str] = []
    if state.input is not None:
        if isinstance(state.input, str):
            out.append(state.input)
        else:
            out.append(json.dumps(state.input, separators=(",", ":"), ensure_ascii=False, default=str))
    if state.status == ToolStatus.COMPLETED and state.output:
        out.append(state.output)
    elif state.status == ToolStatus.ERROR and state.error:
        out.append(state.error)
    return out

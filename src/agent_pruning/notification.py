"""Pruning summaries for the host UI."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from .config import SummaryLevel
from .host import SessionHost
from .state.types import NotificationData, PruningResult, SquashRange, ToolCallRecord, normalize_id
from .tokens import format_token_count

log = logging.getLogger(__name__)

_PARAM_KEYS = ("path", "pattern", "command", "url", "query")
_NODE_MODULES = re.compile(r"node_modules/(@[^/]+/[^/]+|[^/]+)/(.*)")
_IN_PATH = re.compile(r"^(.+) in (.+)$")


def extract_parameter_key(record: ToolCallRecord) -> str | None:
    """The most descriptive parameter of a tool call, if any."""
    params = record.parameters or {}
    if not isinstance(params, dict):
        return None
    if record.tool_name == "read" and params.get("filePath"):
        return str(params["filePath"])
    if record.tool_name == "bash":
        value = params.get("description") or params.get("command")
        return str(value) if value else None
    if record.tool_name == "grep" and params.get("pattern") and params.get("path"):
        return f"{params['pattern']} in {params['path']}"
    for key in _PARAM_KEYS:
        if params.get(key):
            return str(params[key])
    return None


def truncate(text: str, max_len: int = 60) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def shorten_path(text: str, working_dir: str | None = None) -> str:
    """Shorten a path for display. Handles "<pattern> in <path>" too."""
    m = _IN_PATH.match(text)
    if m:
        return f"{m.group(1)} in {_shorten_single(m.group(2), working_dir)}"
    return _shorten_single(text, working_dir)


def _shorten_single(path: str, working_dir: str | None) -> str:
    home = str(Path.home())
    if working_dir:
        if path.startswith(working_dir + "/"):
            return path[len(working_dir) + 1:]
        if path == working_dir:
            return "."
    if path == home or path.startswith(home + "/"):
        path = "~" + path[len(home):]
    m = _NODE_MODULES.search(path)
    if m:
        return f"{m.group(1)}/{m.group(2)}"
    return path


def build_tools_summary(
    pruned_ids: list[str],
    metadata: dict[str, ToolCallRecord],
    working_dir: str | None = None,
) -> dict[str, list[str]]:
    """Group pruned calls by tool name with a short parameter sample each."""
    summary: dict[str, list[str]] = {}
    for pid in pruned_ids:
        record = metadata.get(normalize_id(pid))
        if record is None:
            continue
        key = extract_parameter_key(record)
        sample = truncate(shorten_path(key, working_dir), 80) if key else "(default)"
        summary.setdefault(record.tool_name, []).append(sample)
    return summary


def format_tool_summary_lines(summary: dict[str, list[str]], indent: str = "  ") -> list[str]:
    lines: list[str] = []
    for tool, params in summary.items():
        if len(params) == 1:
            lines.append(f"{indent}{tool}: {params[0]}")
        elif params:
            lines.append(f"{indent}{tool} ({len(params)}):")
            lines.extend(f"{indent}  {p}" for p in params)
    return lines


def format_stats_header(total_tokens: int, just_now_tokens: int) -> str:
    total = f"~{format_token_count(total_tokens)}"
    now = f"~{format_token_count(just_now_tokens)}"
    width = max(len(total), len(now))
    return "\n".join([
        "▣ Context pruning",
        f"  Total saved │ {total.rjust(width)}",
        f"  Just now    │ {now.rjust(width)}",
    ])


def build_minimal_message(data: NotificationData) -> str:
    total = data.session_stats.total_tokens_saved if data.session_stats else data.tokens_saved
    return format_stats_header(total, data.tokens_saved)


def build_detailed_message(data: NotificationData, working_dir: str | None = None) -> str:
    message = build_minimal_message(data)
    if data.pruned_count <= 0:
        return message
    lines = [message, "", "▣ Pruned tools:"]
    unknown = 0
    for pid in data.pruned_ids:
        record = data.tool_metadata.get(normalize_id(pid))
        if record is None:
            unknown += 1
            continue
        key = extract_parameter_key(record)
        if key:
            lines.append(f"→ {record.tool_name}: {truncate(shorten_path(key, working_dir), 60)}")
        else:
            lines.append(f"→ {record.tool_name}")
    if unknown:
        lines.append(f"→ ({unknown} tool{'s' if unknown > 1 else ''} with unknown metadata)")
    return "\n".join(lines).strip()


def format_pruning_result_for_tool(result: PruningResult, working_dir: str | None = None) -> str:
    """Text returned to the agent after an on-demand prune."""
    lines = [f"Context pruning complete. Pruned {result.pruned_count} tool outputs.", ""]
    if result.newly_pruned_ids:
        lines.append(f"Semantically pruned ({len(result.newly_pruned_ids)}):")
        summary = build_tools_summary(result.newly_pruned_ids, result.tool_metadata, working_dir)
        lines.extend(format_tool_summary_lines(summary))
    return "\n".join(lines).strip()


def format_squash_message(squash: SquashRange, messages_squashed: int, tokens: int) -> str:
    return "\n".join([
        f"▣ Squashed: {squash.topic}",
        f"  {messages_squashed} messages, {len(squash.contained_tool_ids)} tool calls",
        f"  ~{format_token_count(tokens)} tokens",
    ])


class Notifier:
    """Delivers summaries through the host. Failures are logged, never raised."""

    def __init__(self, host: SessionHost, level: SummaryLevel = "detailed", working_dir: str | None = None) -> None:
        self._host = host
        self._level = level
        self._working_dir = working_dir

    async def pruned(self, session_id: str, data: NotificationData) -> bool:
        if data.pruned_count <= 0 or self._level == "off":
            return False
        if self._level == "minimal":
            text = build_minimal_message(data)
        else:
            text = build_detailed_message(data, self._working_dir)
        return await self._send(session_id, text)

    async def squashed(self, session_id: str, squash: SquashRange, messages_squashed: int, tokens: int) -> bool:
        if self._level == "off":
            return False
        return await self._send(session_id, format_squash_message(squash, messages_squashed, tokens))

    async def _send(self, session_id: str, text: str) -> bool:
        try:
            await self._host.notify(session_id, text)
        except Exception as exc:
            log.error("Failed to send notification for %s: %s", session_id, exc)
            return False
        return True

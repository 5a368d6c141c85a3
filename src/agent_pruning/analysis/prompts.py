"""Prompt text for the pruning decision call."""

from __future__ import annotations

import json

from ..state.types import ToolCallRecord, TranscriptMessage, normalize_id

DECISION_SYSTEM_PROMPT = (
    "You manage the context window of a coding agent. Decide which tool call "
    "outputs are obsolete: superseded by a later call, already acted upon, or "
    "irrelevant to the current task. Keep anything the agent may still need. "
    'Reply with JSON only: {"pruned_tool_call_ids": [...], "reasoning": "..."}'
)

_MAX_TEXT_CHARS = 400
_MAX_OUTPUT_CHARS = 300


def render_session_summary(
    messages: list[TranscriptMessage],
    records: dict[str, ToolCallRecord],
) -> str:
    """Compact transcript: text turns and tool calls with clipped outputs."""
    lines: list[str] = []
    for msg in messages:
        for part in msg.parts:
            if part.type == "text" and part.text:
                lines.append(f"{msg.info.role}: {_clip(part.text, _MAX_TEXT_CHARS)}")
            elif part.type == "tool" and part.call_id:
                record = records.get(normalize_id(part.call_id))
                if record is None:
                    continue
                params = json.dumps(record.parameters, sort_keys=True, default=str) if record.parameters else ""
                lines.append(f"[{record.id}] {record.tool_name}({_clip(params, 200)})")
                if record.output_text:
                    lines.append(f"  -> {_clip(record.output_text, _MAX_OUTPUT_CHARS)}")
    return "\n".join(lines)


def build_analysis_prompt(
    candidate_ids: list[str],
    messages: list[TranscriptMessage],
    records: dict[str, ToolCallRecord],
    protected_tools: list[str] | set[str],
) -> str:
    summary = render_session_summary(messages, records)
    return (
        f"Protected tools (never prune): {', '.join(sorted(protected_tools)) or 'none'}\n"
        f"Candidate tool call ids: {json.dumps(candidate_ids)}\n\n"
        "Only return ids from the candidate list.\n\n"
        f"<session>\n{summary}\n</session>"
    )


def _clip(text: str, limit: int) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 3] + "..."

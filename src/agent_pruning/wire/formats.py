"""Message format adapters for the three supported LLM wire shapes.

Each adapter exposes the same operations over a decoded JSON request body:

- ``count_tool_results``: feed new tool results to the nudge tracker
- ``append_nudge`` and ``is_nudge_entry``: synthetic nudge turns
- ``inject_instruction``: idempotent instruction on the latest user turn
- ``replace_pruned``: swap pruned result content for a placeholder
- ``cache_parameters``: remember tool-call arguments by call-id

Bodies are mutated in place. Entries are never added except by
``append_nudge`` and never removed or reordered.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterator

from ..state.tool_cache import ToolParameterCache
from ..state.types import normalize_id
from .tracker import NudgeTracker

log = logging.getLogger(__name__)


class WireFormat:
    """Shared interface. Subclasses are the closed set of supported shapes."""

    name: str = ""
    key: str = ""

    def matches(self, body: Any) -> bool:
        return isinstance(body, dict) and isinstance(body.get(self.key), list)

    def entries(self, body: dict) -> list:
        return body[self.key]

    def count_tool_results(self, body: dict, tracker: NudgeTracker, session_id: str | None = None) -> int:
        raise NotImplementedError

    def append_nudge(self, body: dict, text: str) -> None:
        raise NotImplementedError

    def is_nudge_entry(self, entry: Any, text: str) -> bool:
        raise NotImplementedError

    def inject_instruction(self, body: dict, text: str, nudge_text: str | None = None) -> bool:
        raise NotImplementedError

    def replace_pruned(
        self,
        body: dict,
        pruned_ids: set[str],
        placeholder: str,
        positional_ids: dict[str, str] | None = None,
    ) -> int:
        raise NotImplementedError

    def cache_parameters(self, body: dict, cache: ToolParameterCache) -> int:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Chat completions (OpenAI chat, Anthropic messages)
# ---------------------------------------------------------------------------


class ChatCompletionsFormat(WireFormat):
    """``body["messages"]``: ``role=tool`` entries or ``tool_result`` blocks."""

    name = "chat"
    key = "messages"

    def _results(self, messages: list) -> Iterator[tuple[dict, str, str | None]]:
        for m in messages:
            if not isinstance(m, dict):
                continue
            if m.get("role") == "tool" and m.get("tool_call_id"):
                yield m, normalize_id(m["tool_call_id"]), m.get("name")
            elif m.get("role") == "user" and isinstance(m.get("content"), list):
                for block in m["content"]:
                    if isinstance(block, dict) and block.get("type") == "tool_result" and block.get("tool_use_id"):
                        yield block, normalize_id(block["tool_use_id"]), None

    def count_tool_results(self, body, tracker, session_id=None):
        new = 0
        for _entry, rid, name in self._results(self.entries(body)):
            if tracker.observe(rid, name):
                new += 1
        return new

    def append_nudge(self, body, text):
        self.entries(body).append({"role": "user", "content": text})

    def is_nudge_entry(self, entry, text):
        if not isinstance(entry, dict) or entry.get("role") != "user":
            return False
        content = entry.get("content")
        if isinstance(content, str):
            return content == text
        if isinstance(content, list) and len(content) == 1:
            block = content[0]
            return isinstance(block, dict) and block.get("type") == "text" and block.get("text") == text
        return False

    def inject_instruction(self, body, text, nudge_text=None):
        messages = self.entries(body)
        for msg in reversed(messages):
            if not isinstance(msg, dict) or msg.get("role") != "user":
                continue
            if nudge_text and self.is_nudge_entry(msg, nudge_text):
                continue
            content = msg.get("content")
            if isinstance(content, str):
                if text in content:
                    return False
                msg["content"] = content + "\n\n" + text
                return True
            if isinstance(content, list):
                if any(
                    isinstance(b, dict) and b.get("type") == "text"
                    and isinstance(b.get("text"), str) and text in b["text"]
                    for b in content
                ):
                    return False
                content.append({"type": "text", "text": text})
                return True
            return False
        return False

    def replace_pruned(self, body, pruned_ids, placeholder, positional_ids=None):
        replaced = 0
        for entry, rid, _name in self._results(self.entries(body)):
            if rid in pruned_ids:
                entry["content"] = placeholder
                replaced += 1
        return replaced

    def cache_parameters(self, body, cache):
        cached = 0
        for m in self.entries(body):
            if not isinstance(m, dict) or m.get("role") != "assistant":
                continue
            for call in m.get("tool_calls") or []:
                if not isinstance(call, dict):
                    continue
                fn = call.get("function")
                if not call.get("id") or not isinstance(fn, dict) or not fn.get("name"):
                    continue
                params = _parse_arguments(fn.get("arguments"))
                if params is _UNPARSEABLE:
                    continue
                cache.put(call["id"], fn["name"], params)
                cached += 1
            if isinstance(m.get("content"), list):
                for block in m["content"]:
                    if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("id"):
                        cache.put(block["id"], block.get("name", "unknown"), block.get("input"))
                        cached += 1
        return cached


# ---------------------------------------------------------------------------
# Content/parts (Gemini)
# ---------------------------------------------------------------------------


class PartsFormat(WireFormat):
    """``body["contents"]``: ``functionResponse`` parts, usually without ids.

    Each response gets a positional key ``<name>:<n>`` where n counts earlier
    responses with the same function name in the body. The tracker sees it as
    ``gemini:<session>:<name>:<n>`` so sessions never share counts; the
    rewriter resolves the key to a real call-id through the session's
    positional mapping.
    """

    name = "parts"
    key = "contents"

    def _responses(self, contents: list) -> Iterator[tuple[dict, str, str]]:
        counters: dict[str, int] = {}
        for content in contents:
            if not isinstance(content, dict) or not isinstance(content.get("parts"), list):
                continue
            for part in content["parts"]:
                fr = part.get("functionResponse") if isinstance(part, dict) else None
                if not isinstance(fr, dict):
                    continue
                fname = str(fr.get("name") or "unknown").lower()
                n = counters.get(fname, 0)
                counters[fname] = n + 1
                yield fr, f"{fname}:{n}", fname

    def count_tool_results(self, body, tracker, session_id=None):
        new = 0
        for _fr, key, fname in self._responses(self.entries(body)):
            pseudo = f"gemini:{session_id}:{key}" if session_id else f"gemini:{key}"
            if tracker.observe(pseudo, fname):
                new += 1
        return new

    def append_nudge(self, body, text):
        self.entries(body).append({"role": "user", "parts": [{"text": text}]})

    def is_nudge_entry(self, entry, text):
        if not isinstance(entry, dict):
            return False
        parts = entry.get("parts")
        if isinstance(parts, list) and len(parts) == 1 and isinstance(parts[0], dict):
            return parts[0].get("text") == text
        return False

    def inject_instruction(self, body, text, nudge_text=None):
        for content in reversed(self.entries(body)):
            if not isinstance(content, dict) or content.get("role") != "user":
                continue
            parts = content.get("parts")
            if not isinstance(parts, list):
                continue
            if nudge_text and self.is_nudge_entry(content, nudge_text):
                continue
            if any(isinstance(p, dict) and isinstance(p.get("text"), str) and text in p["text"] for p in parts):
                return False
            parts.append({"text": text})
            return True
        return False

    def replace_pruned(self, body, pruned_ids, placeholder, positional_ids=None):
        positional_ids = positional_ids or {}
        replaced = 0
        for fr, key, _fname in self._responses(self.entries(body)):
            call_id = fr.get("id") or positional_ids.get(key)
            if call_id and normalize_id(call_id) in pruned_ids:
                fr["response"] = {"output": placeholder}
                replaced += 1
        return replaced

    def cache_parameters(self, body, cache):
        cached = 0
        for content in self.entries(body):
            if not isinstance(content, dict):
                continue
            for part in content.get("parts") or []:
                fc = part.get("functionCall") if isinstance(part, dict) else None
                if isinstance(fc, dict) and fc.get("id") and fc.get("name"):
                    cache.put(fc["id"], fc["name"], fc.get("args"))
                    cached += 1
        return cached


# ---------------------------------------------------------------------------
# Flat discriminated items (OpenAI Responses API)
# ---------------------------------------------------------------------------


class ResponsesFormat(WireFormat):
    """``body["input"]``: ``function_call_output`` items carrying ``call_id``."""

    name = "responses"
    key = "input"

    def _results(self, items: list) -> Iterator[tuple[dict, str, str | None]]:
        for item in items:
            if isinstance(item, dict) and item.get("type") == "function_call_output" and item.get("call_id"):
                yield item, normalize_id(item["call_id"]), item.get("name")

    def count_tool_results(self, body, tracker, session_id=None):
        new = 0
        for _item, rid, name in self._results(self.entries(body)):
            if tracker.observe(rid, name):
                new += 1
        return new

    def append_nudge(self, body, text):
        self.entries(body).append({"type": "message", "role": "user", "content": text})

    def is_nudge_entry(self, entry, text):
        return (
            isinstance(entry, dict)
            and entry.get("type") == "message"
            and isinstance(entry.get("content"), str)
            and entry["content"] == text
        )

    def inject_instruction(self, body, text, nudge_text=None):
        for item in reversed(self.entries(body)):
            if not isinstance(item, dict) or item.get("type") != "message" or item.get("role") != "user":
                continue
            if nudge_text and self.is_nudge_entry(item, nudge_text):
                continue
            content = item.get("content")
            if isinstance(content, str):
                if text in content:
                    return False
                item["content"] = content + "\n\n" + text
                return True
            if isinstance(content, list):
                if any(
                    isinstance(p, dict) and p.get("type") == "input_text"
                    and isinstance(p.get("text"), str) and text in p["text"]
                    for p in content
                ):
                    return False
                content.append({"type": "input_text", "text": text})
                return True
            return False
        return False

    def replace_pruned(self, body, pruned_ids, placeholder, positional_ids=None):
        replaced = 0
        for item, rid, _name in self._results(self.entries(body)):
            if rid in pruned_ids:
                item["output"] = placeholder
                replaced += 1
        return replaced

    def cache_parameters(self, body, cache):
        cached = 0
        for item in self.entries(body):
            if not isinstance(item, dict) or item.get("type") != "function_call":
                continue
            if not item.get("call_id") or not item.get("name"):
                continue
            params = _parse_arguments(item.get("arguments"))
            if params is _UNPARSEABLE:
                continue
            cache.put(item["call_id"], item["name"], params)
            cached += 1
        return cached


FORMATS: tuple[WireFormat, ...] = (ChatCompletionsFormat(), PartsFormat(), ResponsesFormat())


def detect_format(body: Any) -> WireFormat | None:
    """Pick the adapter for a decoded body, or None when no shape matches."""
    for fmt in FORMATS:
        if fmt.matches(body):
            return fmt
    return None


# -- Helpers --

_UNPARSEABLE = object()


def _parse_arguments(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        log.debug("Skipping tool call with unparseable arguments")
        return _UNPARSEABLE

"""Shared fixtures: an in-memory session host and transcript builders."""

from __future__ import annotations

from typing import Any

import pytest

from agent_pruning.config import PrunerConfig
from agent_pruning.state.types import (
    MessageInfo,
    MessagePart,
    SessionInfo,
    ToolState,
    ToolStatus,
    TranscriptMessage,
)


class FakeHost:
    """SessionHost double holding transcripts and recording notifications."""

    def __init__(self) -> None:
        self.sessions: dict[str, SessionInfo] = {}
        self.transcripts: dict[str, list[TranscriptMessage]] = {}
        self.notifications: list[tuple[str, str]] = []
        self.fail_notify = False
        self.fail_session = False

    def add(self, session_id: str, messages: list[TranscriptMessage], parent_id: str | None = None) -> None:
        self.sessions[session_id] = SessionInfo(id=session_id, parent_id=parent_id)
        self.transcripts[session_id] = messages

    async def get_session(self, session_id: str) -> SessionInfo:
        if self.fail_session:
            raise RuntimeError("host down")
        return self.sessions[session_id]

    async def list_sessions(self) -> list[SessionInfo]:
        return list(self.sessions.values())

    async def messages(self, session_id: str, limit: int | None = None) -> list[TranscriptMessage]:
        msgs = self.transcripts.get(session_id, [])
        return msgs[-limit:] if limit else list(msgs)

    async def notify(self, session_id: str, text: str) -> None:
        if self.fail_notify:
            raise RuntimeError("notify failed")
        self.notifications.append((session_id, text))


def text_msg(msg_id: str, text: str, role: str = "user") -> TranscriptMessage:
    return TranscriptMessage(
        info=MessageInfo(id=msg_id, role=role, session_id="s1"),
        parts=[MessagePart(type="text", text=text)],
    )


def tool_msg(msg_id: str, *calls: tuple[str, str, dict[str, Any], str], **extra: Any) -> TranscriptMessage:
    """Assistant message with completed tool parts ``(call_id, tool, input, output)``."""
    parts = [
        MessagePart(
            type="tool",
            call_id=cid,
            tool=tool,
            state=ToolState(status=ToolStatus.COMPLETED, input=inp, output=out),
            parent_call_id=extra.get("parents", {}).get(cid),
        )
        for cid, tool, inp, out in calls
    ]
    return TranscriptMessage(info=MessageInfo(id=msg_id, role="assistant", session_id="s1"), parts=parts)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def config(tmp_path) -> PrunerConfig:
    return PrunerConfig(state_dir=str(tmp_path / "sessions"))

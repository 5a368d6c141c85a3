"""Host session interface, plus an HTTP implementation for REST hosts."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx
from pydantic import ValidationError

from .errors import TranscriptFetchError
from .state.types import SessionInfo, TranscriptMessage

log = logging.getLogger(__name__)


@runtime_checkable
class SessionHost(Protocol):
    """What the pruner needs from the agent host."""

    async def get_session(self, session_id: str) -> SessionInfo: ...

    async def list_sessions(self) -> list[SessionInfo]: ...

    async def messages(self, session_id: str, limit: int | None = None) -> list[TranscriptMessage]: ...

    async def notify(self, session_id: str, text: str) -> None: ...


class HttpSessionHost:
    """SessionHost over a REST API (``/session``, ``/session/{id}/message``)."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def get_session(self, session_id: str) -> SessionInfo:
        resp = await self._client.get(f"/session/{session_id}")
        resp.raise_for_status()
        return SessionInfo.model_validate(resp.json())

    async def list_sessions(self) -> list[SessionInfo]:
        resp = await self._client.get("/session")
        resp.raise_for_status()
        return [SessionInfo.model_validate(s) for s in resp.json()]

    async def messages(self, session_id: str, limit: int | None = None) -> list[TranscriptMessage]:
        params = {"limit": limit} if limit else None
        try:
            resp = await self._client.get(f"/session/{session_id}/message", params=params)
            resp.raise_for_status()
            data = resp.json()
            if isinstance(data, dict):
                data = data.get("data", [])
            return [TranscriptMessage.model_validate(m) for m in data]
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            raise TranscriptFetchError(f"Could not fetch messages for {session_id}: {exc}") from exc

    async def notify(self, session_id: str, text: str) -> None:
        """Post an ignored, no-reply text part into the session."""
        resp = await self._client.post(
            f"/session/{session_id}/message",
            json={"noReply": True, "parts": [{"type": "text", "text": text, "ignored": True}]},
        )
        resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()

"""httpx transport that runs the request rewriter on outbound LLM calls."""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable

import httpx

from .rewriter import RequestRewriter

log = logging.getLogger(__name__)


class PruningTransport(httpx.AsyncBaseTransport):
    """Wraps another async transport and rewrites JSON request bodies.

    Usage::

        transport = PruningTransport(rewriter, is_subagent=pruner.is_subagent)
        client = httpx.AsyncClient(transport=transport)

    The session comes from ``session_header`` when present (the header is
    stripped before forwarding), else from ``session_hint()``. With neither,
    the union of all non-subagent sessions' pruned ids applies.
    """

    def __init__(
        self,
        rewriter: RequestRewriter,
        wrapped: httpx.AsyncBaseTransport | None = None,
        *,
        session_header: str = "x-session-id",
        session_hint: Callable[[], str | None] | None = None,
        is_subagent: Callable[[str], Awaitable[bool]] | None = None,
    ) -> None:
        self._rewriter = rewriter
        self._wrapped = wrapped or httpx.AsyncHTTPTransport()
        self._header = session_header
        self._session_hint = session_hint
        self._is_subagent = is_subagent

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.method != "POST":
            return await self._wrapped.handle_async_request(request)

        session_id = request.headers.get(self._header)
        if session_id is None and self._session_hint is not None:
            session_id = self._session_hint()

        raw = await request.aread()
        try:
            body = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            return await self._wrapped.handle_async_request(self._strip_header(request))

        subagent = False
        if session_id and self._is_subagent is not None:
            subagent = await self._is_subagent(session_id)

        # No awaits from here until the rewritten request is built.
        result = self._rewriter.process(body, session_id, subagent=subagent)
        if result.modified:
            request = self._rebuild(request, json.dumps(body).encode("utf-8"))
        else:
            request = self._strip_header(request)
        return await self._wrapped.handle_async_request(request)

    async def aclose(self) -> None:
        await self._wrapped.aclose()

    def _strip_header(self, request: httpx.Request) -> httpx.Request:
        if self._header not in request.headers:
            return request
        return self._rebuild(request, request.content)

    def _rebuild(self, request: httpx.Request, content: bytes) -> httpx.Request:
        headers = [
            (k, v) for k, v in request.headers.raw
            if k.lower() not in (b"content-length", self._header.lower().encode("latin-1"))
        ]
        return httpx.Request(
            request.method,
            request.url,
            headers=headers,
            content=content,
            extensions=request.extensions,
        )

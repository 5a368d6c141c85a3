"""Per-session prune state, persisted as one JSON file per session."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from ..errors import PersistenceError
from .types import PruneStats, SessionPruneState, SquashRange, normalize_id

log = logging.getLogger(__name__)

_TMP_PREFIX = ".tmp-"


class PruneStateStore:
    """In-memory prune state backed by ``<state_dir>/<session_id>.json``.

    The store never merges: ``set`` replaces whatever it holds. Callers read,
    union their own ids in, then write.
    """

    def __init__(self, state_dir: str | Path | None) -> None:
        self._dir = Path(state_dir).expanduser() if state_dir else None
        if self._dir is not None:
            self._dir.mkdir(parents=True, exist_ok=True)
        self._states: dict[str, SessionPruneState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Parts-format positional keys ("name:n") -> call-id, per session.
        self._positional: dict[str, dict[str, str]] = {}

    # -- Reads --

    def get(self, session_id: str) -> list[str]:
        """Pruned ids for a session, restoring from disk on first access."""
        return list(self.state(session_id).pruned_ids)

    def state(self, session_id: str) -> SessionPruneState:
        """Full state record; created (or restored) on first reference."""
        cached = self._states.get(session_id)
        if cached is None:
            cached = self._restore(session_id) or SessionPruneState(session_id=session_id)
            self._states[session_id] = cached
        return cached

    def sessions(self) -> list[str]:
        """Session ids held in memory plus those persisted on disk."""
        ids = set(self._states)
        if self._dir is not None:
            ids.update(
                f.stem for f in self._dir.glob("*.json")
                if not f.name.startswith(_TMP_PREFIX)
            )
        return sorted(ids)

    def positional_ids(self, session_id: str) -> dict[str, str]:
        return dict(self._positional.get(session_id, {}))

    def lock(self, session_id: str) -> asyncio.Lock:
        """Single-writer lock for read-merge-write on one session."""
        lk = self._locks.get(session_id)
        if lk is None:
            lk = self._locks[session_id] = asyncio.Lock()
        return lk

    # -- Writes --

    def set(
        self,
        session_id: str,
        ids: list[str],
        *,
        stats: PruneStats | None = None,
        squash_ranges: list[SquashRange] | None = None,
        squashed_message_ids: list[str] | None = None,
    ) -> SessionPruneState:
        """Replace the session's pruned ids (and optionally the rest) and persist."""
        current = self.state(session_id)
        seen: set[str] = set()
        pruned: list[str] = []
        for raw in ids:
            nid = normalize_id(raw)
            if nid not in seen:
                seen.add(nid)
                pruned.append(nid)
        updated = current.model_copy(update={
            "pruned_ids": pruned,
            "stats": stats if stats is not None else current.stats,
            "squash_ranges": squash_ranges if squash_ranges is not None else current.squash_ranges,
            "squashed_message_ids": (
                squashed_message_ids if squashed_message_ids is not None
                else current.squashed_message_ids
            ),
            "updated_at": datetime.now(timezone.utc),
        })
        self._states[session_id] = updated
        try:
            self.save(updated)
        except PersistenceError as exc:
            # In-memory state stands; the next mutation writes it again.
            log.error("Failed to persist prune state for %s: %s", session_id, exc)
        return updated

    def set_positional_ids(self, session_id: str, mapping: dict[str, str]) -> None:
        self._positional[session_id] = dict(mapping)

    def save(self, state: SessionPruneState) -> None:
        """Write one session record atomically. Raises PersistenceError."""
        if self._dir is None:
            return
        path = self._path(state.session_id)
        payload = state.model_dump_json(by_alias=True, indent=2)
        tmp: str | None = None
        try:
            fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=_TMP_PREFIX, suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, path)
        except OSError as exc:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            raise PersistenceError(f"Could not write {path}: {exc}") from exc
        log.debug("Persisted %d pruned ids for %s", len(state.pruned_ids), state.session_id)

    # -- Helpers --

    def _path(self, session_id: str) -> Path:
        assert self._dir is not None
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in session_id)
        return self._dir / f"{safe}.json"

    def _restore(self, session_id: str) -> SessionPruneState | None:
        if self._dir is None:
            return None
        path = self._path(session_id)
        if not path.is_file():
            return None
        try:
            state = SessionPruneState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as exc:
            log.warning("Ignoring unreadable prune state %s: %s", path, exc)
            return None
        state = state.model_copy(update={
            "session_id": session_id,
            "pruned_ids": state.merge([]),
        })
        log.info("Restored %d pruned ids for %s", len(state.pruned_ids), session_id)
        return state

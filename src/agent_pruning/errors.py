"""Exception types raised across agent_pruning."""

from __future__ import annotations


class PruningError(Exception):
    """Base class for all pruning failures."""


class TranscriptFetchError(PruningError):
    """The host could not return a session transcript."""


class DecisionCallError(PruningError):
    """The LLM decision call failed or returned malformed output."""


class PersistenceError(PruningError):
    """Prune state could not be written to disk."""


class RangeNotFoundError(PruningError):
    """A squash/discard boundary string matched zero or several messages."""


class ModelUnavailableError(PruningError):
    """No configured, session, or fallback model could be used."""

"""agent_pruning — request-time pruning of obsolete tool outputs for LLM agents."""

from pathlib import Path

import yaml

_CONFIG_PATH = Path(__file__).parent / "CONFIG.yaml"


def load_config(path: Path | None = None) -> dict:
    """Load and return the CONFIG.yaml as a dict."""
    p = path or _CONFIG_PATH
    with open(p) as f:
        return yaml.safe_load(f)


# Public API
from .config import PrunerConfig  # noqa: E402
from .errors import (  # noqa: E402
    DecisionCallError,
    ModelUnavailableError,
    PersistenceError,
    PruningError,
    RangeNotFoundError,
    TranscriptFetchError,
)
from .facade import ContextPruner  # noqa: E402
from .host import HttpSessionHost, SessionHost  # noqa: E402
from .state.types import normalize_id  # noqa: E402
from .wire.transport import PruningTransport  # noqa: E402

__all__ = [
    "ContextPruner",
    "PrunerConfig",
    "load_config",
    "SessionHost",
    "HttpSessionHost",
    "PruningTransport",
    "normalize_id",
    "PruningError",
    "TranscriptFetchError",
    "DecisionCallError",
    "PersistenceError",
    "RangeNotFoundError",
    "ModelUnavailableError",
]

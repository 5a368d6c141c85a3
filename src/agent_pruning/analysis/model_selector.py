"""Model selection for the analysis pass, with provider fallback."""

from __future__ import annotations

import logging
from typing import Callable, Literal, NamedTuple

from ..errors import ModelUnavailableError, PruningError
from ..state.types import ModelInfo
from .providers import DecisionModel, authenticated_providers, build_model

log = logging.getLogger(__name__)

# Cheap models tried in PROVIDER_PRIORITY order.
FALLBACK_MODELS: dict[str, str] = {
    "openai": "gpt-5-mini",
    "openrouter": "google/gemini-2.5-flash",
    "deepseek": "deepseek-chat",
    "xai": "grok-4-fast",
    "bedrock": "anthropic.claude-haiku-4-5-20251001-v1:0",
}

PROVIDER_PRIORITY = ["openai", "openrouter", "deepseek", "xai", "bedrock"]

DEFAULT_SKIP_PROVIDERS = ["github-copilot", "anthropic"]


class ModelSelection(NamedTuple):
    model: DecisionModel
    info: ModelInfo
    source: Literal["config", "user-model", "fallback"]
    reason: str
    failed_model: ModelInfo | None = None


def parse_model_ref(ref: str) -> ModelInfo | None:
    """Parse "provider/model". The model part may itself contain slashes."""
    provider, sep, model = ref.partition("/")
    if not sep or not provider or not model:
        return None
    return ModelInfo(provider_id=provider, model_id=model)


def should_skip_provider(provider_id: str, skip: list[str]) -> bool:
    normalized = provider_id.lower().strip()
    return any(s.lower() in normalized for s in skip)


def select_model(
    current: ModelInfo | None = None,
    config_model: str | None = None,
    *,
    skip_providers: list[str] | None = None,
    factory: Callable[[str, str], DecisionModel] = build_model,
    providers: Callable[[], set[str]] = authenticated_providers,
) -> ModelSelection:
    """Pick a model: config, then the session model, then fallbacks.

    Raises ModelUnavailableError when nothing can be built.
    """
    skip = DEFAULT_SKIP_PROVIDERS if skip_providers is None else skip_providers
    failed: ModelInfo | None = None

    if config_model:
        info = parse_model_ref(config_model)
        if info is None:
            log.warning("Invalid model reference %r, expected provider/model", config_model)
        else:
            try:
                return ModelSelection(
                    factory(info.provider_id, info.model_id), info, "config", "Using configured model",
                )
            except PruningError as exc:
                log.warning("Configured model %s unavailable: %s", info, exc)
                failed = info

    if current is not None:
        if should_skip_provider(current.provider_id, skip):
            log.info("Skipping session model %s for background analysis", current)
            failed = failed or current
        else:
            try:
                return ModelSelection(
                    factory(current.provider_id, current.model_id), current, "user-model", "Using session model",
                )
            except PruningError as exc:
                log.debug("Session model %s unavailable: %s", current, exc)
                failed = failed or current

    available = providers()
    for provider_id in PROVIDER_PRIORITY:
        if provider_id not in available:
            continue
        info = ModelInfo(provider_id=provider_id, model_id=FALLBACK_MODELS[provider_id])
        try:
            return ModelSelection(factory(provider_id, info.model_id), info, "fallback", f"Using {info}", failed)
        except PruningError as exc:
            log.warning("Fallback model %s failed: %s", info, exc)

    raise ModelUnavailableError(
        "No available models for analysis. Authenticate with at least one provider."
    )
